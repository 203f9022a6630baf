"""Call lifecycle state machine.

The controller owns the transition rules for every call:

    ringing -> accepted -> ended
    ringing -> declined -> ended
    ringing -> missed   -> ended

Live events (push invites, user intents, native telephony events, the
missed-call timer) and native actions replayed at bootstrap all enter through
the same public methods, so they obey identical guards. Backend notification
for terminal actions passes through `handle_action_once`, which never raises
and hands failures to the durable retry queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from typing import Any

from shared.schemas import CallAction, CallInvite, CallStatus, NativeEvent

from ..backend_client import BackendClient
from ..native.affordance import BestEffortAffordance
from ..native.base import NativeCallBridge
from ..push.decoder import parse_call_ended, parse_call_invite
from ..storage.base import KeyValueStore
from .invite_store import InviteStore
from .ledger import ActionLedger
from .registry import CallSession, CallSessionRegistry
from .retry_queue import Clock, PendingActionQueue, system_clock_ms
from .ui_state import CallUiStore

_LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class CallLifecycleController:
    """Applies call transitions and drives backend acknowledgement."""

    def __init__(
        self,
        *,
        registry: CallSessionRegistry,
        invite_store: InviteStore,
        ledger: ActionLedger,
        queue: PendingActionQueue,
        backend: BackendClient,
        bridge: NativeCallBridge,
        ui: CallUiStore,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.invite_store = invite_store
        self.ledger = ledger
        self.queue = queue
        self.ui = ui
        self._backend = backend
        self._bridge = bridge
        self._affordance = BestEffortAffordance(bridge)
        self._sleep = sleep
        self._bootstrap_done = False
        self._background_tasks: set[asyncio.Task[None]] = set()

    # -- inbound messages ---------------------------------------------------

    async def handle_remote_message(self, data: Mapping[str, Any] | None, source: str) -> None:
        """Routes one decoded push data map to the matching lifecycle entry point."""
        ended = parse_call_ended(data)
        if ended is not None:
            if ended.dismiss_notification is False:
                _LOGGER.warning(
                    "CALL_ENDED received with dismissNotification=false; keeping notification.",
                    extra={"call_id": ended.call_id, "status": ended.status},
                )
                return
            status_lower = (ended.status or "").lower()
            reason = f"CALL_ENDED:{status_lower}" if status_lower else "CALL_ENDED"
            await self.cleanup_local_call(ended.call_id, reason)
            return

        invite = parse_call_invite(data)
        if invite is None:
            _LOGGER.warning(
                "Push message ignored (not a call invite / call ended).",
                extra={"source": source, "data_keys": sorted((data or {}).keys())},
            )
            return
        await self.handle_incoming_invite(invite, source)

    async def handle_incoming_invite(self, invite: CallInvite, source: str) -> None:
        """Starts ringing for a new invite, ignoring duplicates and busy periods."""
        call_id = invite.call_id
        if call_id in self.registry or self.registry.is_ended(call_id):
            _LOGGER.info("call_invite_duplicate_ignored", extra={"call_id": call_id, "source": source})
            return
        if self.registry.has_ringing_or_active():
            _LOGGER.info("call_invite_ignored_busy", extra={"call_id": call_id, "source": source})
            return

        session = self.registry.add(CallSession(invite=invite))
        try:
            await self.invite_store.persist(invite)
        except Exception:
            _LOGGER.warning("Failed persisting invite; continuing in memory.", extra={"call_id": call_id}, exc_info=True)

        _LOGGER.info("call_invite_received", extra={"call_id": call_id, "source": source})
        self.ui.set(CallStatus.RINGING, call_id, invite.caller_name)
        self._schedule_missed_timeout(session)

        await self._affordance.start_ringing(invite)

        if invite.receiver_id:
            self._spawn(self._send_ringing_ack(invite), "receiver_ringing_ack")
        else:
            _LOGGER.debug("Receiver ringing ack skipped (missing receiverId).", extra={"call_id": call_id})

    async def handle_native_event(self, event: NativeEvent) -> None:
        """Applies a telephony event raised by the native call UI."""
        if event.name == "answer":
            await self.accept_call(event.call_id, "native_answer")
        elif event.name == "end":
            await self.end_call(event.call_id, "native_end")

    # -- transitions ----------------------------------------------------------

    async def accept_call(self, call_id: str, reason: str) -> None:
        session = await self._resolve_session(call_id)
        if session is None or session.status != CallStatus.RINGING:
            _LOGGER.debug("Accept ignored.", extra={"call_id": call_id, "reason": reason})
            return

        session.status = CallStatus.ACCEPTED
        session.cancel_timeout()
        await self._affordance.stop_ringing("accepted")
        self.ui.set(CallStatus.ACCEPTED, call_id, session.invite.caller_name)

        await self.handle_action_once(session.invite, CallAction.ACCEPT)
        _LOGGER.info("call_accepted", extra={"call_id": call_id, "reason": reason})

    async def decline_call(self, call_id: str, reason: str) -> None:
        session = await self._resolve_session(call_id)
        if session is None or session.status != CallStatus.RINGING:
            _LOGGER.debug("Decline ignored.", extra={"call_id": call_id, "reason": reason})
            return

        session.status = CallStatus.DECLINED
        session.cancel_timeout()
        await self._affordance.stop_ringing("declined")
        self.ui.set(CallStatus.DECLINED, call_id, session.invite.caller_name)

        await self.handle_action_once(session.invite, CallAction.DECLINE)
        await self._finish(session)
        _LOGGER.info("call_declined", extra={"call_id": call_id, "reason": reason})

    async def end_call(self, call_id: str, reason: str) -> None:
        """Hangs up. A call that is still ringing is declined instead."""
        session = await self._resolve_session(call_id)
        if session is None:
            _LOGGER.debug("End ignored; unknown call.", extra={"call_id": call_id, "reason": reason})
            return

        session.cancel_timeout()
        await self._affordance.stop_ringing(f"end:{reason}")

        if session.status == CallStatus.RINGING:
            await self.decline_call(call_id, reason)
            return

        await self._finish(session)
        _LOGGER.info("call_ended", extra={"call_id": call_id, "reason": reason})

    async def mark_missed(self, call_id: str) -> None:
        """Timer entry point. Safe to replay: only acts on a ringing call."""
        session = await self._resolve_session(call_id)
        if session is None or session.status != CallStatus.RINGING:
            return

        session.status = CallStatus.MISSED
        self.ui.set(CallStatus.MISSED, call_id, session.invite.caller_name)
        session.cancel_timeout()
        await self._affordance.stop_ringing("missed")

        await self.handle_action_once(session.invite, CallAction.MISSED)
        await self._finish(session)
        _LOGGER.info("call_missed", extra={"call_id": call_id})

    async def cleanup_local_call(self, call_id: str, reason: str) -> None:
        """Tears down local state for a call the backend already ended."""
        existing = self.registry.get(call_id)
        _LOGGER.debug(
            "Cleaning up local call.",
            extra={"call_id": call_id, "reason": reason, "status": existing.status.value if existing else None},
        )
        if existing is not None:
            existing.cancel_timeout()
        await self._affordance.stop_ringing(f"cleanup:{reason}")
        try:
            await self.invite_store.remove(call_id)
        except Exception:
            _LOGGER.warning("Failed removing stored invite during cleanup.", extra={"call_id": call_id}, exc_info=True)
        self.registry.remove(call_id)
        self.ui.set(CallStatus.ENDED, call_id, existing.invite.caller_name if existing else None)

    # -- backend acknowledgement ---------------------------------------------

    async def handle_action_once(self, invite: CallInvite, action: CallAction) -> None:
        """Notifies the backend about ``action`` at most once. Never raises."""
        session = self.registry.get(invite.call_id)
        if session is not None and action in session.processed_actions:
            return
        if await self.ledger.is_done(invite.call_id, action):
            if session is not None:
                session.processed_actions.add(action)
            return

        _LOGGER.debug("Handling action once.", extra={"call_id": invite.call_id, "action": action.value})
        if session is not None:
            session.processed_actions.add(action)

        try:
            await self._backend.deliver_action(invite, action)
        except Exception as exc:
            _LOGGER.warning(
                "backend_ack_failed",
                extra={"call_id": invite.call_id, "action": action.value, "error": str(exc)},
            )
            try:
                await self.queue.enqueue(invite, action, exc)
            except Exception:
                _LOGGER.exception("Failed enqueuing pending action.", extra={"call_id": invite.call_id})
        else:
            _LOGGER.info("backend_ack_success", extra={"call_id": invite.call_id, "action": action.value})
            try:
                await self.ledger.mark_done(invite.call_id, action)
            except Exception:
                _LOGGER.warning("Failed marking action done.", extra={"call_id": invite.call_id}, exc_info=True)

        self._spawn(self.queue.flush(), "retry_flush")

    # -- bootstrap -------------------------------------------------------------

    async def bootstrap(self) -> None:
        """Runs once per process: permissions, telephony, native replay, flush."""
        if self._bootstrap_done:
            return
        self._bootstrap_done = True
        _LOGGER.debug("Call controller bootstrap start.")

        try:
            await self._bridge.request_permissions()
        except Exception:
            _LOGGER.warning("Permission request failed (non-blocking).", exc_info=True)

        try:
            initial_events = await self._bridge.register(self.handle_native_event)
        except Exception:
            _LOGGER.warning("Native telephony registration failed (non-blocking).", exc_info=True)
            initial_events = []
        for event in initial_events:
            try:
                await self.handle_native_event(event)
            except Exception:
                _LOGGER.exception("Failed applying initial native event.", extra={"call_id": event.call_id})

        try:
            await self.apply_native_pending_actions()
        except Exception:
            _LOGGER.exception("Failed applying native pending actions.")

        self._spawn(self.queue.flush(), "bootstrap_flush")
        _LOGGER.debug("Call controller bootstrap done.")

    async def apply_native_pending_actions(self) -> None:
        """Replays actions the native layer recorded while no registry existed."""
        actions = await self._bridge.drain_pending_actions()
        if not actions:
            return
        _LOGGER.info("Applying native pending actions.", extra={"count": len(actions)})

        for pending in actions:
            if not pending.call_id:
                continue
            try:
                if pending.action == CallAction.ACCEPT.value:
                    await self.accept_call(pending.call_id, "native_pending")
                elif pending.action == CallAction.DECLINE.value:
                    await self.decline_call(pending.call_id, "native_pending")
                elif pending.action == CallAction.MISSED.value:
                    await self.mark_missed(pending.call_id)
                else:
                    _LOGGER.warning(
                        "Unknown native pending action.",
                        extra={"call_id": pending.call_id, "action": pending.action},
                    )
            except Exception:
                _LOGGER.exception("Native pending action replay failed.", extra={"call_id": pending.call_id})

    async def wait_idle(self) -> None:
        """Waits for fire-and-forget work (flushes, ringing acks) to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancels session timers and drains background work."""
        self.registry.clear()
        await self.wait_idle()

    # -- internals ---------------------------------------------------------------

    async def _resolve_session(self, call_id: str) -> CallSession | None:
        """Returns the live session, rehydrating it from the invite store."""
        existing = self.registry.get(call_id)
        if existing is not None:
            return existing
        if self.registry.is_ended(call_id):
            return None

        _LOGGER.debug("Rehydrating call state from storage.", extra={"call_id": call_id})
        invite = await self.invite_store.load(call_id)
        if invite is None:
            return None
        # Another event may have rehydrated the same call while we were loading.
        existing = self.registry.get(call_id)
        if existing is not None:
            return existing
        return self.registry.add(CallSession(invite=invite))

    async def _finish(self, session: CallSession) -> None:
        session.status = CallStatus.ENDED
        self.ui.set(CallStatus.ENDED, session.call_id, session.invite.caller_name)
        try:
            await self.invite_store.remove(session.call_id)
        except Exception:
            _LOGGER.warning("Failed removing stored invite.", extra={"call_id": session.call_id}, exc_info=True)
        self.registry.remove(session.call_id)

    def _schedule_missed_timeout(self, session: CallSession) -> None:
        session.cancel_timeout()
        _LOGGER.debug(
            "Scheduling missed-call timeout.",
            extra={"call_id": session.call_id, "ttl_sec": session.invite.ttl_sec},
        )
        session.timeout_task = asyncio.create_task(
            self._missed_after(session.call_id, session.invite.ttl_sec),
            name=f"missed-timeout:{session.call_id}",
        )

    async def _missed_after(self, call_id: str, ttl_sec: int) -> None:
        await self._sleep(ttl_sec)
        try:
            await self.mark_missed(call_id)
        except Exception:
            _LOGGER.exception("Missed-call timeout handling failed.", extra={"call_id": call_id})

    async def _send_ringing_ack(self, invite: CallInvite) -> None:
        try:
            await self._backend.send_receiver_ringing_ack(invite.call_id, invite.receiver_id or "")
        except Exception as exc:
            _LOGGER.warning(
                "Receiver ringing ack failed (non-blocking).",
                extra={"call_id": invite.call_id, "error": str(exc)},
            )
            return
        _LOGGER.debug("Receiver ringing ack succeeded.", extra={"call_id": invite.call_id})

    def _spawn(self, coro: Coroutine[Any, Any, None], label: str) -> None:
        task = asyncio.create_task(self._run_background(coro, label))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_background(self, coro: Coroutine[Any, Any, None], label: str) -> None:
        try:
            await coro
        except Exception:
            _LOGGER.exception("Background task failed.", extra={"task": label})


def build_controller(
    *,
    store: KeyValueStore,
    backend: BackendClient,
    bridge: NativeCallBridge,
    clock_ms: Clock = system_clock_ms,
    sleep: Sleep = asyncio.sleep,
) -> CallLifecycleController:
    """Assembles a controller and its collaborators around one durable store."""
    ledger = ActionLedger(store)
    return CallLifecycleController(
        registry=CallSessionRegistry(),
        invite_store=InviteStore(store),
        ledger=ledger,
        queue=PendingActionQueue(store=store, ledger=ledger, deliverer=backend, clock_ms=clock_ms),
        backend=backend,
        bridge=bridge,
        ui=CallUiStore(clock_ms=clock_ms),
        sleep=sleep,
    )
