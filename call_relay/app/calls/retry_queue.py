"""Persisted queue of backend notifications awaiting acknowledgement.

Entries are retried with capped exponential backoff. The queue is stored as a
single JSON array so every flush pass ends in exactly one store write.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from pydantic import ValidationError

from shared.schemas import CallAction, CallInvite, PendingAction

from ..backend_client import redact_url
from ..config import settings
from ..storage.base import KeyValueStore
from .ledger import ActionLedger

_LOGGER = logging.getLogger(__name__)

PENDING_ACTIONS_KEY = "pendingCallActions:v1"

Clock = Callable[[], int]


class ActionDeliverer(Protocol):
    def deliver_action(self, invite: CallInvite, action: CallAction) -> Awaitable[None]: ...


def system_clock_ms() -> int:
    """Returns wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def compute_backoff_ms(attempts: int) -> int:
    """Returns the retry delay after ``attempts`` consecutive failures.

    With default settings this yields 2s, 4s, 8s, 16s, then 30s forever.
    """
    exponent = min(attempts, settings.RETRY_MAX_EXPONENT)
    return min(settings.RETRY_MAX_DELAY_MS, settings.RETRY_BASE_DELAY_MS * 2**exponent)


def _error_text(error: BaseException | str | None) -> str:
    if error is None:
        return ""
    return str(error)


class PendingActionQueue:
    """Durable retry queue for unacknowledged (call, action) notifications."""

    def __init__(
        self,
        *,
        store: KeyValueStore,
        ledger: ActionLedger,
        deliverer: ActionDeliverer,
        clock_ms: Clock = system_clock_ms,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._deliverer = deliverer
        self._clock_ms = clock_ms
        self._flush_in_flight = False

    @property
    def flush_in_flight(self) -> bool:
        return self._flush_in_flight

    async def load(self) -> list[PendingAction]:
        """Returns persisted entries; unreadable state is treated as empty."""
        try:
            raw = await self._store.get(PENDING_ACTIONS_KEY)
        except Exception:
            _LOGGER.warning("Failed reading pending actions; treating as empty.", exc_info=True)
            return []
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            _LOGGER.warning("Pending actions record is not valid JSON; treating as empty.")
            return []
        if not isinstance(parsed, list):
            return []

        entries: list[PendingAction] = []
        for item in parsed:
            try:
                entries.append(PendingAction.model_validate(item))
            except ValidationError:
                _LOGGER.warning("Dropping malformed pending action.", extra={"entry": str(item)[:200]})
        return entries

    async def save(self, entries: list[PendingAction]) -> None:
        payload = [entry.model_dump(mode="json", by_alias=True) for entry in entries]
        await self._store.set(PENDING_ACTIONS_KEY, json.dumps(payload))

    async def enqueue(
        self,
        invite: CallInvite,
        action: CallAction,
        error: BaseException | str | None = None,
    ) -> None:
        """Adds a retry entry unless the pair is already done or already queued."""
        if await self._ledger.is_done(invite.call_id, action):
            _LOGGER.debug(
                "Enqueue skipped; action already done.",
                extra={"call_id": invite.call_id, "action": action.value},
            )
            return

        entries = await self.load()
        key = f"{invite.call_id}:{action.value}"
        if any(entry.key == key for entry in entries):
            _LOGGER.debug("Enqueue skipped; action already queued.", extra={"call_id": invite.call_id, "action": action.value})
            return

        entries.append(
            PendingAction(
                callId=invite.call_id,
                action=action,
                invite=invite,
                attempts=0,
                nextAttemptAtMs=self._clock_ms(),
                lastError=_error_text(error),
            )
        )
        await self.save(entries)
        _LOGGER.info(
            "Pending action enqueued.",
            extra={"call_id": invite.call_id, "action": action.value, "queue_size": len(entries)},
        )

    async def flush(self) -> None:
        """Retries every eligible entry once and persists what remains.

        Single-flight: a call made while another flush is running returns
        immediately without queueing a second pass.
        """
        if self._flush_in_flight:
            _LOGGER.debug("Flush already in flight; dropping request.")
            return
        self._flush_in_flight = True
        try:
            await self._flush_once()
        finally:
            self._flush_in_flight = False

    async def _flush_once(self) -> None:
        now = self._clock_ms()
        entries = await self.load()
        _LOGGER.debug("Retry flush start.", extra={"count": len(entries)})
        remaining: list[PendingAction] = []

        for pending in entries:
            if pending.next_attempt_at_ms > now:
                remaining.append(pending)
                continue

            if await self._ledger.is_done(pending.call_id, pending.action):
                _LOGGER.debug(
                    "Dropping pending action already marked done.",
                    extra={"call_id": pending.call_id, "action": pending.action.value},
                )
                continue

            _LOGGER.debug(
                "Retry attempt.",
                extra={
                    "call_id": pending.call_id,
                    "action": pending.action.value,
                    "attempts": pending.attempts,
                    "endpoint": redact_url(pending.invite.action_endpoint) if pending.invite.action_endpoint else None,
                },
            )
            try:
                await self._deliverer.deliver_action(pending.invite, pending.action)
            except Exception as exc:
                attempts = pending.attempts + 1
                delay_ms = compute_backoff_ms(attempts)
                _LOGGER.warning(
                    "Retry attempt failed.",
                    extra={
                        "call_id": pending.call_id,
                        "action": pending.action.value,
                        "attempts": attempts,
                        "delay_ms": delay_ms,
                        "error": str(exc),
                    },
                )
                remaining.append(
                    pending.model_copy(
                        update={
                            "attempts": attempts,
                            "last_error": _error_text(exc),
                            "next_attempt_at_ms": self._clock_ms() + delay_ms,
                        }
                    )
                )
                continue

            _LOGGER.info(
                "backend_ack_success",
                extra={"call_id": pending.call_id, "action": pending.action.value, "recovered": True},
            )
            try:
                await self._ledger.mark_done(pending.call_id, pending.action)
            except Exception:
                _LOGGER.warning(
                    "Failed marking recovered action done.",
                    extra={"call_id": pending.call_id, "action": pending.action.value},
                    exc_info=True,
                )

        # Entries enqueued while deliveries were awaited are not in the snapshot.
        snapshot_keys = {pending.key for pending in entries}
        for pending in await self.load():
            if pending.key not in snapshot_keys:
                remaining.append(pending)

        await self.save(remaining)
        _LOGGER.debug("Retry flush done.", extra={"remaining": len(remaining)})
