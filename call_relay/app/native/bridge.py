"""Native bridge backed by the shared durable store."""

from __future__ import annotations

import logging

from shared.schemas import NativeEvent, NativePendingAction

from ..storage.base import KeyValueStore
from .action_store import NativeActionStore
from .base import NativeCallBridge, NativeEventHandler

_LOGGER = logging.getLogger(__name__)


class LocalNativeBridge(NativeCallBridge):
    """Bridge for hosts without a platform call UI.

    Ringing is tracked as state, telephony events are delivered through
    `emit`, and actions recorded while the runtime was absent live in a
    `NativeActionStore` on the durable store.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.actions = NativeActionStore(store)
        self.ringing_call_id: str | None = None
        self.permissions_requested = False
        self._on_event: NativeEventHandler | None = None
        self._early_events: list[NativeEvent] = []

    @property
    def registered(self) -> bool:
        return self._on_event is not None

    async def request_permissions(self) -> None:
        self.permissions_requested = True
        _LOGGER.debug("Native permissions requested.")

    async def register(self, on_event: NativeEventHandler) -> list[NativeEvent]:
        self._on_event = on_event
        initial, self._early_events = self._early_events, []
        _LOGGER.debug("Native telephony registered.", extra={"initial_events": len(initial)})
        return initial

    async def emit(self, event: NativeEvent) -> None:
        """Delivers a telephony event, buffering it until registration."""
        if self._on_event is None:
            self._early_events.append(event)
            return
        await self._on_event(event)

    async def start_ringing(self, *, call_id: str, caller_name: str, ttl_sec: int, has_video: bool) -> None:
        self.ringing_call_id = call_id
        _LOGGER.info(
            "Native ringing started.",
            extra={"call_id": call_id, "caller_name": caller_name, "ttl_sec": ttl_sec, "has_video": has_video},
        )

    async def stop_ringing(self, reason: str) -> None:
        if self.ringing_call_id is None:
            return
        _LOGGER.info("Native ringing stopped.", extra={"call_id": self.ringing_call_id, "reason": reason})
        self.ringing_call_id = None

    async def drain_pending_actions(self) -> list[NativePendingAction]:
        try:
            return await self.actions.drain()
        except Exception:
            _LOGGER.warning("Failed draining native pending actions.", exc_info=True)
            return []
