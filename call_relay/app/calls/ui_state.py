"""Observable projection of the current call status for display."""

from __future__ import annotations

import logging
from collections.abc import Callable

from shared.schemas import CallStatus, CallUiState

from .retry_queue import Clock, system_clock_ms

_LOGGER = logging.getLogger(__name__)

Listener = Callable[[CallUiState], None]


class CallUiStore:
    """Holds the last applied call status and notifies subscribers on change."""

    def __init__(self, *, clock_ms: Clock = system_clock_ms) -> None:
        self._clock_ms = clock_ms
        self._state = CallUiState(status=CallStatus.IDLE, lastEventAtMs=clock_ms())
        self._listeners: list[Listener] = []

    def get(self) -> CallUiState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Registers ``listener`` and returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set(self, status: CallStatus, call_id: str | None = None, caller_name: str | None = None) -> CallUiState:
        self._state = CallUiState(
            status=status,
            callId=call_id,
            callerName=caller_name,
            lastEventAtMs=self._clock_ms(),
        )
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                _LOGGER.exception("Call UI listener failed.")
        return self._state
