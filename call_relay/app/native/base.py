"""Boundary between the call controller and the platform call UI."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from shared.schemas import NativeEvent, NativePendingAction

# Callback invoked for telephony events (answer/end) raised by the native UI.
NativeEventHandler = Callable[[NativeEvent], Awaitable[None]]


class NativeCallBridge(ABC):
    """Platform call surface: ringing affordance, telephony events, action drain.

    Implementations may raise from any method; the controller only talks to
    ringing through `BestEffortAffordance`.
    """

    @abstractmethod
    async def request_permissions(self) -> None:
        """Requests the notification permissions needed to ring."""

    @abstractmethod
    async def register(self, on_event: NativeEventHandler) -> list[NativeEvent]:
        """Registers telephony integration.

        Returns:
            Events the native layer recorded before registration, in order.
        """

    @abstractmethod
    async def start_ringing(self, *, call_id: str, caller_name: str, ttl_sec: int, has_video: bool) -> None:
        """Shows the incoming-call affordance."""

    @abstractmethod
    async def stop_ringing(self, reason: str) -> None:
        """Stops the affordance. Must be safe when nothing is ringing."""

    @abstractmethod
    async def drain_pending_actions(self) -> list[NativePendingAction]:
        """Returns and clears actions taken while no session registry existed."""
