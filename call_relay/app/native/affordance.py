"""Fire-and-forget wrapper around native ringing calls."""

from __future__ import annotations

import logging

from shared.schemas import CallInvite

from .base import NativeCallBridge

_LOGGER = logging.getLogger(__name__)


class BestEffortAffordance:
    """Ringing start/stop that logs failures and never raises.

    The call lifecycle proceeds whether or not the platform UI cooperates.
    """

    def __init__(self, bridge: NativeCallBridge) -> None:
        self._bridge = bridge

    async def start_ringing(self, invite: CallInvite) -> None:
        try:
            await self._bridge.start_ringing(
                call_id=invite.call_id,
                caller_name=invite.caller_name,
                ttl_sec=invite.ttl_sec,
                has_video=invite.has_video,
            )
        except Exception:
            _LOGGER.warning("Native start ringing failed (non-blocking).", extra={"call_id": invite.call_id}, exc_info=True)

    async def stop_ringing(self, reason: str) -> None:
        try:
            await self._bridge.stop_ringing(reason)
        except Exception:
            _LOGGER.warning("Native stop ringing failed (non-blocking).", extra={"reason": reason}, exc_info=True)
