"""Persisted exactly-once guard for backend notifications."""

from __future__ import annotations

import logging

from shared.schemas import CallAction

from ..storage.base import KeyValueStore

_LOGGER = logging.getLogger(__name__)

ACTION_DONE_KEY_PREFIX = "callActionDone:v1:"
_DONE_MARKER = "1"


def action_done_key(call_id: str, action: CallAction) -> str:
    return f"{ACTION_DONE_KEY_PREFIX}{call_id}:{action.value}"


class ActionLedger:
    """One persisted flag per (call, action) pair.

    Once a pair is marked done the backend is never notified about it again,
    regardless of registry or retry-queue state.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def is_done(self, call_id: str, action: CallAction) -> bool:
        """Returns whether the pair was acknowledged. Read failures count as not done."""
        try:
            return await self._store.get(action_done_key(call_id, action)) == _DONE_MARKER
        except Exception:
            _LOGGER.warning(
                "Failed reading action ledger; treating as not done.",
                extra={"call_id": call_id, "action": action.value},
                exc_info=True,
            )
            return False

    async def mark_done(self, call_id: str, action: CallAction) -> None:
        await self._store.set(action_done_key(call_id, action), _DONE_MARKER)
        _LOGGER.debug("Action marked done.", extra={"call_id": call_id, "action": action.value})
