"""Native-side record of call actions taken while the runtime was absent."""

from __future__ import annotations

import json
import logging
import time

from shared.schemas import NativePendingAction

from ..storage.base import KeyValueStore

_LOGGER = logging.getLogger(__name__)

NATIVE_ACTIONS_KEY = "incomingCallActions:v1"


class NativeActionStore:
    """Keeps at most one pending action per call as ``callId|action|ts`` records."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def _load_raw(self) -> list[str]:
        raw = await self._store.get(NATIVE_ACTIONS_KEY)
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            _LOGGER.warning("Native action record is not valid JSON; ignoring.")
            return []
        if not isinstance(parsed, list):
            return []
        return [item for item in parsed if isinstance(item, str)]

    async def record(self, call_id: str, action: str, timestamp_ms: int | None = None) -> None:
        """Records ``action`` for ``call_id``, replacing any earlier record for it."""
        stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        records = [item for item in await self._load_raw() if not item.startswith(f"{call_id}|")]
        records.append(f"{call_id}|{action}|{stamp}")
        await self._store.set(NATIVE_ACTIONS_KEY, json.dumps(records))
        _LOGGER.info("Native action recorded.", extra={"call_id": call_id, "action": action})

    async def drain(self) -> list[NativePendingAction]:
        """Returns all records oldest first and clears them."""
        records = await self._load_raw()
        await self._store.remove(NATIVE_ACTIONS_KEY)

        actions: list[NativePendingAction] = []
        for raw in records:
            parts = raw.split("|")
            if len(parts) < 3:
                continue
            try:
                stamp = int(parts[2])
            except ValueError:
                continue
            actions.append(NativePendingAction(callId=parts[0], action=parts[1], timestampMs=stamp))
        return sorted(actions, key=lambda item: item.timestamp_ms)
