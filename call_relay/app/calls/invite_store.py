"""Durable copy of in-flight invites, used to rehydrate lost sessions."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from shared.schemas import CallInvite

from ..storage.base import KeyValueStore

_LOGGER = logging.getLogger(__name__)

INVITE_KEY_PREFIX = "callInvite:v1:"


def invite_key(call_id: str) -> str:
    return f"{INVITE_KEY_PREFIX}{call_id}"


class InviteStore:
    """Keeps one JSON record per active invite, keyed by call id."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def persist(self, invite: CallInvite) -> None:
        _LOGGER.debug("Persisting invite.", extra={"call_id": invite.call_id, "ttl_sec": invite.ttl_sec})
        await self._store.set(invite_key(invite.call_id), invite.model_dump_json(by_alias=True))

    async def load(self, call_id: str) -> CallInvite | None:
        """Returns the stored invite, or ``None`` when absent or unreadable."""
        _LOGGER.debug("Loading invite.", extra={"call_id": call_id})
        try:
            raw = await self._store.get(invite_key(call_id))
        except Exception:
            _LOGGER.warning("Failed reading stored invite.", extra={"call_id": call_id}, exc_info=True)
            return None
        if not raw:
            return None
        try:
            return CallInvite.model_validate_json(raw)
        except ValidationError:
            _LOGGER.warning("Discarding malformed stored invite.", extra={"call_id": call_id})
            return None

    async def remove(self, call_id: str) -> None:
        _LOGGER.debug("Removing invite.", extra={"call_id": call_id})
        await self._store.remove(invite_key(call_id))
