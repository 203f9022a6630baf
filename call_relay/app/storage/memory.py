"""In-process key-value store used when no database is configured."""

from __future__ import annotations

import logging

from .base import KeyValueStore

_LOGGER = logging.getLogger(__name__)


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store. State lives only as long as the instance."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        _LOGGER.debug("Memory store set.", extra={"key": key, "value_length": len(value)})
        self._data[key] = value

    async def remove(self, key: str) -> None:
        _LOGGER.debug("Memory store remove.", extra={"key": key})
        self._data.pop(key, None)

    def snapshot(self) -> dict[str, str]:
        """Returns a copy of all stored records."""
        return dict(self._data)
