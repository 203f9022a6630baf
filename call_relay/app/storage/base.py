"""Durable key-value store abstraction shared by all persisted call state."""

from __future__ import annotations

from abc import ABC, abstractmethod


class KeyValueStore(ABC):
    """Asynchronous string key-value store that survives process restart.

    Implementations offer no transactions and no atomic multi-key updates.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Returns the stored value, or ``None`` when the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Stores ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Deletes ``key``. Removing an absent key is not an error."""

    async def aclose(self) -> None:
        """Releases resources held by the store. Stores without any keep the default."""
        return None
