"""Durable key-value storage backends."""

from .base import KeyValueStore
from .memory import InMemoryKeyValueStore
from .postgres import PostgresKeyValueStore

__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "PostgresKeyValueStore",
]
