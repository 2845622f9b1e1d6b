"""relaykeys storage module."""

from .connection_storage import (
    ConnectionStorage,
    InMemoryConnectionStorage,
    FileConnectionStorage,
)
from .resource_key_cache import ResourceKeyCache
from .key_directory import KeyDirectory, InMemoryKeyDirectory
from .sqlite_directory import SQLiteKeyDirectory

__all__ = [
    "ConnectionStorage",
    "InMemoryConnectionStorage",
    "FileConnectionStorage",
    "ResourceKeyCache",
    "KeyDirectory",
    "InMemoryKeyDirectory",
    "SQLiteKeyDirectory",
]
