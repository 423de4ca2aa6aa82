"""Event-sourced read-model of the vault contract."""

from .indexer import EventIndexer
from .readmodel import (
    SCHEMA_SQL,
    HeirRecord,
    MemoryReadModel,
    PostgresReadModel,
    ReadModel,
    UserRecord,
    VaultRecord,
)
from .recovery import VaultIdResolver

__all__ = [
    "EventIndexer",
    "SCHEMA_SQL",
    "HeirRecord",
    "MemoryReadModel",
    "PostgresReadModel",
    "ReadModel",
    "UserRecord",
    "VaultRecord",
    "VaultIdResolver",
]
