"""
Vault read-model — queryable projection of the vault contract's events.

Writes are upserts on natural keys (``vault_id``; ``(vault_id,
heir_address)``) guarded by the block that produced them, so applying an
event twice, or applying an older event after a newer one, changes nothing.

The checkpoint is a single ``indexer_state`` row advanced with a
conditional update; losing that race raises ``CheckpointConflict``.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

import asyncpg

from ..exceptions import CheckpointConflict, ReadModelUnavailable

logger = logging.getLogger("legacy_vault.indexer")

CHECKPOINT_ID = "main"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS vaults (
    vault_id TEXT PRIMARY KEY,
    owner_address TEXT NOT NULL,
    content_pointer TEXT NOT NULL,
    release_timestamp BIGINT NOT NULL,
    created_at BIGINT NOT NULL,
    vault_type TEXT NOT NULL DEFAULT 'text',
    file_name TEXT,
    file_type TEXT,
    content_length BIGINT,
    block_number BIGINT NOT NULL DEFAULT 0,
    tx_hash TEXT,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS vaults_owner_idx ON vaults (owner_address);

CREATE TABLE IF NOT EXISTS heirs (
    vault_id TEXT NOT NULL REFERENCES vaults (vault_id),
    heir_address TEXT NOT NULL,
    is_active BOOLEAN NOT NULL,
    granted_at BIGINT,
    revoked_at BIGINT,
    block_number BIGINT NOT NULL DEFAULT 0,
    tx_hash TEXT,
    PRIMARY KEY (vault_id, heir_address)
);
CREATE INDEX IF NOT EXISTS heirs_heir_idx ON heirs (heir_address);

CREATE TABLE IF NOT EXISTS users (
    wallet_address TEXT PRIMARY KEY,
    first_seen_block BIGINT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS indexer_state (
    id TEXT PRIMARY KEY,
    last_block BIGINT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_UPSERT_VAULT = """
INSERT INTO vaults (vault_id, owner_address, content_pointer, release_timestamp,
                    created_at, vault_type, file_name, file_type, content_length,
                    block_number, tx_hash)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
ON CONFLICT (vault_id)
DO UPDATE SET owner_address = EXCLUDED.owner_address,
              content_pointer = EXCLUDED.content_pointer,
              release_timestamp = EXCLUDED.release_timestamp,
              created_at = EXCLUDED.created_at,
              vault_type = CASE WHEN EXCLUDED.file_name IS NULL
                                THEN vaults.vault_type ELSE EXCLUDED.vault_type END,
              file_name = COALESCE(EXCLUDED.file_name, vaults.file_name),
              file_type = COALESCE(EXCLUDED.file_type, vaults.file_type),
              content_length = COALESCE(EXCLUDED.content_length, vaults.content_length),
              block_number = EXCLUDED.block_number,
              tx_hash = EXCLUDED.tx_hash,
              updated_at = NOW()
WHERE vaults.block_number <= EXCLUDED.block_number
"""

_UPDATE_RELEASE = """
UPDATE vaults
SET release_timestamp = $2, block_number = $3, tx_hash = $4, updated_at = NOW()
WHERE vault_id = $1 AND block_number <= $3
"""

_UPSERT_HEIR = """
INSERT INTO heirs (vault_id, heir_address, is_active, granted_at, revoked_at,
                   block_number, tx_hash)
VALUES ($1, $2, $3, $4, $5, $6, $7)
ON CONFLICT (vault_id, heir_address)
DO UPDATE SET is_active = EXCLUDED.is_active,
              granted_at = COALESCE(EXCLUDED.granted_at, heirs.granted_at),
              revoked_at = EXCLUDED.revoked_at,
              block_number = EXCLUDED.block_number,
              tx_hash = EXCLUDED.tx_hash
WHERE heirs.block_number <= EXCLUDED.block_number
"""

_UPSERT_USER = """
INSERT INTO users (wallet_address, first_seen_block) VALUES ($1, $2)
ON CONFLICT (wallet_address)
DO UPDATE SET first_seen_block = LEAST(users.first_seen_block, EXCLUDED.first_seen_block),
              updated_at = NOW()
"""

_SELECT_VAULT = "SELECT * FROM vaults WHERE vault_id = $1"

_SELECT_OWNER_VAULTS = """
SELECT * FROM vaults WHERE owner_address = $1 ORDER BY created_at DESC, vault_id
"""

_SELECT_USER = "SELECT * FROM users WHERE wallet_address = $1"

_SELECT_HEIR = "SELECT * FROM heirs WHERE vault_id = $1 AND heir_address = $2"

_SELECT_HEIR_GRANTS = """
SELECT * FROM heirs
WHERE heir_address = $1 AND (is_active OR NOT $2)
ORDER BY granted_at DESC NULLS LAST, vault_id
"""

_SELECT_CHECKPOINT = "SELECT last_block FROM indexer_state WHERE id = $1"

_INIT_CHECKPOINT = """
INSERT INTO indexer_state (id, last_block) VALUES ($1, $2)
ON CONFLICT (id) DO NOTHING
"""

_ADVANCE_CHECKPOINT = """
UPDATE indexer_state
SET last_block = $3, updated_at = NOW()
WHERE id = $1 AND last_block = $2
"""


@dataclass
class VaultRecord:
    vault_id: str
    owner_address: str
    content_pointer: str
    release_timestamp: int
    created_at: int
    vault_type: str = "text"
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    content_length: Optional[int] = None
    block_number: int = 0
    tx_hash: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "VaultRecord":
        return cls(**{f.name: row[f.name] for f in fields(cls)})


@dataclass
class HeirRecord:
    vault_id: str
    heir_address: str
    is_active: bool
    granted_at: Optional[int] = None
    revoked_at: Optional[int] = None
    block_number: int = 0
    tx_hash: Optional[str] = None

    @classmethod
    def from_row(cls, row: Any) -> "HeirRecord":
        return cls(**{f.name: row[f.name] for f in fields(cls)})


@dataclass
class UserRecord:
    wallet_address: str
    first_seen_block: int

    @classmethod
    def from_row(cls, row: Any) -> "UserRecord":
        return cls(**{f.name: row[f.name] for f in fields(cls)})


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class ReadModel(ABC):
    """Storage for the indexer's projection and checkpoint."""

    # -- checkpoint -------------------------------------------------------

    @abstractmethod
    async def get_checkpoint(self) -> Optional[int]:
        """Last fully processed block, or None before the first run."""

    @abstractmethod
    async def init_checkpoint(self, block: int) -> None:
        """Create the checkpoint row.

        Raises:
            CheckpointConflict: If another indexer created it first.
        """

    @abstractmethod
    async def advance_checkpoint(self, expected: int, block: int) -> None:
        """Move the checkpoint from ``expected`` to ``block``.

        Raises:
            CheckpointConflict: If the stored value is not ``expected``.
        """

    # -- writes -----------------------------------------------------------

    @abstractmethod
    async def upsert_vault(self, record: VaultRecord) -> None:
        ...

    @abstractmethod
    async def update_release_time(
        self, vault_id: str, release_timestamp: int, block_number: int, tx_hash: str
    ) -> None:
        ...

    @abstractmethod
    async def upsert_heir(self, record: HeirRecord) -> None:
        ...

    @abstractmethod
    async def upsert_user(self, address: str, block_number: int) -> None:
        """Record a wallet seen as owner or heir; keeps the earliest block."""

    # -- queries ----------------------------------------------------------

    @abstractmethod
    async def get_vault(self, vault_id: str) -> Optional[VaultRecord]:
        ...

    @abstractmethod
    async def get_heir(self, vault_id: str, heir: str) -> Optional[HeirRecord]:
        ...

    @abstractmethod
    async def get_user(self, address: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def list_owner_vaults(self, owner: str) -> list[VaultRecord]:
        ...

    @abstractmethod
    async def list_heir_grants(
        self, heir: str, active_only: bool = True
    ) -> list[HeirRecord]:
        ...


class PostgresReadModel(ReadModel):
    """Read-model in PostgreSQL through an asyncpg-compatible pool.

    Args:
        db_pool: asyncpg-compatible connection pool.
        checkpoint_id: Row id of this indexer's checkpoint.
    """

    def __init__(self, db_pool: Any, checkpoint_id: str = CHECKPOINT_ID):
        self._db = db_pool
        self._checkpoint_id = checkpoint_id

    @asynccontextmanager
    async def _connection(self):
        """Pool connection; driver and network failures become transient."""
        try:
            async with self._db.acquire() as conn:
                yield conn
        except (
            asyncpg.PostgresError,
            asyncpg.InterfaceError,
            OSError,
            asyncio.TimeoutError,
        ) as err:
            raise ReadModelUnavailable(
                "Read-model database unavailable", {"error": str(err)}
            ) from err

    async def create_schema(self) -> None:
        """Create the tables if they do not exist."""
        async with self._connection() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Read-model schema ready")

    async def get_checkpoint(self) -> Optional[int]:
        async with self._connection() as conn:
            value = await conn.fetchval(_SELECT_CHECKPOINT, self._checkpoint_id)
        return None if value is None else int(value)

    async def init_checkpoint(self, block: int) -> None:
        async with self._connection() as conn:
            status = await conn.execute(_INIT_CHECKPOINT, self._checkpoint_id, block)
        if _affected(status) != 1:
            raise CheckpointConflict(
                "Checkpoint already initialised by another indexer",
                {"id": self._checkpoint_id},
            )

    async def advance_checkpoint(self, expected: int, block: int) -> None:
        async with self._connection() as conn:
            status = await conn.execute(
                _ADVANCE_CHECKPOINT, self._checkpoint_id, expected, block,
            )
        if _affected(status) != 1:
            raise CheckpointConflict(
                "Checkpoint moved by another indexer",
                {"id": self._checkpoint_id, "expected": expected, "block": block},
            )

    async def upsert_vault(self, record: VaultRecord) -> None:
        async with self._connection() as conn:
            await conn.execute(
                _UPSERT_VAULT,
                record.vault_id, record.owner_address, record.content_pointer,
                record.release_timestamp, record.created_at, record.vault_type,
                record.file_name, record.file_type, record.content_length,
                record.block_number, record.tx_hash,
            )

    async def update_release_time(
        self, vault_id: str, release_timestamp: int, block_number: int, tx_hash: str
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(
                _UPDATE_RELEASE, vault_id, release_timestamp, block_number, tx_hash,
            )

    async def upsert_heir(self, record: HeirRecord) -> None:
        async with self._connection() as conn:
            await conn.execute(
                _UPSERT_HEIR,
                record.vault_id, record.heir_address, record.is_active,
                record.granted_at, record.revoked_at,
                record.block_number, record.tx_hash,
            )

    async def upsert_user(self, address: str, block_number: int) -> None:
        async with self._connection() as conn:
            await conn.execute(_UPSERT_USER, address.lower(), block_number)

    async def get_vault(self, vault_id: str) -> Optional[VaultRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(_SELECT_VAULT, vault_id)
        return None if row is None else VaultRecord.from_row(row)

    async def get_heir(self, vault_id: str, heir: str) -> Optional[HeirRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(_SELECT_HEIR, vault_id, heir.lower())
        return None if row is None else HeirRecord.from_row(row)

    async def get_user(self, address: str) -> Optional[UserRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(_SELECT_USER, address.lower())
        return None if row is None else UserRecord.from_row(row)

    async def list_owner_vaults(self, owner: str) -> list[VaultRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(_SELECT_OWNER_VAULTS, owner.lower())
        return [VaultRecord.from_row(r) for r in rows]

    async def list_heir_grants(
        self, heir: str, active_only: bool = True
    ) -> list[HeirRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(_SELECT_HEIR_GRANTS, heir.lower(), active_only)
        return [HeirRecord.from_row(r) for r in rows]


class MemoryReadModel(ReadModel):
    """Dict-backed read-model with the same upsert rules as PostgreSQL."""

    def __init__(self):
        self.vaults: dict[str, VaultRecord] = {}
        self.heirs: dict[tuple[str, str], HeirRecord] = {}
        self.users: dict[str, UserRecord] = {}
        self.checkpoint: Optional[int] = None

    async def get_checkpoint(self) -> Optional[int]:
        return self.checkpoint

    async def init_checkpoint(self, block: int) -> None:
        if self.checkpoint is not None:
            raise CheckpointConflict("Checkpoint already initialised by another indexer")
        self.checkpoint = block

    async def advance_checkpoint(self, expected: int, block: int) -> None:
        if self.checkpoint != expected:
            raise CheckpointConflict(
                "Checkpoint moved by another indexer",
                {"expected": expected, "stored": self.checkpoint},
            )
        self.checkpoint = block

    async def upsert_vault(self, record: VaultRecord) -> None:
        current = self.vaults.get(record.vault_id)
        if current is None:
            self.vaults[record.vault_id] = replace(record)
            return
        if current.block_number > record.block_number:
            return
        self.vaults[record.vault_id] = replace(
            record,
            vault_type=current.vault_type if record.file_name is None else record.vault_type,
            file_name=record.file_name or current.file_name,
            file_type=record.file_type or current.file_type,
            content_length=(
                current.content_length if record.content_length is None
                else record.content_length
            ),
        )

    async def update_release_time(
        self, vault_id: str, release_timestamp: int, block_number: int, tx_hash: str
    ) -> None:
        current = self.vaults.get(vault_id)
        if current is None or current.block_number > block_number:
            return
        self.vaults[vault_id] = replace(
            current,
            release_timestamp=release_timestamp,
            block_number=block_number,
            tx_hash=tx_hash,
        )

    async def upsert_heir(self, record: HeirRecord) -> None:
        key = (record.vault_id, record.heir_address)
        current = self.heirs.get(key)
        if current is not None and current.block_number > record.block_number:
            return
        granted_at = record.granted_at
        if granted_at is None and current is not None:
            granted_at = current.granted_at
        self.heirs[key] = replace(record, granted_at=granted_at)

    async def upsert_user(self, address: str, block_number: int) -> None:
        address = address.lower()
        current = self.users.get(address)
        if current is not None:
            block_number = min(current.first_seen_block, block_number)
        self.users[address] = UserRecord(address, block_number)

    async def get_vault(self, vault_id: str) -> Optional[VaultRecord]:
        return self.vaults.get(vault_id)

    async def get_heir(self, vault_id: str, heir: str) -> Optional[HeirRecord]:
        return self.heirs.get((vault_id, heir.lower()))

    async def get_user(self, address: str) -> Optional[UserRecord]:
        return self.users.get(address.lower())

    async def list_owner_vaults(self, owner: str) -> list[VaultRecord]:
        owner = owner.lower()
        return sorted(
            (v for v in self.vaults.values() if v.owner_address == owner),
            key=lambda v: (-v.created_at, v.vault_id),
        )

    async def list_heir_grants(
        self, heir: str, active_only: bool = True
    ) -> list[HeirRecord]:
        heir = heir.lower()
        return sorted(
            (
                h for h in self.heirs.values()
                if h.heir_address == heir and (h.is_active or not active_only)
            ),
            key=lambda h: (-(h.granted_at or 0), h.vault_id),
        )
