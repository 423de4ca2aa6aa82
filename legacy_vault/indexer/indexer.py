"""
Event Indexer — rebuilds the vault read-model from contract logs.

Single writer. Each pass reads the checkpoint, walks ``(last + 1 .. head)``
in chunks, applies the chunk's events in ``(block, log_index)`` order and
then advances the checkpoint with a conditional update. A missing
checkpoint means a cold start: it is set to the current head, nothing is
backfilled, and vaults first seen through a later event are read from the
ledger on demand.

Failures:
    - an event whose vault id cannot be recovered is logged and skipped,
      the checkpoint still advances;
    - ledger or database errors abort the chunk without advancing, so the
      next pass retries it;
    - a checkpoint conflict means a second indexer is running and stops
      the loop.
"""
import asyncio
import logging
from typing import Optional

from ..contentstore.base import ContentInfo, ContentStore
from ..exceptions import (
    CheckpointConflict,
    ContentStoreError,
    ContentStoreUnavailable,
    UnrecoverableArgument,
    VaultError,
    VaultNotFound,
)
from ..ledger.abi import DecodedEvent, decode_event, hash_string
from ..ledger.base import VaultLedger, VaultMetadata
from .readmodel import HeirRecord, ReadModel, VaultRecord
from .recovery import VaultIdResolver

logger = logging.getLogger("legacy_vault.indexer")

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_POLL_INTERVAL = 30


class EventIndexer:
    """Poll loop that projects vault contract events into a ``ReadModel``.

    Args:
        ledger: Source of logs, transactions and point reads.
        read_model: Projection storage, including the checkpoint.
        content_store: Optional, used to enrich vaults with file metadata.
        chunk_size: Maximum blocks per ``get_logs`` request.
        poll_interval: Seconds between passes in ``run_forever``.
        resolver: Vault id recovery, shared with other components if given.
        start_block: Lowest block scanned when a backfilled vault's heirs
            are rebuilt from its history.
    """

    def __init__(
        self,
        ledger: VaultLedger,
        read_model: ReadModel,
        content_store: Optional[ContentStore] = None,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        resolver: Optional[VaultIdResolver] = None,
        start_block: int = 0,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._ledger = ledger
        self._read_model = read_model
        self._content_store = content_store
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval
        self._start_block = start_block
        self._resolver = resolver if resolver is not None else VaultIdResolver(ledger)
        self._handlers = {
            "VaultCreated": self._on_vault_created,
            "AccessGranted": self._on_access_granted,
            "AccessRevoked": self._on_access_revoked,
            "ReleaseTimeExtended": self._on_release_extended,
        }
        self._stopping = False
        self._wake = asyncio.Event()
        self.skipped = 0

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Stop after the chunk in flight."""
        self._stopping = True
        self._wake.set()

    async def run_forever(self, interval: Optional[float] = None) -> None:
        interval = self._poll_interval if interval is None else interval
        logger.info("Indexer started (chunk=%d, interval=%ss)", self._chunk_size, interval)
        while not self._stopping:
            try:
                await self.run_once()
            except CheckpointConflict:
                logger.error("Another indexer owns the checkpoint, stopping")
                raise
            except (VaultError, OSError, asyncio.TimeoutError) as err:
                logger.error("Indexer pass failed, will retry: %s", err)
            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Indexer stopped")

    async def run_once(self) -> int:
        """Process every block up to the current head.

        Returns:
            Number of events applied.
        """
        last = await self._read_model.get_checkpoint()
        head = await self._ledger.block_number()
        if last is None:
            await self._read_model.init_checkpoint(head)
            logger.info("Cold start: checkpoint set to block %d", head)
            return 0

        applied = 0
        start = last + 1
        while start <= head and not self._stopping:
            end = min(start + self._chunk_size - 1, head)
            applied += await self._process_chunk(start, end)
            await self._read_model.advance_checkpoint(last, end)
            logger.debug("Checkpoint %d -> %d", last, end)
            last = end
            start = end + 1
        return applied

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------

    async def _process_chunk(self, start: int, end: int) -> int:
        logs = await self._ledger.get_logs(start, end)
        events = [e for e in (decode_event(log) for log in logs) if e is not None]
        events.sort(key=lambda e: e.position)
        if events:
            logger.info("Blocks %d-%d: %d event(s)", start, end, len(events))

        timestamps: dict[int, int] = {}
        applied = 0
        for event in events:
            try:
                event.vault_id = await self._resolver.resolve(event)
            except UnrecoverableArgument as err:
                self.skipped += 1
                logger.warning(
                    "Skipping %s at block %d (tx=%s): %s",
                    event.name, event.block_number, event.tx_hash, err,
                )
                continue
            if event.block_number not in timestamps:
                timestamps[event.block_number] = await self._ledger.get_block_timestamp(
                    event.block_number,
                )
            event.block_timestamp = timestamps[event.block_number]
            if await self._handlers[event.name](event):
                applied += 1
        return applied

    async def _describe(self, pointer: str) -> Optional[ContentInfo]:
        if self._content_store is None:
            return None
        try:
            return await self._content_store.describe(pointer)
        except (ContentStoreError, ContentStoreUnavailable) as err:
            logger.warning("No content metadata for %s: %s", pointer, err)
            return None

    async def _vault_record(
        self, metadata: VaultMetadata, event: DecodedEvent, tx_hash: Optional[str]
    ) -> VaultRecord:
        record = VaultRecord(
            vault_id=metadata.vault_id,
            owner_address=metadata.owner.lower(),
            content_pointer=metadata.content_pointer,
            release_timestamp=metadata.release_timestamp,
            created_at=metadata.created_at,
            block_number=event.block_number,
            tx_hash=tx_hash,
        )
        info = await self._describe(metadata.content_pointer)
        if info is not None:
            record.vault_type = info.vault_type
            record.file_name = info.file_name
            record.file_type = info.mime_type
            record.content_length = info.size
        return record

    async def _ensure_vault(self, event: DecodedEvent) -> bool:
        """Backfill a vault the read-model has not seen yet."""
        if await self._read_model.get_vault(event.vault_id) is not None:
            return True
        try:
            metadata = await self._ledger.get_vault_metadata(event.vault_id)
        except VaultNotFound:
            self.skipped += 1
            logger.warning(
                "Skipping %s for unknown vault %s (tx=%s)",
                event.name, event.vault_id, event.tx_hash,
            )
            return False
        await self._read_model.upsert_vault(await self._vault_record(metadata, event, None))
        await self._read_model.upsert_user(metadata.owner, event.block_number)
        logger.info("Backfilled vault %s from ledger", event.vault_id)
        await self._sync_heirs(event.vault_id, up_to=event.block_number - 1)
        return True

    async def _sync_heirs(self, vault_id: str, up_to: int) -> int:
        """Rebuild a backfilled vault's heir rows from its grant history.

        Scans ``[start_block, up_to]`` for the vault's grant and revoke
        logs. ``is_active`` comes from the ledger, the timestamps from the
        last grant and revoke blocks seen.

        Returns:
            Number of heirs written.
        """
        if up_to < self._start_block:
            return 0
        vault_hash = hash_string(vault_id)
        history: dict[str, dict] = {}
        start = self._start_block
        while start <= up_to:
            end = min(start + self._chunk_size - 1, up_to)
            logs = await self._ledger.get_logs(start, end, vault_id_hash=vault_hash)
            events = [e for e in (decode_event(log) for log in logs) if e is not None]
            events.sort(key=lambda e: e.position)
            for event in events:
                if event.name not in ("AccessGranted", "AccessRevoked"):
                    continue
                entry = history.setdefault(event.args["heir"], {})
                entry["granted" if event.name == "AccessGranted" else "revoked"] = (
                    event.block_number
                )
                entry["block"] = event.block_number
                entry["tx"] = event.tx_hash
            start = end + 1

        timestamps: dict[int, int] = {}

        async def timestamp_of(block: Optional[int]) -> Optional[int]:
            if block is None:
                return None
            if block not in timestamps:
                timestamps[block] = await self._ledger.get_block_timestamp(block)
            return timestamps[block]

        for heir, entry in history.items():
            active = await self._ledger.is_authorized(vault_id, heir)
            await self._read_model.upsert_user(heir, entry["block"])
            await self._read_model.upsert_heir(HeirRecord(
                vault_id=vault_id,
                heir_address=heir,
                is_active=active,
                granted_at=await timestamp_of(entry.get("granted")),
                revoked_at=None if active else await timestamp_of(entry.get("revoked")),
                block_number=entry["block"],
                tx_hash=entry["tx"],
            ))
        if history:
            logger.info("Vault %s: synced %d heir(s) from history", vault_id, len(history))
        return len(history)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_vault_created(self, event: DecodedEvent) -> bool:
        metadata = VaultMetadata(
            vault_id=event.vault_id,
            owner=event.args["owner"],
            content_pointer=event.args["cid"],
            release_timestamp=int(event.args["releaseTimestamp"]),
            created_at=event.block_timestamp,
        )
        await self._read_model.upsert_vault(
            await self._vault_record(metadata, event, event.tx_hash),
        )
        await self._read_model.upsert_user(metadata.owner, event.block_number)
        logger.info("Indexed vault %s (owner=%s)", event.vault_id, metadata.owner)
        return True

    async def _upsert_heir(self, event: DecodedEvent, granted: bool) -> bool:
        if not await self._ensure_vault(event):
            return False
        heir = event.args["heir"]
        # current on-chain state wins over the event being replayed
        active = await self._ledger.is_authorized(event.vault_id, heir)
        await self._read_model.upsert_heir(HeirRecord(
            vault_id=event.vault_id,
            heir_address=heir,
            is_active=active,
            granted_at=event.block_timestamp if granted else None,
            revoked_at=None if active or granted else event.block_timestamp,
            block_number=event.block_number,
            tx_hash=event.tx_hash,
        ))
        await self._read_model.upsert_user(heir, event.block_number)
        logger.info(
            "Vault %s: heir %s %s (active=%s)",
            event.vault_id, heir, "granted" if granted else "revoked", active,
        )
        return True

    async def _on_access_granted(self, event: DecodedEvent) -> bool:
        return await self._upsert_heir(event, granted=True)

    async def _on_access_revoked(self, event: DecodedEvent) -> bool:
        return await self._upsert_heir(event, granted=False)

    async def _on_release_extended(self, event: DecodedEvent) -> bool:
        if not await self._ensure_vault(event):
            return False
        new_timestamp = int(event.args["newTimestamp"])
        await self._read_model.update_release_time(
            event.vault_id, new_timestamp, event.block_number, event.tx_hash,
        )
        logger.info("Vault %s: release time now %d", event.vault_id, new_timestamp)
        return True
