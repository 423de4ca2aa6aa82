"""
In-memory vault contract for local development and tests.

Every transaction is mined into its own block, emits the same logs the
deployed contract emits (indexed strings hashed) and records ABI-encoded
calldata, so the indexer sees exactly what it would see on a real node.
"""
import asyncio
import logging
import secrets
import time
from typing import Callable, Optional, Sequence

from ..exceptions import (
    DuplicateVaultId,
    InvalidVaultId,
    ReleaseTimeNotInFuture,
    VaultNotFound,
)
from ..vault.lifecycle import VaultLifecycle
from .abi import RawLog, encode_call, encode_event
from .base import (
    CallerContext,
    TransactionInfo,
    VaultLedger,
    VaultMetadata,
    normalize_address,
)

logger = logging.getLogger("legacy_vault.ledger")

DEFAULT_CONTRACT = "0x00000000000000000000000000000000000ba017"


class InMemoryLedger(VaultLedger):
    """Single-process simulation of the vault contract."""

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        contract_address: str = DEFAULT_CONTRACT,
    ):
        self._clock = clock or (lambda: int(time.time()))
        self._contract = contract_address.lower()
        self._vaults: dict[str, VaultLifecycle] = {}
        self._records: dict[str, dict] = {}
        self._owners: dict[str, list[str]] = {}
        self._heir_index: dict[str, list[str]] = {}
        self._logs: list[RawLog] = []
        self._transactions: dict[str, TransactionInfo] = {}
        self._block_times: dict[int, int] = {0: self._clock()}
        self._block = 0
        self._lock = asyncio.Lock()
        self.write_count = 0

    @property
    def contract_address(self) -> str:
        return self._contract

    # ------------------------------------------------------------------
    # Mining helpers
    # ------------------------------------------------------------------

    def _lifecycle(self, vault_id: str) -> VaultLifecycle:
        try:
            return self._vaults[vault_id]
        except KeyError:
            raise VaultNotFound("Vault does not exist", {"vault_id": vault_id}) from None

    def _mine(self, caller: CallerContext, calldata: str, events: list[tuple[str, dict]]) -> str:
        self._block += 1
        self._block_times[self._block] = self._clock()
        tx_hash = "0x" + secrets.token_hex(32)
        self._transactions[tx_hash] = TransactionInfo(
            tx_hash=tx_hash,
            sender=caller.address,
            input=calldata,
            block_number=self._block,
        )
        for index, (name, values) in enumerate(events):
            self._logs.append(encode_event(
                name, values,
                block_number=self._block,
                tx_hash=tx_hash,
                log_index=index,
                address=self._contract,
            ))
        self.write_count += 1
        logger.debug("Mined block %d tx=%s events=%d", self._block, tx_hash, len(events))
        return tx_hash

    def mine_empty_blocks(self, count: int) -> int:
        """Advance the chain without transactions."""
        for _ in range(count):
            self._block += 1
            self._block_times[self._block] = self._clock()
        return self._block

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def create_vault(
        self,
        caller: CallerContext,
        vault_id: str,
        content_pointer: str,
        encrypted_key_handle: str,
        proof: str,
        release_timestamp: int,
    ) -> str:
        async with self._lock:
            if not vault_id:
                raise InvalidVaultId("Vault ID cannot be empty")
            if vault_id in self._vaults:
                raise DuplicateVaultId("Vault ID already exists", {"vault_id": vault_id})
            now = self._clock()
            if release_timestamp <= now:
                raise ReleaseTimeNotInFuture(
                    "Release time must be in the future",
                    {"release_timestamp": release_timestamp, "now": now},
                )
            owner = caller.address
            self._vaults[vault_id] = VaultLifecycle(
                vault_id=vault_id, owner=owner, release_timestamp=release_timestamp,
            )
            self._records[vault_id] = {
                "content_pointer": content_pointer,
                "handle": encrypted_key_handle,
                "created_at": now,
            }
            self._owners.setdefault(owner, []).append(vault_id)
            return self._mine(
                caller,
                encode_call(
                    "createVault", vault_id, content_pointer,
                    encrypted_key_handle, proof, release_timestamp,
                ),
                [("VaultCreated", {
                    "vaultId": vault_id, "owner": owner,
                    "cid": content_pointer, "releaseTimestamp": release_timestamp,
                })],
            )

    def _grant(self, caller: CallerContext, vault_id: str, heirs: Sequence[str]) -> list[str]:
        vault = self._lifecycle(vault_id)
        now = self._clock()
        # validate all before applying any, the transaction is atomic
        normalized = [vault.check_grant(caller.address, h, now) for h in heirs]
        for heir in normalized:
            vault.grant(caller.address, heir, now)
            vaults = self._heir_index.setdefault(heir, [])
            if vault_id not in vaults:
                vaults.append(vault_id)
        return normalized

    async def grant_access(self, caller: CallerContext, vault_id: str, heir: str) -> str:
        async with self._lock:
            (heir,) = self._grant(caller, vault_id, [heir])
            return self._mine(
                caller,
                encode_call("grantAccess", vault_id, heir),
                [("AccessGranted", {"vaultId": vault_id, "heir": heir})],
            )

    async def grant_access_to_multiple(
        self, caller: CallerContext, vault_id: str, heirs: Sequence[str]
    ) -> str:
        async with self._lock:
            heirs = self._grant(caller, vault_id, heirs)
            return self._mine(
                caller,
                encode_call("grantAccessToMultiple", vault_id, heirs),
                [("AccessGranted", {"vaultId": vault_id, "heir": h}) for h in heirs],
            )

    async def revoke_access(self, caller: CallerContext, vault_id: str, heir: str) -> str:
        async with self._lock:
            heir = normalize_address(heir)
            self._lifecycle(vault_id).revoke(caller.address, heir)
            return self._mine(
                caller,
                encode_call("revokeAccess", vault_id, heir),
                [("AccessRevoked", {"vaultId": vault_id, "heir": heir})],
            )

    async def extend_release_time(
        self, caller: CallerContext, vault_id: str, new_timestamp: int
    ) -> str:
        async with self._lock:
            self._lifecycle(vault_id).extend_release_time(caller.address, new_timestamp)
            return self._mine(
                caller,
                encode_call("extendReleaseTime", vault_id, new_timestamp),
                [("ReleaseTimeExtended", {"vaultId": vault_id, "newTimestamp": new_timestamp})],
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_encrypted_key_as_owner(self, caller: CallerContext, vault_id: str) -> str:
        self._lifecycle(vault_id).check_owner_access(caller.address)
        return self._records[vault_id]["handle"]

    async def get_encrypted_key(self, caller: CallerContext, vault_id: str) -> str:
        self._lifecycle(vault_id).check_heir_access(caller.address, self._clock())
        return self._records[vault_id]["handle"]

    async def get_vault_metadata(self, vault_id: str) -> VaultMetadata:
        vault = self._lifecycle(vault_id)
        record = self._records[vault_id]
        return VaultMetadata(
            vault_id=vault_id,
            owner=vault.owner,
            content_pointer=record["content_pointer"],
            release_timestamp=vault.release_timestamp,
            created_at=record["created_at"],
        )

    async def get_user_vaults(self, owner: str) -> list[str]:
        return list(self._owners.get(normalize_address(owner), []))

    async def get_heir_vaults(self, heir: str) -> list[str]:
        return list(self._heir_index.get(normalize_address(heir), []))

    async def is_authorized(self, vault_id: str, address: str) -> bool:
        vault = self._vaults.get(vault_id)
        return vault is not None and vault.is_authorized(normalize_address(address))

    async def vault_exists(self, vault_id: str) -> bool:
        return vault_id in self._vaults

    # ------------------------------------------------------------------
    # Node
    # ------------------------------------------------------------------

    async def chain_time(self) -> int:
        return self._clock()

    async def block_number(self) -> int:
        return self._block

    async def get_block_timestamp(self, block_number: int) -> int:
        return self._block_times[block_number]

    async def get_logs(
        self, from_block: int, to_block: int, vault_id_hash: Optional[bytes] = None
    ) -> list[RawLog]:
        return [
            log for log in self._logs
            if from_block <= log.block_number <= to_block
            and (vault_id_hash is None or bytes(log.topics[1]) == vault_id_hash)
        ]

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionInfo]:
        return self._transactions.get(tx_hash)
