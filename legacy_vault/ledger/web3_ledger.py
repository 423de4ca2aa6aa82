"""
Web3 ledger — the vault contract over JSON-RPC.

Transactions are pre-flighted with ``eth_call`` from the caller's address so
that revert reasons surface as specific exceptions, then built, signed
locally with the caller's key and sent raw. Submission is shielded from
task cancellation: once a transaction is handed to the node, we wait for
its receipt.

Security Note:
    Never log private keys or signed payloads. Only log addresses, vault
    ids and transaction hashes.
"""
import asyncio
import logging
from typing import Any, Optional, Sequence

from eth_utils import to_bytes
from web3 import AsyncWeb3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from ..exceptions import LedgerError, LedgerUnavailable, error_from_revert
from .abi import VAULT_ABI, RawLog, topic_filter
from .base import (
    CallerContext,
    TransactionInfo,
    VaultLedger,
    VaultMetadata,
    normalize_address,
)

logger = logging.getLogger("legacy_vault.ledger")

RECEIPT_TIMEOUT = 180


class Web3Ledger(VaultLedger):
    """Vault contract bound to an ``AsyncWeb3`` instance."""

    def __init__(self, w3: AsyncWeb3, contract_address: str):
        self._w3 = w3
        self._address = normalize_address(contract_address)
        self._contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=VAULT_ABI,
        )

    @classmethod
    def from_url(cls, rpc_url: str, contract_address: str) -> "Web3Ledger":
        return cls(AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url)), contract_address)

    @property
    def contract_address(self) -> str:
        return self._address

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _checksum(address: str) -> str:
        return AsyncWeb3.to_checksum_address(normalize_address(address))

    async def _call(self, fn: Any, sender: Optional[str] = None) -> Any:
        tx = {"from": self._checksum(sender)} if sender else {}
        try:
            return await fn.call(tx)
        except ContractLogicError as err:
            raise error_from_revert(str(err.message or err)) from err
        except (Web3Exception, OSError, asyncio.TimeoutError) as err:
            raise LedgerUnavailable("Ledger call failed", {"error": str(err)}) from err

    async def _transact(self, caller: CallerContext, fn: Any) -> str:
        # surface revert reasons before paying for gas
        await self._call(fn, caller.address)
        sender = self._checksum(caller.address)
        try:
            nonce = await self._w3.eth.get_transaction_count(sender, "pending")
            tx = await fn.build_transaction({"from": sender, "nonce": nonce})
        except ContractLogicError as err:
            raise error_from_revert(str(err.message or err)) from err
        except (Web3Exception, OSError, asyncio.TimeoutError) as err:
            raise LedgerUnavailable("Could not build transaction", {"error": str(err)}) from err
        signed = caller.account.sign_transaction(tx)
        return await asyncio.shield(self._submit(signed.raw_transaction))

    async def _submit(self, raw_tx: bytes) -> str:
        try:
            tx_hash = await self._w3.eth.send_raw_transaction(raw_tx)
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=RECEIPT_TIMEOUT,
            )
        except TimeExhausted as err:
            raise LedgerUnavailable("Timed out waiting for receipt") from err
        except (Web3Exception, OSError, asyncio.TimeoutError) as err:
            raise LedgerUnavailable("Could not submit transaction", {"error": str(err)}) from err
        hex_hash = AsyncWeb3.to_hex(tx_hash)
        if receipt["status"] != 1:
            raise LedgerError("Transaction reverted", {"tx_hash": hex_hash})
        logger.info("Transaction %s mined in block %s", hex_hash, receipt["blockNumber"])
        return hex_hash

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
        fn = self._contract.functions.createVault(
            vault_id,
            content_pointer,
            to_bytes(hexstr=encrypted_key_handle),
            to_bytes(hexstr=proof),
            int(release_timestamp),
        )
        return await self._transact(caller, fn)

    async def grant_access(self, caller: CallerContext, vault_id: str, heir: str) -> str:
        fn = self._contract.functions.grantAccess(vault_id, self._checksum(heir))
        return await self._transact(caller, fn)

    async def grant_access_to_multiple(
        self, caller: CallerContext, vault_id: str, heirs: Sequence[str]
    ) -> str:
        fn = self._contract.functions.grantAccessToMultiple(
            vault_id, [self._checksum(h) for h in heirs],
        )
        return await self._transact(caller, fn)

    async def revoke_access(self, caller: CallerContext, vault_id: str, heir: str) -> str:
        fn = self._contract.functions.revokeAccess(vault_id, self._checksum(heir))
        return await self._transact(caller, fn)

    async def extend_release_time(
        self, caller: CallerContext, vault_id: str, new_timestamp: int
    ) -> str:
        fn = self._contract.functions.extendReleaseTime(vault_id, int(new_timestamp))
        return await self._transact(caller, fn)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_encrypted_key_as_owner(self, caller: CallerContext, vault_id: str) -> str:
        handle = await self._call(
            self._contract.functions.getEncryptedKeyAsOwner(vault_id), caller.address,
        )
        return AsyncWeb3.to_hex(handle)

    async def get_encrypted_key(self, caller: CallerContext, vault_id: str) -> str:
        handle = await self._call(
            self._contract.functions.getEncryptedKey(vault_id), caller.address,
        )
        return AsyncWeb3.to_hex(handle)

    async def get_vault_metadata(self, vault_id: str) -> VaultMetadata:
        owner, cid, release, created = await self._call(
            self._contract.functions.getVaultMetadata(vault_id),
        )
        return VaultMetadata(
            vault_id=vault_id,
            owner=owner.lower(),
            content_pointer=cid,
            release_timestamp=int(release),
            created_at=int(created),
        )

    async def get_user_vaults(self, owner: str) -> list[str]:
        return list(await self._call(
            self._contract.functions.getUserVaults(self._checksum(owner)),
        ))

    async def get_heir_vaults(self, heir: str) -> list[str]:
        return list(await self._call(
            self._contract.functions.getHeirVaults(self._checksum(heir)),
        ))

    async def is_authorized(self, vault_id: str, address: str) -> bool:
        return bool(await self._call(
            self._contract.functions.isAuthorized(vault_id, self._checksum(address)),
        ))

    async def vault_exists(self, vault_id: str) -> bool:
        return bool(await self._call(self._contract.functions.vaultExists(vault_id)))

    # ------------------------------------------------------------------
    # Node
    # ------------------------------------------------------------------

    async def _node(self, coro: Any) -> Any:
        try:
            return await coro
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError, asyncio.TimeoutError) as err:
            raise LedgerUnavailable("Ledger node request failed", {"error": str(err)}) from err

    async def chain_time(self) -> int:
        block = await self._node(self._w3.eth.get_block("latest"))
        return int(block["timestamp"])

    async def block_number(self) -> int:
        return int(await self._node(self._w3.eth.get_block_number()))

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self._node(self._w3.eth.get_block(block_number))
        return int(block["timestamp"])

    async def get_logs(
        self, from_block: int, to_block: int, vault_id_hash: Optional[bytes] = None
    ) -> list[RawLog]:
        topics = topic_filter()
        if vault_id_hash is not None:
            topics.append(AsyncWeb3.to_hex(vault_id_hash))
        entries = await self._node(self._w3.eth.get_logs({
            "address": self._checksum(self._address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": topics,
        }))
        return [
            RawLog(
                topics=tuple(bytes(t) for t in entry["topics"]),
                data=bytes(entry["data"]),
                block_number=int(entry["blockNumber"]),
                tx_hash=AsyncWeb3.to_hex(entry["transactionHash"]),
                log_index=int(entry["logIndex"]),
                address=str(entry["address"]).lower(),
            )
            for entry in entries or []
        ]

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionInfo]:
        tx = await self._node(self._w3.eth.get_transaction(tx_hash))
        if tx is None:
            return None
        return TransactionInfo(
            tx_hash=tx_hash,
            sender=str(tx["from"]).lower(),
            input=AsyncWeb3.to_hex(tx["input"]),
            block_number=tx.get("blockNumber"),
        )
