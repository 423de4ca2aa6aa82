"""
Ledger surface consumed by the escrow protocol and the indexer.

Reads whose result depends on ``msg.sender`` (``getEncryptedKey``,
``getEncryptedKeyAsOwner``) take a ``CallerContext`` like transactions do:
they are authenticated queries, not free reads.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from eth_account.signers.local import LocalAccount
from eth_utils import is_address

from ..exceptions import InvalidAddress
from .abi import RawLog


def normalize_address(address: str) -> str:
    """Validate an account address and return it lowercased.

    Raises:
        InvalidAddress: If address is not a 20-byte hex string.
    """
    if not isinstance(address, str) or not is_address(address):
        raise InvalidAddress("Invalid address", {"address": address})
    return address.lower()


@dataclass(frozen=True)
class CallerContext:
    """Credentials of the account issuing a call or transaction."""

    account: LocalAccount

    @property
    def address(self) -> str:
        return self.account.address.lower()


@dataclass(frozen=True)
class VaultMetadata:
    vault_id: str
    owner: str
    content_pointer: str
    release_timestamp: int
    created_at: int


@dataclass(frozen=True)
class TransactionInfo:
    tx_hash: str
    sender: str
    input: str
    block_number: Optional[int] = None


class VaultLedger(ABC):
    """Vault contract plus the node calls the indexer needs.

    Write methods return the transaction hash once it is mined and raise
    the mapped exception from ``legacy_vault.exceptions`` on revert.
    """

    # -- transactions -----------------------------------------------------

    @abstractmethod
    async def create_vault(
        self,
        caller: CallerContext,
        vault_id: str,
        content_pointer: str,
        encrypted_key_handle: str,
        proof: str,
        release_timestamp: int,
    ) -> str:
        ...

    @abstractmethod
    async def grant_access(self, caller: CallerContext, vault_id: str, heir: str) -> str:
        ...

    @abstractmethod
    async def grant_access_to_multiple(
        self, caller: CallerContext, vault_id: str, heirs: Sequence[str]
    ) -> str:
        ...

    @abstractmethod
    async def revoke_access(self, caller: CallerContext, vault_id: str, heir: str) -> str:
        ...

    @abstractmethod
    async def extend_release_time(
        self, caller: CallerContext, vault_id: str, new_timestamp: int
    ) -> str:
        ...

    # -- caller-sensitive reads -------------------------------------------

    @abstractmethod
    async def get_encrypted_key_as_owner(self, caller: CallerContext, vault_id: str) -> str:
        ...

    @abstractmethod
    async def get_encrypted_key(self, caller: CallerContext, vault_id: str) -> str:
        ...

    # -- free reads -------------------------------------------------------

    @abstractmethod
    async def get_vault_metadata(self, vault_id: str) -> VaultMetadata:
        ...

    @abstractmethod
    async def get_user_vaults(self, owner: str) -> list[str]:
        ...

    @abstractmethod
    async def get_heir_vaults(self, heir: str) -> list[str]:
        ...

    @abstractmethod
    async def is_authorized(self, vault_id: str, address: str) -> bool:
        ...

    @abstractmethod
    async def vault_exists(self, vault_id: str) -> bool:
        ...

    # -- node -------------------------------------------------------------

    @abstractmethod
    async def chain_time(self) -> int:
        """Timestamp of the latest block."""

    @abstractmethod
    async def block_number(self) -> int:
        ...

    @abstractmethod
    async def get_block_timestamp(self, block_number: int) -> int:
        ...

    @abstractmethod
    async def get_logs(
        self, from_block: int, to_block: int, vault_id_hash: Optional[bytes] = None
    ) -> list[RawLog]:
        """Vault contract logs in ``[from_block, to_block]``.

        ``vault_id_hash`` restricts the result to one vault's events.
        """

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Optional[TransactionInfo]:
        ...

    @property
    @abstractmethod
    def contract_address(self) -> str:
        ...
