"""
KeyEscrow — turns content into a time-locked, heir-recoverable vault.

Create::

    key → AES-GCM envelope → content store → pack(key) → coprocessor
        → createVault(vault_id, pointer, handle, proof, release)
    then, separately: grantAccess / grantAccessToMultiple

Unlock::

    getVaultMetadata → getEncryptedKey[AsOwner] → signed user decrypt
        → unpack → content store → AES-GCM decrypt

Heir grants are a separate transaction so a failed grant never invalidates
a created vault and can be retried with ``grant_heirs`` without running
the encryption pipeline again.

Security Note:
    The AES key exists only in local variables of ``create`` and
    ``unlock``. Never log key material, plaintext, handles' decrypted
    values or signatures. Only log vault ids, addresses, pointers and sizes.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Union

import aiohttp

from ..conf import VaultSettings
from ..contentstore.base import ContentStore, UploadMetadata
from ..exceptions import (
    DecryptionServiceUnavailable,
    DuplicateVaultId,
    IntegrityError,
    InvalidAddress,
    InvalidVaultId,
    ReleaseTimeNotInFuture,
    VaultError,
)
from ..fhe.auth import DecryptionAuthorization
from ..fhe.handle import CoprocessorHandle
from ..ledger.base import CallerContext, VaultLedger, normalize_address
from ..retry import retry_transient
from . import codec, crypto
from .ids import generate_vault_id
from .lifecycle import VaultLifecycle

logger = logging.getLogger("legacy_vault.escrow")

_HANDLE_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass
class CreateResult:
    """Outcome of ``KeyEscrow.create``.

    ``pending_heirs`` lists heirs whose grant transaction failed; pass them
    to ``KeyEscrow.grant_heirs`` to retry.
    """

    vault_id: str
    content_pointer: str
    tx_hash: str
    release_timestamp: int
    granted_heirs: list[str] = field(default_factory=list)
    pending_heirs: list[str] = field(default_factory=list)
    heir_error: Optional[VaultError] = None

    @property
    def complete(self) -> bool:
        return not self.pending_heirs


def _check_handle(handle: str, what: str) -> str:
    if not isinstance(handle, str) or not _HANDLE_PATTERN.match(handle):
        raise IntegrityError(f"Malformed {what}", {"value": str(handle)[:80]})
    return handle


class KeyEscrow:
    """Create and unlock vaults against a ledger, a content store and a
    homomorphic coprocessor.

    Args:
        ledger: Vault contract surface.
        content_store: Where envelopes are stored.
        coprocessor: Handle to the homomorphic client (lazy init-once).
        chain_id: Chain id used in EIP-712 decrypt authorizations.
        verifying_contract: EIP-712 verifying contract for decryption;
            defaults to the vault contract.
        decrypt_duration_days: Validity window of each authorization.
        retries: Retries for transient coprocessor/content-store failures.
        retry_delay: First backoff delay in seconds.
        clock: Local wall clock, used as authorization start time.
    """

    def __init__(
        self,
        ledger: VaultLedger,
        content_store: ContentStore,
        coprocessor: CoprocessorHandle,
        *,
        chain_id: int,
        verifying_contract: Optional[str] = None,
        decrypt_duration_days: int = 10,
        retries: int = 2,
        retry_delay: float = 1.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._ledger = ledger
        self._store = content_store
        self._coprocessor = coprocessor
        self._chain_id = chain_id
        self._verifying_contract = (verifying_contract or ledger.contract_address).lower()
        self._duration_days = decrypt_duration_days
        self._retries = retries
        self._retry_delay = retry_delay
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: VaultSettings,
        ledger: VaultLedger,
        content_store: ContentStore,
        coprocessor: CoprocessorHandle,
        *,
        retry_delay: float = 1.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> "KeyEscrow":
        """Build an escrow with the chain, verifier, authorization window
        and retry budget taken from ``settings``."""
        return cls(
            ledger,
            content_store,
            coprocessor,
            chain_id=settings.chain_id,
            verifying_contract=settings.decryption_verifier,
            decrypt_duration_days=settings.decrypt_duration_days,
            retries=settings.retries,
            retry_delay=retry_delay,
            clock=clock,
        )

    @property
    def contract_address(self) -> str:
        return self._ledger.contract_address

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def _preflight(
        self, owner: str, vault_id: str, release_timestamp: int, heirs: list[str]
    ) -> None:
        if owner in heirs:
            raise InvalidAddress("Cannot grant access to yourself", {"vault_id": vault_id})
        now = await self._ledger.chain_time()
        if release_timestamp <= now:
            raise ReleaseTimeNotInFuture(
                "Release time must be in the future",
                {"release_timestamp": release_timestamp, "now": now},
            )
        if await self._ledger.vault_exists(vault_id):
            raise DuplicateVaultId(
                "Vault ID already exists. Please use a different vault ID",
                {"vault_id": vault_id},
            )

    async def create(
        self,
        caller: CallerContext,
        content: Union[str, bytes],
        release_timestamp: int,
        heirs: Sequence[str] = (),
        vault_id: Optional[str] = None,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> CreateResult:
        """Encrypt content, escrow its key and register the vault.

        Args:
            caller: Owner credentials.
            content: Secret text or file bytes.
            release_timestamp: Epoch seconds after which heirs may unlock.
            heirs: Addresses to grant after the vault is created.
            vault_id: Identifier; generated when omitted.
            file_name: Original file name, marks the vault as a file vault.
            mime_type: MIME type of the file.

        Returns:
            CreateResult; check ``pending_heirs`` for grants to retry.

        Raises:
            ValidationError: Before any side effect (bad id, address,
                release time, duplicate id).
        """
        if vault_id is None:
            vault_id = generate_vault_id()
        if not isinstance(vault_id, str) or not vault_id:
            raise InvalidVaultId("Vault ID cannot be empty")
        owner = caller.address
        heir_list = list(dict.fromkeys(normalize_address(h) for h in heirs))
        release_timestamp = int(release_timestamp)
        await self._preflight(owner, vault_id, release_timestamp, heir_list)

        # 1-2. fresh key, encrypt
        key = crypto.generate_key()
        envelope = crypto.encrypt(content, key)

        # 3. upload
        keyvalues = {"type": "file" if file_name else "text"}
        if file_name:
            keyvalues["fileName"] = file_name
            keyvalues["mimeType"] = mime_type or "application/octet-stream"
        pointer = await self._store.upload(
            envelope.dumps(), UploadMetadata(name=f"vault-{vault_id}", keyvalues=keyvalues),
        )
        logger.info("Vault %s: envelope stored at %s", vault_id, pointer)

        # 4-5. pack and delegate-encrypt
        client = await self._coprocessor.get()
        encrypted = await client.encrypt_uint256(
            self.contract_address, owner, codec.pack(key),
        )
        del key
        _check_handle(encrypted.handle, "encrypted key handle")

        # 6. ledger
        tx_hash = await self._ledger.create_vault(
            caller, vault_id, pointer, encrypted.handle, encrypted.proof, release_timestamp,
        )
        logger.info(
            "Vault %s created by %s (release=%d, tx=%s)",
            vault_id, owner, release_timestamp, tx_hash,
        )

        result = CreateResult(
            vault_id=vault_id,
            content_pointer=pointer,
            tx_hash=tx_hash,
            release_timestamp=release_timestamp,
        )
        if heir_list:
            try:
                await self.grant_heirs(caller, vault_id, heir_list)
                result.granted_heirs = heir_list
            except VaultError as err:
                logger.error(
                    "Vault %s created but granting %d heir(s) failed: %s",
                    vault_id, len(heir_list), err,
                )
                result.pending_heirs = heir_list
                result.heir_error = err
        return result

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    async def _lifecycle(self, vault_id: str) -> VaultLifecycle:
        return VaultLifecycle.from_metadata(await self._ledger.get_vault_metadata(vault_id))

    async def grant_heirs(
        self, caller: CallerContext, vault_id: str, heirs: Sequence[str]
    ) -> str:
        """Grant heirs access in one transaction. Safe to retry.

        Raises:
            NotOwner: If caller does not own the vault.
            GrantAfterRelease: If the release time has passed.
        """
        lifecycle = await self._lifecycle(vault_id)
        now = await self._ledger.chain_time()
        heir_list = list(dict.fromkeys(
            lifecycle.check_grant(caller.address, h, now) for h in heirs
        ))
        if not heir_list:
            raise InvalidAddress("No heirs to grant", {"vault_id": vault_id})
        if len(heir_list) == 1:
            tx_hash = await self._ledger.grant_access(caller, vault_id, heir_list[0])
        else:
            tx_hash = await self._ledger.grant_access_to_multiple(caller, vault_id, heir_list)
        logger.info("Vault %s: granted %d heir(s) (tx=%s)", vault_id, len(heir_list), tx_hash)
        return tx_hash

    async def revoke_heir(self, caller: CallerContext, vault_id: str, heir: str) -> str:
        """Revoke a heir. Allowed at any time, including after release."""
        lifecycle = await self._lifecycle(vault_id)
        lifecycle.check_owner(caller.address)
        heir = normalize_address(heir)
        tx_hash = await self._ledger.revoke_access(caller, vault_id, heir)
        logger.info("Vault %s: revoked %s (tx=%s)", vault_id, heir, tx_hash)
        return tx_hash

    async def extend_release_time(
        self, caller: CallerContext, vault_id: str, new_timestamp: int
    ) -> str:
        """Move the release time. Earlier values, even past ones, are allowed."""
        lifecycle = await self._lifecycle(vault_id)
        lifecycle.check_owner(caller.address)
        tx_hash = await self._ledger.extend_release_time(caller, vault_id, int(new_timestamp))
        logger.info(
            "Vault %s: release time %d -> %d (tx=%s)",
            vault_id, lifecycle.release_timestamp, new_timestamp, tx_hash,
        )
        return tx_hash

    # ------------------------------------------------------------------
    # Unlock
    # ------------------------------------------------------------------

    async def _decrypt_handle(self, caller: CallerContext, handle: str) -> int:
        client = await self._coprocessor.get()
        keypair = client.generate_keypair()
        start = int(self._clock()) if self._clock else None
        authorization = DecryptionAuthorization.sign(
            caller.account,
            keypair.public_key,
            [self.contract_address],
            verifying_contract=self._verifying_contract,
            chain_id=self._chain_id,
            duration_days=self._duration_days,
            start_timestamp=start,
        )
        try:
            value = await client.user_decrypt(
                handle, self.contract_address, keypair, authorization,
            )
        except VaultError:
            raise
        except (OSError, asyncio.TimeoutError, aiohttp.ClientError) as err:
            raise DecryptionServiceUnavailable(
                "Decryption service unavailable", {"error": str(err)},
            ) from err
        if isinstance(value, str):
            value = int(value, 0)
        return int(value)

    async def unlock(
        self, caller: CallerContext, vault_id: str, as_owner: bool = False
    ) -> bytes:
        """Recover a vault's content.

        Args:
            caller: Owner or heir credentials.
            vault_id: Vault to unlock.
            as_owner: Use the owner key path instead of the heir path.

        Returns:
            Raw content bytes; decoding text is up to the caller.

        Raises:
            NotOwner, NotAuthorized, ReleaseTimeNotReached: Ledger refused
                the key read.
            DecryptionServiceUnavailable, ContentStoreUnavailable: After
                retries were exhausted.
            AuthenticationFailure: The recovered key does not open the
                envelope.
        """
        metadata = await self._ledger.get_vault_metadata(vault_id)
        if as_owner:
            handle = await self._ledger.get_encrypted_key_as_owner(caller, vault_id)
        else:
            handle = await self._ledger.get_encrypted_key(caller, vault_id)
        _check_handle(handle, "encrypted key handle")
        logger.debug("Vault %s: key handle obtained by %s", vault_id, caller.address)

        value = await retry_transient(
            lambda: self._decrypt_handle(caller, handle),
            retries=self._retries,
            base_delay=self._retry_delay,
            label="user decrypt",
        )
        key = codec.unpack(value)

        text = await retry_transient(
            lambda: self._store.fetch(metadata.content_pointer),
            retries=self._retries,
            base_delay=self._retry_delay,
            label="content fetch",
        )
        plaintext = crypto.decrypt(text, key)
        logger.info(
            "Vault %s unlocked by %s (%s, %d bytes)",
            vault_id, caller.address, "owner" if as_owner else "heir", len(plaintext),
        )
        return plaintext
