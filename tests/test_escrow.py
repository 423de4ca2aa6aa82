"""
Tests for KeyEscrow create/unlock and heir management.

Tests cover:
- Create pre-flight validation (no side effects on failure)
- Owner and heir unlock matrix around the release time
- Heir grants as a separate, retriable step
- Revocation and release-time changes
- Transient retry and integrity failures during unlock
- Building an escrow from settings
"""
import pytest

from legacy_vault.exceptions import (
    AuthenticationFailure,
    ContentStoreUnavailable,
    DecryptionServiceUnavailable,
    DuplicateVaultId,
    GrantAfterRelease,
    InvalidAddress,
    LedgerUnavailable,
    NotAuthorized,
    NotOwner,
    ReleaseTimeNotInFuture,
    ReleaseTimeNotReached,
)
from legacy_vault.conf import VaultSettings
from legacy_vault.fhe.handle import CoprocessorHandle
from legacy_vault.ledger.abi import decode_call
from legacy_vault.vault.escrow import KeyEscrow
from legacy_vault.vault.ids import is_valid_vault_id

HOUR = 3600


async def _create(escrow, owner, clock, heirs=(), vault_id="abc1234", content="hello world"):
    return await escrow.create(
        owner, content, clock.now + HOUR, heirs=[h.address for h in heirs], vault_id=vault_id,
    )


class TestCreate:
    """Tests for vault creation."""

    @pytest.mark.asyncio
    async def test_create_returns_pointer_and_tx(self, escrow, owner, clock, ledger, store):
        """Test that a vault is registered and its envelope stored."""
        result = await _create(escrow, owner, clock)
        assert result.vault_id == "abc1234"
        assert result.complete
        metadata = await ledger.get_vault_metadata("abc1234")
        assert metadata.owner == owner.address
        assert metadata.content_pointer == result.content_pointer
        assert metadata.release_timestamp == clock.now + HOUR
        assert "hello world" not in await store.fetch(result.content_pointer)

    @pytest.mark.asyncio
    async def test_generated_vault_id(self, escrow, owner, clock):
        """Test that a vault id is generated when omitted."""
        result = await escrow.create(owner, "x", clock.now + HOUR)
        assert is_valid_vault_id(result.vault_id)

    @pytest.mark.asyncio
    async def test_duplicate_vault_id(self, escrow, owner, clock, ledger, store):
        """Test that a duplicate id fails without another ledger write."""
        await _create(escrow, owner, clock)
        writes, blobs = ledger.write_count, len(store)
        with pytest.raises(DuplicateVaultId):
            await _create(escrow, owner, clock, content="other")
        assert ledger.write_count == writes
        assert len(store) == blobs

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset", [0, -1, -HOUR])
    async def test_release_not_in_future(self, escrow, owner, clock, ledger, store, offset):
        """Test that the release time must be after ledger time."""
        with pytest.raises(ReleaseTimeNotInFuture):
            await escrow.create(owner, "x", clock.now + offset, vault_id="v1")
        assert ledger.write_count == 0
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_owner_as_heir_rejected(self, escrow, owner, clock, store):
        """Test that the owner cannot be listed as heir."""
        with pytest.raises(InvalidAddress):
            await _create(escrow, owner, clock, heirs=[owner])
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_invalid_heir_rejected(self, escrow, owner, clock, ledger):
        """Test that malformed heir addresses fail before any side effect."""
        with pytest.raises(InvalidAddress):
            await escrow.create(owner, "x", clock.now + HOUR, heirs=["not-an-address"])
        assert ledger.write_count == 0

    @pytest.mark.asyncio
    async def test_file_vault_metadata(self, escrow, owner, clock, store):
        """Test that file vaults are tagged in the content store."""
        result = await escrow.create(
            owner, b"%PDF-1.4", clock.now + HOUR,
            file_name="will.pdf", mime_type="application/pdf",
        )
        info = await store.describe(result.content_pointer)
        assert info.vault_type == "file"
        assert info.file_name == "will.pdf"
        assert info.mime_type == "application/pdf"


class TestHeirGrants:
    """Tests for granting heirs during and after create."""

    @pytest.mark.asyncio
    async def test_multiple_heirs(self, escrow, owner, heir, heir2, clock, ledger):
        """Test that several heirs are granted in one transaction."""
        writes = ledger.write_count
        result = await _create(escrow, owner, clock, heirs=[heir, heir2])
        assert result.granted_heirs == [heir.address, heir2.address]
        assert ledger.write_count == writes + 2
        assert await ledger.is_authorized("abc1234", heir.address)
        assert await ledger.is_authorized("abc1234", heir2.address)

    @pytest.mark.asyncio
    async def test_single_heir_uses_grant_access(self, escrow, owner, heir, clock, ledger):
        """Test the single-heir transaction."""
        await _create(escrow, owner, clock)
        tx_hash = await escrow.grant_heirs(owner, "abc1234", [heir.address])
        tx = await ledger.get_transaction(tx_hash)
        name, args = decode_call(tx.input)
        assert name == "grantAccess"
        assert args["heir"] == heir.address

    @pytest.mark.asyncio
    async def test_failed_grant_is_pending(self, escrow, owner, heir, clock, ledger, monkeypatch):
        """Test that a failed grant keeps the vault and can be retried."""
        async def unavailable(*args):
            raise LedgerUnavailable("node down")

        monkeypatch.setattr(ledger, "grant_access", unavailable)
        result = await _create(escrow, owner, clock, heirs=[heir])
        assert await ledger.vault_exists("abc1234")
        assert result.pending_heirs == [heir.address]
        assert isinstance(result.heir_error, LedgerUnavailable)
        assert not result.complete

        monkeypatch.undo()
        await escrow.grant_heirs(owner, "abc1234", result.pending_heirs)
        assert await ledger.is_authorized("abc1234", heir.address)

    @pytest.mark.asyncio
    async def test_grant_after_release(self, escrow, owner, heir, clock, ledger):
        """Test that grants fail once the release time has passed."""
        await _create(escrow, owner, clock)
        clock.advance(HOUR)
        writes = ledger.write_count
        with pytest.raises(GrantAfterRelease):
            await escrow.grant_heirs(owner, "abc1234", [heir.address])
        assert ledger.write_count == writes

    @pytest.mark.asyncio
    async def test_grant_by_non_owner(self, escrow, owner, heir, stranger, clock):
        """Test that only the owner may grant."""
        await _create(escrow, owner, clock)
        with pytest.raises(NotOwner):
            await escrow.grant_heirs(stranger, "abc1234", [heir.address])


class TestUnlock:
    """Tests for owner and heir unlock."""

    @pytest.mark.asyncio
    async def test_owner_and_heir_scenario(self, escrow, owner, heir, clock):
        """Test the abc1234 scenario around the release time."""
        await _create(escrow, owner, clock, heirs=[heir])
        with pytest.raises(ReleaseTimeNotReached):
            await escrow.unlock(heir, "abc1234")
        assert await escrow.unlock(owner, "abc1234", as_owner=True) == b"hello world"

        clock.advance(HOUR)
        assert await escrow.unlock(heir, "abc1234") == b"hello world"
        assert await escrow.unlock(owner, "abc1234", as_owner=True) == b"hello world"

    @pytest.mark.asyncio
    async def test_heir_without_grant(self, escrow, owner, stranger, clock):
        """Test that a non-heir fails regardless of time."""
        await _create(escrow, owner, clock)
        with pytest.raises(NotAuthorized):
            await escrow.unlock(stranger, "abc1234")
        clock.advance(2 * HOUR)
        with pytest.raises(NotAuthorized):
            await escrow.unlock(stranger, "abc1234")

    @pytest.mark.asyncio
    async def test_owner_path_is_owner_only(self, escrow, owner, heir, clock):
        """Test that heirs cannot use the owner path."""
        await _create(escrow, owner, clock, heirs=[heir])
        clock.advance(HOUR)
        with pytest.raises(NotOwner):
            await escrow.unlock(heir, "abc1234", as_owner=True)

    @pytest.mark.asyncio
    async def test_revoke_after_release(self, escrow, owner, heir, clock):
        """Test that a heir can be revoked after release."""
        await _create(escrow, owner, clock, heirs=[heir])
        clock.advance(HOUR)
        await escrow.revoke_heir(owner, "abc1234", heir.address)
        with pytest.raises(NotAuthorized):
            await escrow.unlock(heir, "abc1234")

    @pytest.mark.asyncio
    async def test_extend_into_past_releases(self, escrow, owner, heir, clock):
        """Test that moving the release time into the past unlocks heirs."""
        await _create(escrow, owner, clock, heirs=[heir])
        await escrow.extend_release_time(owner, "abc1234", clock.now - 60)
        assert await escrow.unlock(heir, "abc1234") == b"hello world"

    @pytest.mark.asyncio
    async def test_extend_postpones(self, escrow, owner, heir, clock):
        """Test that a later release time keeps heirs locked out."""
        await _create(escrow, owner, clock, heirs=[heir])
        await escrow.extend_release_time(owner, "abc1234", clock.now + 10 * HOUR)
        clock.advance(2 * HOUR)
        with pytest.raises(ReleaseTimeNotReached):
            await escrow.unlock(heir, "abc1234")

    @pytest.mark.asyncio
    async def test_extend_by_non_owner(self, escrow, owner, stranger, clock):
        """Test that only the owner may move the release time."""
        await _create(escrow, owner, clock)
        with pytest.raises(NotOwner):
            await escrow.extend_release_time(stranger, "abc1234", clock.now)

    @pytest.mark.asyncio
    async def test_decrypt_retried_with_fresh_authorization(self, escrow, owner, clock, coprocessor):
        """Test that transient decrypt failures are retried with new signatures."""
        await _create(escrow, owner, clock)
        coprocessor.fail_times = 2
        assert await escrow.unlock(owner, "abc1234", as_owner=True) == b"hello world"
        assert coprocessor.decrypt_calls == 3
        keys = {a.public_key for a in coprocessor.authorizations}
        assert len(keys) == 3

    @pytest.mark.asyncio
    async def test_decrypt_retries_exhausted(self, escrow, owner, clock, coprocessor):
        """Test that the transient error surfaces after the last retry."""
        await _create(escrow, owner, clock)
        coprocessor.fail_times = 3
        with pytest.raises(DecryptionServiceUnavailable):
            await escrow.unlock(owner, "abc1234", as_owner=True)
        assert coprocessor.decrypt_calls == 3

    @pytest.mark.asyncio
    async def test_content_fetch_retried(self, escrow, owner, clock, store, monkeypatch):
        """Test that a transient content store failure is retried."""
        await _create(escrow, owner, clock)
        fetch = store.fetch
        calls = []

        async def flaky(pointer):
            calls.append(pointer)
            if len(calls) == 1:
                raise ContentStoreUnavailable("gateway timeout")
            return await fetch(pointer)

        monkeypatch.setattr(store, "fetch", flaky)
        assert await escrow.unlock(owner, "abc1234", as_owner=True) == b"hello world"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_truncated_key_is_integrity_failure(self, escrow, owner, clock, coprocessor, ledger):
        """Test that a wrong recovered key fails once and is not retried."""
        await _create(escrow, owner, clock)
        handle = await ledger.get_encrypted_key_as_owner(owner, "abc1234")
        coprocessor.values[handle] >>= 64
        with pytest.raises(AuthenticationFailure):
            await escrow.unlock(owner, "abc1234", as_owner=True)
        assert coprocessor.decrypt_calls == 1

    @pytest.mark.asyncio
    async def test_authorization_scoped_to_contract(self, escrow, owner, clock, coprocessor, ledger):
        """Test that decrypt requests are signed by the caller for this contract."""
        await _create(escrow, owner, clock)
        await escrow.unlock(owner, "abc1234", as_owner=True)
        (authorization,) = coprocessor.authorizations
        assert authorization.user_address == owner.address
        assert authorization.contract_addresses == (ledger.contract_address,)
        assert authorization.start_timestamp == clock.now
        assert authorization.duration_days == 10


class TestFromSettings:
    """Tests for building an escrow from VaultSettings."""

    @pytest.mark.asyncio
    async def test_settings_drive_authorization_and_retries(
        self, ledger, store, coprocessor, owner, clock
    ):
        """Test that chain, verifier, window and retry budget come from settings."""
        verifier = "0x" + "0c" * 20
        settings = VaultSettings(
            rpc_url="http://localhost:8545",
            contract_address=ledger.contract_address,
            chain_id=31337,
            decryption_verifier=verifier,
            decrypt_duration_days=3,
            retries=0,
        )
        escrow = KeyEscrow.from_settings(
            settings, ledger, store, CoprocessorHandle.of(coprocessor),
            retry_delay=0, clock=clock,
        )
        await _create(escrow, owner, clock)

        coprocessor.fail_times = 1
        with pytest.raises(DecryptionServiceUnavailable):
            await escrow.unlock(owner, "abc1234", as_owner=True)
        assert coprocessor.decrypt_calls == 1

        assert await escrow.unlock(owner, "abc1234", as_owner=True) == b"hello world"
        authorization = coprocessor.authorizations[-1]
        assert authorization.chain_id == 31337
        assert authorization.verifying_contract == verifier
        assert authorization.duration_days == 3

    @pytest.mark.asyncio
    async def test_verifier_defaults_to_contract(self, ledger, store, coprocessor, owner, clock):
        """Test that the settings fallback verifier is the vault contract."""
        settings = VaultSettings(
            rpc_url="http://localhost:8545", contract_address=ledger.contract_address,
        )
        escrow = KeyEscrow.from_settings(
            settings, ledger, store, CoprocessorHandle.of(coprocessor), clock=clock,
        )
        await _create(escrow, owner, clock)
        await escrow.unlock(owner, "abc1234", as_owner=True)
        (authorization,) = coprocessor.authorizations
        assert authorization.verifying_contract == ledger.contract_address
        assert authorization.chain_id == settings.chain_id
