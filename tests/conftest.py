"""Shared fixtures: a fake clock, deterministic accounts, in-memory
collaborators and a coprocessor that keeps plaintext handles in a dict."""
import secrets

import pytest
from eth_account import Account

from legacy_vault.contentstore.memory import MemoryContentStore
from legacy_vault.exceptions import DecryptionServiceUnavailable
from legacy_vault.fhe.client import EncryptedInput, Keypair
from legacy_vault.fhe.handle import CoprocessorHandle
from legacy_vault.ledger.base import CallerContext
from legacy_vault.ledger.memory import InMemoryLedger
from legacy_vault.vault.escrow import KeyEscrow

START_TIME = 1_700_000_000
CHAIN_ID = 11155111


class FakeClock:
    """Settable epoch-seconds clock shared by the ledger and the escrow."""

    def __init__(self, now: int = START_TIME):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


class FakeCoprocessor:
    """Stands in for the homomorphic coprocessor.

    ``fail_times`` makes the next N decrypt calls raise
    DecryptionServiceUnavailable.
    """

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self.values: dict[str, int] = {}
        self.fail_times = 0
        self.decrypt_calls = 0
        self.authorizations = []

    async def encrypt_uint256(self, contract_address, user_address, value):
        handle = "0x" + secrets.token_hex(32)
        self.values[handle] = value
        return EncryptedInput(handle=handle, proof="0x" + secrets.token_hex(16))

    def generate_keypair(self):
        return Keypair(
            public_key="0x" + secrets.token_hex(32),
            private_key="0x" + secrets.token_hex(32),
        )

    async def user_decrypt(self, handle, contract_address, keypair, authorization):
        self.decrypt_calls += 1
        self.authorizations.append(authorization)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DecryptionServiceUnavailable("Relayer unreachable")
        assert authorization.covers(contract_address)
        assert authorization.public_key == keypair.public_key
        assert authorization.is_valid_at(self._clock())
        assert authorization.recover_signer() == authorization.user_address
        return self.values[handle]


def _caller(seed: str) -> CallerContext:
    return CallerContext(Account.from_key("0x" + seed * 32))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def owner():
    return _caller("11")


@pytest.fixture
def heir():
    return _caller("22")


@pytest.fixture
def heir2():
    return _caller("33")


@pytest.fixture
def stranger():
    return _caller("44")


@pytest.fixture
def ledger(clock):
    return InMemoryLedger(clock=clock)


@pytest.fixture
def store():
    return MemoryContentStore()


@pytest.fixture
def coprocessor(clock):
    return FakeCoprocessor(clock)


@pytest.fixture
def escrow(ledger, store, coprocessor, clock):
    return KeyEscrow(
        ledger,
        store,
        CoprocessorHandle.of(coprocessor),
        chain_id=CHAIN_ID,
        retries=2,
        retry_delay=0,
        clock=clock,
    )
