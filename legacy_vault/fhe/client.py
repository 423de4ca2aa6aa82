"""
Coprocessor client — the homomorphic primitive, delegated.

The vault never encrypts or decrypts under the homomorphic scheme itself;
it hands the packed key to a confidential-compute coprocessor and later
asks it to re-encrypt the stored ciphertext for an authorized user.

Implementations raise ``DecryptionServiceUnavailable`` when the
coprocessor or its relayer cannot be reached.
"""
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .auth import DecryptionAuthorization


@dataclass(frozen=True)
class EncryptedInput:
    """Ciphertext handle (bytes32 hex) and its proof of correct encryption."""

    handle: str
    proof: str


@dataclass(frozen=True)
class Keypair:
    """Ephemeral keypair the coprocessor re-encrypts results to.

    Security Note:
        ``private_key`` must never be logged or persisted.
    """

    public_key: str
    private_key: str

    def __repr__(self) -> str:
        return f"Keypair(public_key={self.public_key[:10]}...)"


@runtime_checkable
class HomomorphicClient(Protocol):

    async def encrypt_uint256(
        self, contract_address: str, user_address: str, value: int
    ) -> EncryptedInput:
        ...

    def generate_keypair(self) -> Keypair:
        ...

    async def user_decrypt(
        self,
        handle: str,
        contract_address: str,
        keypair: Keypair,
        authorization: DecryptionAuthorization,
    ) -> int:
        ...
