"""Legacy Vault — client-side encryption and key escrow.

Security Note (Threat Model):
    The content key and the plaintext exist in process memory during
    ``KeyEscrow.create`` and ``KeyEscrow.unlock``. Confidentiality of the
    key at rest relies on the homomorphic coprocessor and the contract's
    access rules; a compromised coprocessor is out of scope.
"""

from .codec import pack, unpack
from .crypto import Envelope, decrypt, encrypt, generate_key
from .escrow import CreateResult, KeyEscrow
from .ids import generate_vault_id, is_valid_vault_id
from .lifecycle import AccessState, VaultLifecycle

__all__ = [
    "pack",
    "unpack",
    "Envelope",
    "encrypt",
    "decrypt",
    "generate_key",
    "CreateResult",
    "KeyEscrow",
    "generate_vault_id",
    "is_valid_vault_id",
    "AccessState",
    "VaultLifecycle",
]
