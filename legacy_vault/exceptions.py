"""
Legacy Vault Exceptions.

Errors are grouped by how a caller should react to them:

- **validation**: rejected before any side effect, shown verbatim.
- **authorization**: rejected by the ledger, needs a state change to succeed.
- **integrity**: the escrowed key or the content is broken; never retry.
- **transient**: a collaborator is unreachable; retry with backoff.
- **indexer**: read-model reconstruction problems, never fatal to the loop.
"""
from typing import Any, Optional


class VaultError(Exception):
    """Base exception for Legacy Vault errors."""

    retriable: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(VaultError, ValueError):
    """Raised when input is rejected before any side effect."""


class InvalidKeyLength(ValidationError):
    """Raised when key material is not exactly 32 bytes."""


class InvalidVaultId(ValidationError):
    """Raised when a vault identifier is empty or malformed."""


class InvalidAddress(ValidationError):
    """Raised when an account address is malformed or not allowed."""


class ReleaseTimeNotInFuture(ValidationError):
    """Raised when a new vault's release time is not after ledger time."""


class DuplicateVaultId(ValidationError):
    """Raised when a vault identifier already exists on the ledger."""


class EnvelopeFormatError(ValidationError):
    """Raised when a stored envelope cannot be parsed."""


class VaultNotFound(VaultError):
    """Raised when the ledger has no vault with the given identifier."""


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

class AuthorizationError(VaultError):
    """Raised when the ledger refuses an operation for the caller."""


class NotOwner(AuthorizationError):
    """Raised when an owner-only operation is requested by someone else."""


class NotAuthorized(AuthorizationError):
    """Raised when the caller holds no active grant on the vault."""


class ReleaseTimeNotReached(AuthorizationError):
    """Raised when a heir asks for the key before the release time."""


class GrantAfterRelease(AuthorizationError):
    """Raised when access is granted after the release time has passed."""


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------

class IntegrityError(VaultError):
    """Raised when recovered data fails verification."""


class AuthenticationFailure(IntegrityError):
    """Raised when the AES-GCM tag does not verify.

    Almost always means the reconstructed key is wrong (for example a
    truncated key) or the stored ciphertext was corrupted. Retrying with the
    same key fails identically.
    """


# ---------------------------------------------------------------------------
# Transient / service
# ---------------------------------------------------------------------------

class TransientError(VaultError):
    """Raised when a collaborator is temporarily unavailable."""

    retriable = True


class DecryptionServiceUnavailable(TransientError):
    """Raised when the decryption coprocessor cannot be reached."""


class ContentStoreUnavailable(TransientError):
    """Raised when the content store cannot be reached."""


class LedgerUnavailable(TransientError):
    """Raised when the ledger node cannot be reached."""


class ReadModelUnavailable(TransientError):
    """Raised when the read-model database cannot be reached."""


class ContentStoreError(VaultError):
    """Raised when the content store rejects a request."""


class LedgerError(VaultError):
    """Raised when the ledger reverts with an unrecognized reason."""


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

class IndexerError(VaultError):
    """Base exception for read-model reconstruction."""


class UnrecoverableArgument(IndexerError):
    """Raised when a hashed event argument cannot be resolved."""


class CheckpointConflict(IndexerError):
    """Raised when the checkpoint was moved by another indexer."""


# Contract revert strings, most specific first.
_REVERT_REASONS: tuple[tuple[str, type[VaultError]], ...] = (
    ("Vault ID cannot be empty", InvalidVaultId),
    ("Vault ID already exists", DuplicateVaultId),
    ("Release time must be in the future", ReleaseTimeNotInFuture),
    ("Must be future timestamp", ReleaseTimeNotInFuture),
    ("Vault does not exist", VaultNotFound),
    ("Only owner", NotOwner),
    ("Not authorized", NotAuthorized),
    ("Release time not reached", ReleaseTimeNotReached),
    ("Cannot grant access after release", GrantAfterRelease),
    ("Invalid heir address", InvalidAddress),
    ("Cannot grant access to yourself", InvalidAddress),
)


def error_from_revert(reason: str) -> VaultError:
    """Map a contract revert reason to a specific exception.

    Args:
        reason: Revert string as reported by the node.

    Returns:
        The matching VaultError instance, or LedgerError if unknown.
    """
    for needle, exc_cls in _REVERT_REASONS:
        if needle.lower() in reason.lower():
            return exc_cls(needle, {"revert": reason})
    return LedgerError("Ledger rejected the transaction", {"revert": reason})
