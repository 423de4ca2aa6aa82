"""Vault identifiers."""
import re
import secrets
import string

VAULT_ID_LENGTH = 7
_LETTERS = string.ascii_lowercase
_ALPHABET = string.ascii_lowercase + string.digits
_VAULT_ID_PATTERN = re.compile(r"^[a-z][a-z0-9]{6}$")


def generate_vault_id() -> str:
    """Return a random identifier such as ``x5gsyts``.

    The first character is always a letter.
    """
    rest = "".join(
        secrets.choice(_ALPHABET) for _ in range(VAULT_ID_LENGTH - 1)
    )
    return secrets.choice(_LETTERS) + rest


def is_valid_vault_id(vault_id: str) -> bool:
    """Check the generated identifier format.

    The escrow protocol itself accepts any non-empty string; this is only
    the shape produced by ``generate_vault_id``.
    """
    return bool(_VAULT_ID_PATTERN.match(vault_id or ""))
