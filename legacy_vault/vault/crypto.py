"""
Content Cipher — AES-256-GCM encryption of vault content.

Envelope wire format (text blob stored in the content store)::

    {"encrypted": "<base64>", "iv": "<base64>", "tag": "<base64>"}

- encrypted: ciphertext without the tag
- iv: random 96-bit nonce, fresh for every encryption
- tag: 128-bit GCM authentication tag

Security Note:
    Never log plaintext, ciphertext or key values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import binascii
import logging
import secrets
from dataclasses import dataclass
from typing import Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import AuthenticationFailure, EnvelopeFormatError
from .codec import KEY_LENGTH, pack

logger = logging.getLogger("legacy_vault.crypto")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit tag


def generate_key() -> bytes:
    """Generate a fresh random AES-256 key."""
    return secrets.token_bytes(KEY_LENGTH)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@dataclass(frozen=True)
class Envelope:
    """Ciphertext, nonce and tag of one encryption."""

    encrypted: bytes
    iv: bytes
    tag: bytes

    def dumps(self) -> str:
        """Serialize to the content-store text format."""
        return orjson.dumps({
            "encrypted": _b64(self.encrypted),
            "iv": _b64(self.iv),
            "tag": _b64(self.tag),
        }).decode("utf-8")

    @classmethod
    def loads(cls, text: Union[str, bytes]) -> "Envelope":
        """Parse an envelope produced by ``dumps``.

        Raises:
            EnvelopeFormatError: If a field is missing or not valid base64.
        """
        try:
            parsed = orjson.loads(text)
        except orjson.JSONDecodeError as err:
            raise EnvelopeFormatError("Envelope is not valid JSON") from err
        if not isinstance(parsed, dict):
            raise EnvelopeFormatError("Envelope must be a JSON object")
        missing = [k for k in ("encrypted", "iv", "tag") if k not in parsed]
        if missing:
            raise EnvelopeFormatError(
                "Envelope is missing fields", {"missing": missing},
            )
        try:
            envelope = cls(
                encrypted=base64.b64decode(parsed["encrypted"], validate=True),
                iv=base64.b64decode(parsed["iv"], validate=True),
                tag=base64.b64decode(parsed["tag"], validate=True),
            )
        except (binascii.Error, TypeError) as err:
            raise EnvelopeFormatError("Envelope field is not base64") from err
        if len(envelope.iv) != NONCE_SIZE or len(envelope.tag) != TAG_SIZE:
            raise EnvelopeFormatError(
                "Envelope nonce or tag has the wrong size",
                {"iv": len(envelope.iv), "tag": len(envelope.tag)},
            )
        return envelope


def encrypt(plaintext: Union[bytes, str], key: bytes) -> Envelope:
    """Encrypt content with AES-256-GCM under a fresh nonce.

    Args:
        plaintext: Content to encrypt; ``str`` is encoded as UTF-8.
        key: Raw 32-byte key.

    Returns:
        Envelope with ciphertext, nonce and tag split apart.
    """
    pack(key)  # length check
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    logger.debug("Encrypted %d bytes", len(plaintext))
    return Envelope(encrypted=sealed[:-TAG_SIZE], iv=nonce, tag=sealed[-TAG_SIZE:])


def decrypt(envelope: Union[Envelope, str, bytes], key: bytes) -> bytes:
    """Decrypt an envelope.

    Args:
        envelope: Envelope instance or its serialized text.
        key: Raw 32-byte key.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        AuthenticationFailure: If the tag does not verify (wrong key or
            corrupted ciphertext).
        EnvelopeFormatError: If serialized text cannot be parsed.
    """
    pack(key)
    if not isinstance(envelope, Envelope):
        envelope = Envelope.loads(envelope)
    try:
        return AESGCM(key).decrypt(
            envelope.iv, envelope.encrypted + envelope.tag, None,
        )
    except InvalidTag as err:
        raise AuthenticationFailure(
            "Content authentication failed: the recovered key is wrong "
            "(possibly truncated or corrupted) or the stored ciphertext "
            "was modified"
        ) from err
