"""
Key Codec — maps a 256-bit AES key to a single unsigned integer and back.

The homomorphic scheme encrypts fixed-width integers, so the whole key is
packed into one ``uint256``. Byte 0 of the key is the most significant byte.

Security Note:
    Never log the key or its integer form.
"""
from ..exceptions import InvalidKeyLength

KEY_LENGTH = 32
MAX_PACKED = 1 << (KEY_LENGTH * 8)


def pack(key: bytes) -> int:
    """Pack a 32-byte key into an unsigned 256-bit integer (big-endian).

    Args:
        key: Raw AES-256 key.

    Returns:
        Integer in ``[0, 2**256)``.

    Raises:
        InvalidKeyLength: If key is not exactly 32 bytes.
    """
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        size = len(key) if isinstance(key, (bytes, bytearray)) else None
        raise InvalidKeyLength(
            f"Key must be exactly {KEY_LENGTH} bytes",
            {"length": size},
        )
    return int.from_bytes(key, "big")


def unpack(value: int) -> bytes:
    """Unpack an unsigned 256-bit integer into a 32-byte key.

    Leading zero bytes of the key are restored by left-padding.

    Raises:
        InvalidKeyLength: If value does not fit in 32 bytes.
    """
    if not 0 <= value < MAX_PACKED:
        raise InvalidKeyLength(
            f"Packed key does not fit in {KEY_LENGTH} bytes"
        )
    return value.to_bytes(KEY_LENGTH, "big")
