from .auth import DecryptionAuthorization
from .client import EncryptedInput, HomomorphicClient, Keypair
from .handle import CoprocessorHandle

__all__ = [
    "DecryptionAuthorization",
    "EncryptedInput",
    "HomomorphicClient",
    "Keypair",
    "CoprocessorHandle",
]
