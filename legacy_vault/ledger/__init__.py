"""Ledger surface of the vault contract.

Concrete ledgers live in ``legacy_vault.ledger.memory`` and
``legacy_vault.ledger.web3_ledger``.
"""
from .abi import VAULT_ABI, DecodedEvent, RawLog, decode_call, decode_event, hash_string
from .base import CallerContext, TransactionInfo, VaultLedger, VaultMetadata, normalize_address
from .probe import Found, NotFound, probe_ledger

__all__ = [
    "VAULT_ABI",
    "DecodedEvent",
    "RawLog",
    "decode_call",
    "decode_event",
    "hash_string",
    "CallerContext",
    "TransactionInfo",
    "VaultLedger",
    "VaultMetadata",
    "normalize_address",
    "Found",
    "NotFound",
    "probe_ledger",
]
