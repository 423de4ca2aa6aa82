"""
Vault contract ABI, calldata and event log codec.

Indexed ``string`` event arguments are stored in the log as
``keccak256(value)``; decoding such a log yields the hash, never the
value. See ``legacy_vault.indexer.recovery`` for how the value is found.
"""
from dataclasses import dataclass
from typing import Any, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import (
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
    keccak,
    to_bytes,
    to_hex,
)


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": n, "type": t, "indexed": idx} for n, t, idx in inputs
        ],
    }


VAULT_ABI: list[dict[str, Any]] = [
    _fn("createVault", [
        ("_vaultId", "string"), ("_cid", "string"),
        ("_encryptedKey", "bytes32"), ("_inputProof", "bytes"),
        ("_releaseTimestamp", "uint256"),
    ]),
    _fn("grantAccess", [("_vaultId", "string"), ("_heir", "address")]),
    _fn("grantAccessToMultiple", [("_vaultId", "string"), ("_heirs", "address[]")]),
    _fn("revokeAccess", [("_vaultId", "string"), ("_heir", "address")]),
    _fn("extendReleaseTime", [("_vaultId", "string"), ("_newTimestamp", "uint256")]),
    _fn("getEncryptedKey", [("_vaultId", "string")],
        [("", "bytes32")], "view"),
    _fn("getEncryptedKeyAsOwner", [("_vaultId", "string")],
        [("", "bytes32")], "view"),
    _fn("getVaultMetadata", [("_vaultId", "string")], [
        ("owner", "address"), ("cid", "string"),
        ("releaseTimestamp", "uint256"), ("createdAt", "uint256"),
    ], "view"),
    _fn("getUserVaults", [("_user", "address")], [("", "string[]")], "view"),
    _fn("getHeirVaults", [("_heir", "address")], [("", "string[]")], "view"),
    _fn("isAuthorized", [("_vaultId", "string"), ("_address", "address")],
        [("", "bool")], "view"),
    _fn("vaultExists", [("_vaultId", "string")], [("", "bool")], "view"),
    _event("VaultCreated", [
        ("vaultId", "string", True), ("owner", "address", True),
        ("cid", "string", False), ("releaseTimestamp", "uint256", False),
    ]),
    _event("AccessGranted", [
        ("vaultId", "string", True), ("heir", "address", True),
    ]),
    _event("AccessRevoked", [
        ("vaultId", "string", True), ("heir", "address", True),
    ]),
    _event("ReleaseTimeExtended", [
        ("vaultId", "string", True), ("newTimestamp", "uint256", False),
    ]),
]

_FUNCTIONS = {e["name"]: e for e in VAULT_ABI if e["type"] == "function"}
_EVENTS = {e["name"]: e for e in VAULT_ABI if e["type"] == "event"}


def _signature(entry: dict) -> str:
    types = ",".join(i["type"] for i in entry["inputs"])
    return f"{entry['name']}({types})"


SELECTORS: dict[bytes, str] = {
    function_signature_to_4byte_selector(_signature(e)): name
    for name, e in _FUNCTIONS.items()
}
EVENT_TOPICS: dict[str, bytes] = {
    name: event_signature_to_log_topic(_signature(e))
    for name, e in _EVENTS.items()
}
_TOPIC_NAMES = {topic: name for name, topic in EVENT_TOPICS.items()}

# Contract functions whose execution emits each event.
EMITTERS: dict[str, tuple[str, ...]] = {
    "VaultCreated": ("createVault",),
    "AccessGranted": ("grantAccess", "grantAccessToMultiple"),
    "AccessRevoked": ("revokeAccess",),
    "ReleaseTimeExtended": ("extendReleaseTime",),
}


def hash_string(value: str) -> bytes:
    """Topic value of an indexed ``string`` argument."""
    return keccak(text=value)


def _to_abi(value: Any, abi_type: str) -> Any:
    if abi_type in ("bytes32", "bytes") and isinstance(value, str):
        return to_bytes(hexstr=value)
    return value


def _from_abi(value: Any, abi_type: str) -> Any:
    if abi_type == "address":
        return value.lower()
    if abi_type == "address[]":
        return [v.lower() for v in value]
    if abi_type in ("bytes32", "bytes"):
        return to_hex(value)
    if abi_type == "string[]":
        return list(value)
    return value


def encode_call(name: str, *args: Any) -> str:
    """ABI-encode a contract call as hex calldata."""
    entry = _FUNCTIONS[name]
    types = [i["type"] for i in entry["inputs"]]
    selector = function_signature_to_4byte_selector(_signature(entry))
    body = encode(types, [_to_abi(a, t) for a, t in zip(args, types)])
    return to_hex(selector + body)


def decode_call(calldata: str) -> tuple[str, dict[str, Any]]:
    """Decode hex calldata into a function name and named arguments.

    Raises:
        ValueError: If the selector is unknown or the payload is malformed.
    """
    raw = to_bytes(hexstr=calldata) if calldata else b""
    if len(raw) < 4:
        raise ValueError("Calldata too short for a function selector")
    name = SELECTORS.get(raw[:4])
    if name is None:
        raise ValueError(f"Unknown function selector {to_hex(raw[:4])}")
    inputs = _FUNCTIONS[name]["inputs"]
    types = [i["type"] for i in inputs]
    try:
        values = decode(types, raw[4:])
    except DecodingError as err:
        raise ValueError(f"Malformed calldata for {name}: {err}") from err
    return name, {
        i["name"].lstrip("_"): _from_abi(v, i["type"])
        for i, v in zip(inputs, values)
    }


@dataclass(frozen=True)
class RawLog:
    """A log entry as returned by the node."""

    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int
    address: Optional[str] = None


@dataclass
class DecodedEvent:
    """A vault contract event.

    ``vault_id`` is ``None`` when the log only carries ``vault_id_hash``.
    """

    name: str
    vault_id_hash: bytes
    args: dict[str, Any]
    block_number: int
    tx_hash: str
    log_index: int
    vault_id: Optional[str] = None
    block_timestamp: Optional[int] = None

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


def encode_event(
    name: str,
    values: dict[str, Any],
    *,
    block_number: int,
    tx_hash: str,
    log_index: int,
    address: Optional[str] = None,
) -> RawLog:
    """Build the log a contract emits for an event."""
    entry = _EVENTS[name]
    topics = [EVENT_TOPICS[name]]
    data_types, data_values = [], []
    for inp in entry["inputs"]:
        value = values[inp["name"]]
        if inp["indexed"]:
            if inp["type"] == "string":
                topics.append(hash_string(value))
            else:
                topics.append(encode([inp["type"]], [value]))
        else:
            data_types.append(inp["type"])
            data_values.append(value)
    return RawLog(
        topics=tuple(topics),
        data=encode(data_types, data_values),
        block_number=block_number,
        tx_hash=tx_hash,
        log_index=log_index,
        address=address,
    )


def decode_event(log: RawLog) -> Optional[DecodedEvent]:
    """Decode a vault contract log.

    Returns:
        DecodedEvent, or None for logs of unknown events.
    """
    if not log.topics:
        return None
    name = _TOPIC_NAMES.get(bytes(log.topics[0]))
    if name is None:
        return None
    entry = _EVENTS[name]
    indexed = [i for i in entry["inputs"] if i["indexed"]]
    plain = [i for i in entry["inputs"] if not i["indexed"]]
    args: dict[str, Any] = {}
    vault_id_hash = b""
    for inp, topic in zip(indexed, log.topics[1:]):
        topic = bytes(topic)
        if inp["type"] == "string":
            vault_id_hash = topic
        else:
            args[inp["name"]] = _from_abi(
                decode([inp["type"]], topic)[0], inp["type"],
            )
    if plain:
        values = decode([i["type"] for i in plain], bytes(log.data))
        for inp, value in zip(plain, values):
            args[inp["name"]] = _from_abi(value, inp["type"])
    return DecodedEvent(
        name=name,
        vault_id_hash=vault_id_hash,
        args=args,
        block_number=log.block_number,
        tx_hash=log.tx_hash,
        log_index=log.log_index,
    )


def topic_filter() -> list[list[str]]:
    """``topics`` filter matching any vault contract event."""
    return [[to_hex(t) for t in EVENT_TOPICS.values()]]
