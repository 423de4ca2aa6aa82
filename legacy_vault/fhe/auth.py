"""
EIP-712 authorization for user decryption.

Every decrypt request carries a fresh signature over the requester's
ephemeral public key, the contracts it is scoped to and a validity window.
Authorizations are never cached or shared between callers.

Security Note:
    Never log signatures.
"""
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from eth_utils import to_bytes, to_hex

DOMAIN_NAME = "Decryption"
DOMAIN_VERSION = "1"
SECONDS_PER_DAY = 86400

_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "UserDecryptRequestVerification": [
        {"name": "publicKey", "type": "bytes"},
        {"name": "contractAddresses", "type": "address[]"},
        {"name": "startTimestamp", "type": "uint256"},
        {"name": "durationDays", "type": "uint256"},
        {"name": "extraData", "type": "bytes"},
    ],
}


def typed_data(
    public_key: str,
    contract_addresses: Sequence[str],
    start_timestamp: int,
    duration_days: int,
    verifying_contract: str,
    chain_id: int,
) -> dict[str, Any]:
    """Full EIP-712 message for a user decryption request."""
    return {
        "types": _TYPES,
        "primaryType": "UserDecryptRequestVerification",
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": chain_id,
            "verifyingContract": verifying_contract,
        },
        "message": {
            "publicKey": to_bytes(hexstr=public_key),
            "contractAddresses": list(contract_addresses),
            "startTimestamp": start_timestamp,
            "durationDays": duration_days,
            "extraData": b"",
        },
    }


@dataclass(frozen=True)
class DecryptionAuthorization:
    """A signed, time-bounded permission to decrypt handles of some contracts."""

    user_address: str
    public_key: str
    contract_addresses: tuple[str, ...]
    start_timestamp: int
    duration_days: int
    verifying_contract: str
    chain_id: int
    signature: str

    def __repr__(self) -> str:
        return (
            f"DecryptionAuthorization(user={self.user_address}, "
            f"contracts={self.contract_addresses}, start={self.start_timestamp}, "
            f"days={self.duration_days})"
        )

    @classmethod
    def sign(
        cls,
        account: LocalAccount,
        public_key: str,
        contract_addresses: Sequence[str],
        verifying_contract: str,
        chain_id: int,
        duration_days: int = 10,
        start_timestamp: Optional[int] = None,
    ) -> "DecryptionAuthorization":
        """Sign a new authorization with the requester's account."""
        start = int(start_timestamp if start_timestamp is not None else time.time())
        contracts = tuple(a.lower() for a in contract_addresses)
        message = typed_data(
            public_key, contracts, start, duration_days, verifying_contract, chain_id,
        )
        signed = account.sign_message(encode_typed_data(full_message=message))
        return cls(
            user_address=account.address.lower(),
            public_key=public_key,
            contract_addresses=contracts,
            start_timestamp=start,
            duration_days=duration_days,
            verifying_contract=verifying_contract,
            chain_id=chain_id,
            signature=to_hex(signed.signature),
        )

    @property
    def expires_at(self) -> int:
        return self.start_timestamp + self.duration_days * SECONDS_PER_DAY

    def is_valid_at(self, now: int) -> bool:
        return self.start_timestamp <= now < self.expires_at

    def covers(self, contract_address: str) -> bool:
        return contract_address.lower() in self.contract_addresses

    def recover_signer(self) -> str:
        """Address that produced the signature, lowercased."""
        message = typed_data(
            self.public_key, self.contract_addresses, self.start_timestamp,
            self.duration_days, self.verifying_contract, self.chain_id,
        )
        return Account.recover_message(
            encode_typed_data(full_message=message), signature=self.signature,
        ).lower()
