"""
Legacy Vault Configuration — validated settings loaded from the environment.

Reads settings from environment variables:
    LEGACY_VAULT_RPC_URL = <json-rpc endpoint>  (or ALCHEMY_API_KEY)
    LEGACY_VAULT_CONTRACT_ADDRESS = <vault contract address>
    LEGACY_VAULT_DATABASE_DSN = <postgres dsn for the read-model>
    PINATA_JWT = <content store token>

Security Note:
    Never log tokens or DSNs. Only log hosts, addresses and numeric settings.
"""
import os
import logging
from typing import Optional

from eth_utils import is_address
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("legacy_vault.conf")

ALCHEMY_URL = "https://eth-sepolia.g.alchemy.com/v2/{key}"
DEFAULT_GATEWAY = "https://gateway.pinata.cloud/ipfs/"
PINATA_API_URL = "https://api.pinata.cloud"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def resolve_rpc_url() -> str:
    """Return the JSON-RPC endpoint.

    An Alchemy API key takes precedence over an explicit URL.

    Raises:
        RuntimeError: If neither ALCHEMY_API_KEY nor LEGACY_VAULT_RPC_URL is set.
    """
    alchemy_key = os.environ.get("ALCHEMY_API_KEY")
    if alchemy_key:
        return ALCHEMY_URL.format(key=alchemy_key)
    url = os.environ.get("LEGACY_VAULT_RPC_URL")
    if not url:
        raise RuntimeError(
            "No ledger endpoint configured. "
            "Set LEGACY_VAULT_RPC_URL or ALCHEMY_API_KEY"
        )
    return url


class VaultSettings(BaseModel):
    """Validated Legacy Vault settings."""

    rpc_url: str
    contract_address: str
    chain_id: int = Field(default=11155111, ge=1)
    decryption_verifier: Optional[str] = None
    database_dsn: Optional[str] = None
    pinata_jwt: Optional[str] = None
    pinata_api_url: str = Field(default=PINATA_API_URL)
    ipfs_gateway: str = Field(default=DEFAULT_GATEWAY)
    poll_interval: int = Field(default=30, ge=1)
    chunk_size: int = Field(default=1000, ge=1, le=10000)
    decrypt_duration_days: int = Field(default=10, ge=1, le=365)
    retries: int = Field(default=2, ge=0, le=10)
    start_block: int = Field(default=0, ge=0)

    @field_validator("contract_address", "decryption_verifier")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        """Addresses must be 20-byte hex strings."""
        if v is not None and not is_address(v):
            raise ValueError(f"Invalid address: {v}")
        return v

    @field_validator("ipfs_gateway")
    @classmethod
    def validate_gateway(cls, v: str) -> str:
        """Gateway URLs are joined with a CID, keep a trailing slash."""
        return v if v.endswith("/") else f"{v}/"

    @model_validator(mode="after")
    def default_verifier(self) -> "VaultSettings":
        """Fall back to the vault contract as EIP-712 verifying contract."""
        if self.decryption_verifier is None:
            self.decryption_verifier = self.contract_address
        return self

    @classmethod
    def from_env(cls) -> "VaultSettings":
        """Create VaultSettings by loading values from environment.

        Returns:
            Populated VaultSettings instance.

        Raises:
            RuntimeError: If the contract address or the endpoint is missing.
        """
        contract_address = os.environ.get("LEGACY_VAULT_CONTRACT_ADDRESS")
        if not contract_address:
            raise RuntimeError(
                "LEGACY_VAULT_CONTRACT_ADDRESS environment variable is not set"
            )
        settings = cls(
            rpc_url=resolve_rpc_url(),
            contract_address=contract_address,
            chain_id=_env_int("LEGACY_VAULT_CHAIN_ID", 11155111),
            decryption_verifier=os.environ.get("LEGACY_VAULT_DECRYPTION_VERIFIER"),
            database_dsn=os.environ.get("LEGACY_VAULT_DATABASE_DSN"),
            pinata_jwt=os.environ.get("PINATA_JWT"),
            ipfs_gateway=os.environ.get("LEGACY_VAULT_IPFS_GATEWAY", DEFAULT_GATEWAY),
            poll_interval=_env_int("LEGACY_VAULT_POLL_INTERVAL", 30),
            chunk_size=_env_int("LEGACY_VAULT_CHUNK_SIZE", 1000),
            decrypt_duration_days=_env_int("LEGACY_VAULT_DECRYPT_DAYS", 10),
            retries=_env_int("LEGACY_VAULT_RETRIES", 2),
            start_block=_env_int("LEGACY_VAULT_START_BLOCK", 0),
        )
        logger.debug(
            "Loaded settings: contract=%s chain=%d chunk=%d interval=%ds",
            settings.contract_address, settings.chain_id,
            settings.chunk_size, settings.poll_interval,
        )
        return settings
