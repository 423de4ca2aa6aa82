"""
Vault Lifecycle — authorization rules for one vault.

Per ``(vault, address)`` pair::

    UNAUTHORIZED --grant--> AUTHORIZED --revoke--> REVOKED --grant--> AUTHORIZED

- ``grant``: owner only, only while ``now < release_timestamp``.
- ``revoke``: owner only, at any time.
- ``extend_release_time``: owner only, in either direction. Moving it into
  the past releases the vault to every active heir immediately.

Grants are time-boxed and revocations are not, so an owner can always lock
a heir out, even after release.
"""
import enum
from dataclasses import dataclass, field
from typing import Optional

from ..exceptions import (
    GrantAfterRelease,
    InvalidAddress,
    NotAuthorized,
    NotOwner,
    ReleaseTimeNotReached,
)
from ..ledger.base import VaultMetadata, normalize_address


class AccessState(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"
    AUTHORIZED = "authorized"
    REVOKED = "revoked"


@dataclass
class VaultLifecycle:
    """Authorization state of a vault and its heirs."""

    vault_id: str
    owner: str
    release_timestamp: int
    grants: dict[str, AccessState] = field(default_factory=dict)

    @classmethod
    def from_metadata(
        cls, metadata: VaultMetadata, grants: Optional[dict[str, AccessState]] = None
    ) -> "VaultLifecycle":
        return cls(
            vault_id=metadata.vault_id,
            owner=metadata.owner.lower(),
            release_timestamp=metadata.release_timestamp,
            grants=dict(grants or {}),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state_of(self, address: str) -> AccessState:
        return self.grants.get(address.lower(), AccessState.UNAUTHORIZED)

    def is_released(self, now: int) -> bool:
        return now >= self.release_timestamp

    def is_authorized(self, address: str) -> bool:
        """Owner, or a heir with an active grant."""
        address = address.lower()
        return address == self.owner or self.state_of(address) is AccessState.AUTHORIZED

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_owner(self, caller: str) -> None:
        if caller.lower() != self.owner:
            raise NotOwner(
                "Only owner can perform this action",
                {"vault_id": self.vault_id},
            )

    def check_grant(self, caller: str, heir: str, now: int) -> str:
        """Validate a grant without applying it.

        Returns:
            The normalized heir address.
        """
        self.check_owner(caller)
        heir = normalize_address(heir)
        if heir == self.owner:
            raise InvalidAddress(
                "Cannot grant access to yourself", {"vault_id": self.vault_id},
            )
        if self.is_released(now):
            raise GrantAfterRelease(
                "Cannot grant access after release",
                {"vault_id": self.vault_id, "release_timestamp": self.release_timestamp},
            )
        return heir

    def check_owner_access(self, caller: str) -> None:
        """Owner key reads are always permitted to the owner."""
        self.check_owner(caller)

    def check_heir_access(self, caller: str, now: int) -> None:
        """Heir key reads need an active grant and a reached release time."""
        if self.state_of(caller) is not AccessState.AUTHORIZED:
            raise NotAuthorized(
                "Not authorized to access this vault", {"vault_id": self.vault_id},
            )
        if not self.is_released(now):
            raise ReleaseTimeNotReached(
                "Release time not reached",
                {"vault_id": self.vault_id, "release_timestamp": self.release_timestamp},
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def grant(self, caller: str, heir: str, now: int) -> AccessState:
        heir = self.check_grant(caller, heir, now)
        self.grants[heir] = AccessState.AUTHORIZED
        return AccessState.AUTHORIZED

    def revoke(self, caller: str, heir: str) -> AccessState:
        self.check_owner(caller)
        heir = normalize_address(heir)
        self.grants[heir] = AccessState.REVOKED
        return AccessState.REVOKED

    def extend_release_time(self, caller: str, new_timestamp: int) -> int:
        self.check_owner(caller)
        self.release_timestamp = int(new_timestamp)
        return self.release_timestamp
