"""
Vault id recovery for events whose ``vaultId`` is an indexed string.

Logs carry ``keccak256(vaultId)`` only. Resolution order:

1. Decode the originating transaction with the functions that can emit the
   event and accept the ``vaultId`` argument if its hash equals the topic.
2. List the sender's vaults with ``getUserVaults`` and keep the ones whose
   hash matches the topic. Without a topic hash, fall back to a ledger-state
   predicate for the event type.
3. Anything else is unrecoverable and the event is skipped by the caller.
"""
import logging
from collections import OrderedDict
from typing import Optional

from ..exceptions import UnrecoverableArgument, VaultNotFound
from ..ledger.abi import EMITTERS, DecodedEvent, decode_call, hash_string
from ..ledger.base import VaultLedger

logger = logging.getLogger("legacy_vault.indexer")

DEFAULT_MAX_KNOWN = 10_000


class VaultIdResolver:
    """Resolve hashed vault ids, caching up to ``max_known`` recent ids."""

    def __init__(self, ledger: VaultLedger, max_known: int = DEFAULT_MAX_KNOWN):
        if max_known < 1:
            raise ValueError("max_known must be positive")
        self._ledger = ledger
        self._max_known = max_known
        self._known: OrderedDict[bytes, str] = OrderedDict()

    def __len__(self) -> int:
        return len(self._known)

    def remember(self, vault_id: str) -> None:
        key = hash_string(vault_id)
        self._known[key] = vault_id
        self._known.move_to_end(key)
        while len(self._known) > self._max_known:
            self._known.popitem(last=False)

    async def resolve(self, event: DecodedEvent) -> str:
        """Return the plain vault id of ``event``.

        Raises:
            UnrecoverableArgument: If no unique vault id can be found.
            LedgerUnavailable: If the node cannot be reached.
        """
        if event.vault_id is not None:
            return event.vault_id
        cached = self._known.get(event.vault_id_hash)
        if cached is not None:
            self._known.move_to_end(event.vault_id_hash)
            return cached

        tx = await self._ledger.get_transaction(event.tx_hash)
        if tx is None:
            raise UnrecoverableArgument(
                "Originating transaction not found",
                {"event": event.name, "tx_hash": event.tx_hash},
            )
        vault_id = self._from_calldata(event, tx.input)
        if vault_id is None:
            vault_id = await self._from_sender_vaults(event, tx.sender)
        self.remember(vault_id)
        return vault_id

    @staticmethod
    def _from_calldata(event: DecodedEvent, calldata: str) -> Optional[str]:
        try:
            name, args = decode_call(calldata)
        except ValueError as err:
            logger.debug("Calldata of %s not decodable: %s", event.tx_hash, err)
            return None
        if name not in EMITTERS.get(event.name, ()):
            # e.g. the call went through a forwarder contract
            return None
        value = args.get("vaultId")
        if isinstance(value, str) and hash_string(value) == event.vault_id_hash:
            return value
        return None

    async def _from_sender_vaults(self, event: DecodedEvent, sender: str) -> str:
        candidates = list(dict.fromkeys(await self._ledger.get_user_vaults(sender)))
        if event.vault_id_hash:
            matches = [v for v in candidates if hash_string(v) == event.vault_id_hash]
        else:
            matches = [v for v in candidates if await self._state_matches(event, v)]
        if len(matches) != 1:
            raise UnrecoverableArgument(
                "No unique vault for event",
                {
                    "event": event.name,
                    "tx_hash": event.tx_hash,
                    "candidates": len(candidates),
                    "matches": len(matches),
                },
            )
        logger.debug("Recovered vault %s for %s from sender vaults", matches[0], event.name)
        return matches[0]

    async def _state_matches(self, event: DecodedEvent, vault_id: str) -> bool:
        """Whether the ledger's current state is consistent with ``event``."""
        args = event.args
        try:
            if event.name == "AccessGranted":
                return await self._ledger.is_authorized(vault_id, args["heir"])
            if event.name == "AccessRevoked":
                heir = args["heir"]
                return (
                    vault_id in await self._ledger.get_heir_vaults(heir)
                    and not await self._ledger.is_authorized(vault_id, heir)
                )
            metadata = await self._ledger.get_vault_metadata(vault_id)
        except VaultNotFound:
            return False
        if event.name == "VaultCreated":
            return metadata.content_pointer == args.get("cid")
        if event.name == "ReleaseTimeExtended":
            return metadata.release_timestamp == args.get("newTimestamp")
        return False
