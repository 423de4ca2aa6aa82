"""
Ledger probe — bounded wait for a ledger endpoint to become usable.

Returns ``Found`` or ``NotFound`` instead of raising, so startup code can
decide what "not there yet" means for it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Union

from ..exceptions import TransientError, VaultError
from .base import VaultLedger

logger = logging.getLogger("legacy_vault.ledger")


@dataclass(frozen=True)
class Found:
    ledger: VaultLedger
    block_number: int


@dataclass(frozen=True)
class NotFound:
    reason: str
    attempts: int


ProbeResult = Union[Found, NotFound]


async def probe_ledger(
    ledger: VaultLedger,
    attempts: int = 5,
    delay: float = 1.0,
) -> ProbeResult:
    """Poll the ledger until it answers or attempts run out.

    The contract must be deployed at the configured address, checked by a
    cheap ``vaultExists`` read.

    Args:
        ledger: Ledger to probe.
        attempts: Maximum number of tries (at least one).
        delay: Seconds between tries.
    """
    reason = "no attempt made"
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            block = await ledger.block_number()
            await ledger.vault_exists("")
            return Found(ledger=ledger, block_number=block)
        except TransientError as err:
            reason = str(err)
        except VaultError as err:
            # the node answered but the contract did not
            return NotFound(reason=str(err), attempts=attempt)
        logger.debug("Ledger not reachable (attempt %d/%d): %s", attempt, attempts, reason)
        if attempt < attempts:
            await asyncio.sleep(delay)
    return NotFound(reason=reason, attempts=max(attempts, 1))
