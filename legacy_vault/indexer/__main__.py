"""Run the indexer: ``python -m legacy_vault.indexer``.

Settings come from the environment, see ``legacy_vault.conf``.
"""
import asyncio
import logging
import os
import signal

import asyncpg

from ..conf import VaultSettings
from ..contentstore.pinata import PinataContentStore
from ..ledger.probe import NotFound, probe_ledger
from ..ledger.web3_ledger import Web3Ledger
from .indexer import EventIndexer
from .readmodel import PostgresReadModel

logger = logging.getLogger("legacy_vault.indexer")


async def main() -> None:
    settings = VaultSettings.from_env()
    if not settings.database_dsn:
        raise SystemExit("LEGACY_VAULT_DATABASE_DSN environment variable is not set")

    ledger = Web3Ledger.from_url(settings.rpc_url, settings.contract_address)
    probe = await probe_ledger(ledger)
    if isinstance(probe, NotFound):
        raise SystemExit(f"Ledger not reachable after {probe.attempts} attempt(s): {probe.reason}")
    logger.info("Ledger reachable at block %d", probe.block_number)

    store = None
    if settings.pinata_jwt:
        store = PinataContentStore(
            settings.pinata_jwt, settings.ipfs_gateway, settings.pinata_api_url,
        )
    pool = await asyncpg.create_pool(settings.database_dsn, min_size=1, max_size=4)
    try:
        read_model = PostgresReadModel(pool)
        await read_model.create_schema()
        indexer = EventIndexer(
            ledger,
            read_model,
            store,
            chunk_size=settings.chunk_size,
            poll_interval=settings.poll_interval,
            start_block=settings.start_block,
        )
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, indexer.stop)
        await indexer.run_forever()
    finally:
        if store is not None:
            await store.close()
        await pool.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LEGACY_VAULT_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main())
