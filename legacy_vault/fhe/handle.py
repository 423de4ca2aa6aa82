"""
Coprocessor handle — explicit, lazily initialised access to the client.

Creating a coprocessor client is expensive (it fetches public keys and
parameters), so the handle builds it on first use and reuses it after.
Concurrent first callers share one initialisation. The handle is passed to
``KeyEscrow`` explicitly; there is no process-wide instance.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from ..exceptions import DecryptionServiceUnavailable, VaultError
from .client import HomomorphicClient

logger = logging.getLogger("legacy_vault.fhe")

ClientFactory = Callable[[], Union[HomomorphicClient, Awaitable[HomomorphicClient]]]


class CoprocessorHandle:
    """Init-once holder around a ``HomomorphicClient`` factory."""

    def __init__(self, factory: ClientFactory):
        self._factory = factory
        self._client: Optional[HomomorphicClient] = None
        self._lock = asyncio.Lock()

    @classmethod
    def of(cls, client: HomomorphicClient) -> "CoprocessorHandle":
        """Wrap an already initialised client."""
        handle = cls(lambda: client)
        handle._client = client
        return handle

    @property
    def initialized(self) -> bool:
        return self._client is not None

    async def get(self) -> HomomorphicClient:
        """Return the client, creating it on first call.

        Raises:
            DecryptionServiceUnavailable: If the factory fails; the next
                call tries again.
        """
        if self._client is not None:
            return self._client
        async with self._lock:
            if self._client is None:
                logger.info("Initialising coprocessor client")
                try:
                    client = self._factory()
                    if inspect.isawaitable(client):
                        client = await client
                except VaultError:
                    raise
                except Exception as err:
                    raise DecryptionServiceUnavailable(
                        "Coprocessor initialisation failed", {"error": str(err)},
                    ) from err
                self._client = client
        return self._client
