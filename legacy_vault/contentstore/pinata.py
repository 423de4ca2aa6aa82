"""
Pinata content store — IPFS pinning through the Pinata API.

Security Note:
    Never log the JWT. Uploaded blobs are envelopes (ciphertext only).
"""
import asyncio
import logging
from typing import Any, Optional

import aiohttp
import orjson

from ..exceptions import ContentStoreError, ContentStoreUnavailable
from .base import ContentInfo, ContentStore, UploadMetadata

logger = logging.getLogger("legacy_vault.contentstore")

DEFAULT_TIMEOUT = 60


class PinataContentStore(ContentStore):
    """Uploads envelopes with ``pinFileToIPFS`` and reads them from a gateway.

    A session can be passed in; otherwise one is created and owned by the
    store (close it with ``close()`` or ``async with``).
    """

    def __init__(
        self,
        jwt: str,
        gateway: str = "https://gateway.pinata.cloud/ipfs/",
        api_url: str = "https://api.pinata.cloud",
        session: Optional[aiohttp.ClientSession] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        if not jwt:
            raise ContentStoreError("Pinata JWT not configured")
        self._jwt = jwt
        self._gateway = gateway if gateway.endswith("/") else f"{gateway}/"
        self._api_url = api_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __aenter__(self) -> "PinataContentStore":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._jwt}"}

    @staticmethod
    async def _check(response: aiohttp.ClientResponse, action: str) -> None:
        if response.status < 400:
            return
        body = await response.text()
        details = {"status": response.status, "body": body[:200]}
        if response.status >= 500 or response.status == 429:
            raise ContentStoreUnavailable(f"Pinata {action} failed", details)
        raise ContentStoreError(f"Pinata {action} failed", details)

    async def upload(self, text: str, metadata: Optional[UploadMetadata] = None) -> str:
        metadata = metadata or UploadMetadata()
        form = aiohttp.FormData()
        form.add_field(
            "file", text.encode("utf-8"),
            filename="vault-data.txt", content_type="text/plain",
        )
        form.add_field("pinataMetadata", orjson.dumps({
            "name": metadata.name, "keyvalues": metadata.keyvalues,
        }).decode("utf-8"))
        form.add_field("pinataOptions", orjson.dumps({
            "cidVersion": 1, "wrapWithDirectory": False,
        }).decode("utf-8"))
        url = f"{self._api_url}/pinning/pinFileToIPFS"
        try:
            async with self._get_session().post(url, data=form, headers=self._auth) as resp:
                await self._check(resp, "upload")
                result = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise ContentStoreUnavailable("Pinata upload failed", {"error": str(err)}) from err
        pointer = result["IpfsHash"]
        logger.info("Uploaded %d bytes to IPFS: %s", len(text), pointer)
        return pointer

    async def fetch(self, pointer: str) -> str:
        url = f"{self._gateway}{pointer}"
        try:
            async with self._get_session().get(url) as resp:
                await self._check(resp, "download")
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise ContentStoreUnavailable("IPFS download failed", {"error": str(err)}) from err
        logger.debug("Downloaded %d bytes from IPFS: %s", len(text), pointer)
        return text

    async def describe(self, pointer: str) -> Optional[ContentInfo]:
        url = f"{self._api_url}/data/pinList"
        try:
            async with self._get_session().get(
                url, params={"hashContains": pointer}, headers=self._auth,
            ) as resp:
                await self._check(resp, "pin lookup")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise ContentStoreUnavailable("Pinata pin lookup failed", {"error": str(err)}) from err
        for row in data.get("rows") or []:
            if row.get("ipfs_pin_hash") != pointer:
                continue
            kv = (row.get("metadata") or {}).get("keyvalues") or {}
            return ContentInfo(
                pointer=pointer,
                vault_type="file" if kv.get("type") == "file" else "text",
                file_name=kv.get("fileName"),
                mime_type=kv.get("mimeType"),
                size=row.get("size"),
            )
        return None
