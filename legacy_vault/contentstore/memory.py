"""In-memory content store."""
import hashlib
from typing import Optional

from ..exceptions import ContentStoreError
from .base import ContentInfo, ContentStore, UploadMetadata


class MemoryContentStore(ContentStore):
    """Keeps blobs in a dict keyed by a sha256-derived pointer."""

    def __init__(self):
        self._blobs: dict[str, str] = {}
        self._meta: dict[str, UploadMetadata] = {}

    def __len__(self) -> int:
        return len(self._blobs)

    async def upload(self, text: str, metadata: Optional[UploadMetadata] = None) -> str:
        pointer = "bafy" + hashlib.sha256(text.encode("utf-8")).hexdigest()[:52]
        self._blobs[pointer] = text
        self._meta[pointer] = metadata or UploadMetadata()
        return pointer

    async def fetch(self, pointer: str) -> str:
        try:
            return self._blobs[pointer]
        except KeyError:
            raise ContentStoreError("Content not found", {"pointer": pointer}) from None

    async def describe(self, pointer: str) -> Optional[ContentInfo]:
        meta = self._meta.get(pointer)
        if meta is None:
            return None
        kv = meta.keyvalues
        return ContentInfo(
            pointer=pointer,
            vault_type="file" if kv.get("type") == "file" else "text",
            file_name=kv.get("fileName"),
            mime_type=kv.get("mimeType"),
            size=len(self._blobs[pointer].encode("utf-8")),
        )
