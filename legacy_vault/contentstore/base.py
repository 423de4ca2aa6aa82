"""Content-addressed blob store holding vault envelopes."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ContentInfo:
    """What the store knows about a pinned blob."""

    pointer: str
    vault_type: str = "text"
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None


@dataclass
class UploadMetadata:
    name: str = "vault-data"
    keyvalues: dict[str, str] = field(default_factory=dict)


class ContentStore(ABC):
    """Stores envelope text by content pointer (CID)."""

    @abstractmethod
    async def upload(self, text: str, metadata: Optional[UploadMetadata] = None) -> str:
        """Store text and return its pointer."""

    @abstractmethod
    async def fetch(self, pointer: str) -> str:
        ...

    async def describe(self, pointer: str) -> Optional[ContentInfo]:
        """Pin metadata for a pointer, None when the store cannot tell."""
        return None
