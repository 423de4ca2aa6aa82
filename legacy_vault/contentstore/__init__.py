from .base import ContentInfo, ContentStore, UploadMetadata
from .memory import MemoryContentStore
from .pinata import PinataContentStore

__all__ = [
    "ContentInfo",
    "ContentStore",
    "UploadMetadata",
    "MemoryContentStore",
    "PinataContentStore",
]
