"""Contract for the object-storage collaborator consumed by both engines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Optional

from ..errors import StorageGatewayError

__all__ = ["ObjectMetadata", "StorageGateway", "StorageGatewayError"]


@dataclass(frozen=True)
class ObjectMetadata:
    size: int
    content_type: str = "application/octet-stream"


class StorageGateway(ABC):
    """Read-side primitives the engines need from object storage.

    ``get_metadata`` returns ``None`` for a missing object. The two read calls
    raise ``StorageGatewayError`` (or let transport errors escape) when the
    object cannot be read; callers treat either as a per-object failure.
    Implementations bound their own network waits: an export gives up on a
    read after its fetch timeout, but the worker thread stays blocked until
    the call returns.
    """

    @abstractmethod
    def get_metadata(self, key: str) -> Optional[ObjectMetadata]:
        raise NotImplementedError

    @abstractmethod
    def open_read_stream(self, key: str) -> BinaryIO:
        raise NotImplementedError

    @abstractmethod
    def download_bytes(self, key: str) -> bytes:
        raise NotImplementedError
