from __future__ import annotations

import io
import threading
from typing import BinaryIO, Dict, Optional, Tuple

from ..errors import StorageGatewayError
from .gateway import ObjectMetadata, StorageGateway


class InMemoryObjectStore(StorageGateway):
    """Dict-backed object store for local development and unit tests."""

    def __init__(self) -> None:
        self._objects: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put_object(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> ObjectMetadata:
        with self._lock:
            self._objects[key] = (bytes(data), content_type)
        return ObjectMetadata(size=len(data), content_type=content_type)

    def delete_object(self, key: str) -> bool:
        with self._lock:
            return self._objects.pop(key, None) is not None

    def get_metadata(self, key: str) -> Optional[ObjectMetadata]:
        with self._lock:
            stored = self._objects.get(key)
        if stored is None:
            return None
        data, content_type = stored
        return ObjectMetadata(size=len(data), content_type=content_type)

    def open_read_stream(self, key: str) -> BinaryIO:
        return io.BytesIO(self.download_bytes(key))

    def download_bytes(self, key: str) -> bytes:
        with self._lock:
            stored = self._objects.get(key)
        if stored is None:
            raise StorageGatewayError(f"Object {key} not found", key=key)
        return stored[0]

    def __len__(self) -> int:
        return len(self._objects)
