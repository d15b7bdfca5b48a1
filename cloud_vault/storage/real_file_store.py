from __future__ import annotations

import io
import json
import logging
import mimetypes
import os
import threading
import uuid
from pathlib import Path
from typing import BinaryIO, Dict, Optional

from ..errors import StorageGatewayError
from .gateway import ObjectMetadata, StorageGateway

logger = logging.getLogger(__name__)


class RealFileStore(StorageGateway):
    """Lightweight disk-backed object store keyed by storage key."""

    def __init__(self, base_path: str, *, chunk_size: int = 1024 * 1024):
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size
        self._index_path = self.base_path / "index.json"
        self._entries: Dict[str, Dict[str, object]] = {}
        self._lock = threading.Lock()
        self._load_index()

    def _load_index(self) -> None:
        if not self._index_path.exists():
            return
        try:
            data = json.loads(self._index_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                self._entries = data
        except (json.JSONDecodeError, OSError):
            # Corrupt index; start fresh but keep existing blobs.
            logger.warning("Discarding unreadable object index at %s", self._index_path)
            self._entries = {}

    def _persist_index(self) -> None:
        temp_path = self._index_path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(self._entries, indent=2), encoding="utf-8")
        temp_path.replace(self._index_path)

    # Writes -----------------------------------------------------------------

    def put_stream(self, key: str, stream: BinaryIO, content_type: Optional[str] = None) -> ObjectMetadata:
        suffix = Path(key).suffix or ".bin"
        target_path = self.base_path / f"{uuid.uuid4().hex}{suffix}"
        size_bytes = 0
        with target_path.open("wb") as handle:
            while True:
                chunk = stream.read(self.chunk_size)
                if not chunk:
                    break
                handle.write(chunk)
                size_bytes += len(chunk)
        content_type = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = {
                "path": str(target_path),
                "size_bytes": size_bytes,
                "content_type": content_type,
            }
            self._persist_index()
        if previous:
            self._unlink(str(previous.get("path", "")))
        return ObjectMetadata(size=size_bytes, content_type=content_type)

    def put_object(self, key: str, data: bytes, content_type: Optional[str] = None) -> ObjectMetadata:
        return self.put_stream(key, io.BytesIO(data), content_type)

    def delete_object(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry:
                self._persist_index()
        if not entry:
            return False
        self._unlink(str(entry.get("path", "")))
        return True

    # Reads ------------------------------------------------------------------

    def resolve(self, key: str) -> Optional[Dict[str, object]]:
        entry = self._entries.get(key)
        if not entry:
            return None
        if not os.path.exists(str(entry.get("path", ""))):
            return None
        return entry

    def get_metadata(self, key: str) -> Optional[ObjectMetadata]:
        entry = self.resolve(key)
        if entry is None:
            return None
        path = Path(str(entry["path"]))
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise StorageGatewayError(f"Cannot stat object {key}: {exc}", key=key) from exc
        return ObjectMetadata(size=size, content_type=str(entry.get("content_type", "application/octet-stream")))

    def open_read_stream(self, key: str) -> BinaryIO:
        entry = self.resolve(key)
        if entry is None:
            raise StorageGatewayError(f"Object {key} not found", key=key)
        try:
            return open(str(entry["path"]), "rb")
        except OSError as exc:
            raise StorageGatewayError(f"Cannot open object {key}: {exc}", key=key) from exc

    def download_bytes(self, key: str) -> bytes:
        with self.open_read_stream(key) as handle:
            return handle.read()

    # Housekeeping -----------------------------------------------------------

    def cleanup_orphans(self) -> int:
        known_paths = {Path(str(entry.get("path", ""))).resolve() for entry in self._entries.values() if entry.get("path")}
        removed = 0
        for path in self.base_path.glob("*"):
            if path == self._index_path:
                continue
            if path.resolve() not in known_paths and path.is_file():
                try:
                    path.unlink()
                    removed += 1
                except OSError:
                    continue
        return removed

    @staticmethod
    def _unlink(path: str) -> None:
        try:
            os.remove(path)
        except OSError:
            pass
