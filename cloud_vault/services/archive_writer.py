"""Streaming ZIP assembly and the bounded, order-preserving fetch window."""

from __future__ import annotations

import io
import logging
import zipfile
from collections import deque
from concurrent.futures import Executor, Future
from datetime import datetime
from itertools import islice
from typing import BinaryIO, Callable, Deque, Iterable, Iterator, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")

# Entries larger than this need zip64 headers up front because an unseekable
# sink cannot patch the local header afterwards.
_ZIP64_THRESHOLD = zipfile.ZIP64_LIMIT


class _DrainableSink(io.RawIOBase):
    """Write-only, unseekable byte buffer emptied by ``drain``."""

    def __init__(self) -> None:
        super().__init__()
        self._buffer = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._buffer.extend(data)
        return len(data)

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class StreamingZipWriter:
    """Builds a ZIP archive incrementally and hands back bytes as they are produced.

    Because the sink cannot seek, every entry is written with a trailing data
    descriptor and the archive never has to be held in memory as a whole.
    """

    def __init__(
        self,
        *,
        compression_level: int = 6,
        chunk_size: int = 64 * 1024,
        comment: Optional[str] = None,
    ) -> None:
        self.chunk_size = chunk_size
        self.entry_count = 0
        self.bytes_out = 0
        self._sink = _DrainableSink()
        self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(
            self._sink,
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compression_level,
        )
        if comment:
            self._zip.comment = comment.encode("utf-8")[:65535]
        self._open_entry: Optional[BinaryIO] = None

    def add_stream(self, arcname: str, source: BinaryIO, *, size_hint: int = 0) -> Iterator[bytes]:
        """Copy ``source`` into a new entry, yielding archive bytes as they accumulate."""
        archive = self._require_open()
        info = zipfile.ZipInfo(arcname, date_time=datetime.now().timetuple()[:6])
        info.compress_type = zipfile.ZIP_DEFLATED
        handle = archive.open(info, mode="w", force_zip64=size_hint >= _ZIP64_THRESHOLD)
        self._open_entry = handle
        try:
            while True:
                chunk = source.read(self.chunk_size)
                if not chunk:
                    break
                handle.write(chunk)
                data = self._drain()
                if data:
                    yield data
        finally:
            self._open_entry = None
            handle.close()
        self.entry_count += 1
        data = self._drain()
        if data:
            yield data

    def add_bytes(self, arcname: str, payload: bytes) -> Iterator[bytes]:
        return self.add_stream(arcname, io.BytesIO(payload), size_hint=len(payload))

    def finish(self) -> bytes:
        """Write the central directory and return the remaining bytes."""
        archive = self._require_open()
        archive.close()
        self._zip = None
        return self._drain()

    def abort(self) -> None:
        """Drop the archive without finishing it; buffered bytes are discarded."""
        if self._zip is None:
            return
        try:
            if self._open_entry is not None:
                self._open_entry.close()
            self._zip.close()
        except (ValueError, OSError) as exc:
            logger.debug("Ignoring error while abandoning archive: %s", exc)
        self._zip = None
        self._open_entry = None
        self._sink.drain()

    def _require_open(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise ValueError("archive already finished")
        return self._zip

    def _drain(self) -> bytes:
        data = self._sink.drain()
        self.bytes_out += len(data)
        return data


def release_when_done(future: Future, release: Callable[[object], None]) -> None:
    """Hand the eventual result of an abandoned ``future`` to ``release``."""

    def _callback(done: Future) -> None:
        if done.cancelled() or done.exception() is not None:
            return
        release(done.result())

    if not future.cancel():
        future.add_done_callback(_callback)


def iter_ordered(
    executor: Executor,
    items: Iterable[ItemT],
    work: Callable[[ItemT], ResultT],
    *,
    window: int,
    release: Optional[Callable[[object], None]] = None,
) -> Iterator[Tuple[ItemT, "Future[ResultT]"]]:
    """Submit ``work`` for ``items`` with at most ``window`` outstanding futures.

    Futures are yielded in input order. The next item is submitted only once
    the consumer moves past the head of the window, so a slow consumer also
    bounds how many results sit waiting. Closing the iterator early cancels
    whatever has not started and passes late results to ``release``.
    """
    if window < 1:
        raise ValueError("window must be at least 1")
    source = iter(items)
    pending: Deque[Tuple[ItemT, Future]] = deque(
        (item, executor.submit(work, item)) for item in islice(source, window)
    )
    try:
        while pending:
            item, future = pending.popleft()
            yield item, future
            for follower in islice(source, 1):
                pending.append((follower, executor.submit(work, follower)))
    finally:
        for _, future in pending:
            if release is None:
                future.cancel()
            else:
                release_when_done(future, release)
