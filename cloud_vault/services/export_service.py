"""Bulk archive export: resolve a scope, then stream it as one ZIP."""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from contextlib import contextmanager
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FetchTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from tempfile import SpooledTemporaryFile
from typing import Any, Callable, Dict, Generator, Iterator, List, Optional, Sequence, Set

from ..errors import DownloadLimitExceeded, ExportResolutionError, StorageGatewayError
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import DownloadJob, DownloadStatus, DownloadType, FileEntry
from ..storage.gateway import StorageGateway
from .archive_writer import StreamingZipWriter, iter_ordered, release_when_done
from .base import BaseService
from .metadata_service import MetadataService
from .registry import TTLRegistry
from .tree_utils import (
    ROOT_BUCKET,
    group_files_by_folder,
    iter_subtree,
    sanitize_file_name,
    sanitize_folder_path,
    unique_entry_path,
)

logger = logging.getLogger(__name__)

ERRORS_DIR = "_ERRORS"
CANCELLED = "cancelled"


class FetchAborted(Exception):
    """Raised inside a fetch worker once the export no longer wants its bytes."""


@dataclass
class ExportOptions:
    archive_name: Optional[str] = None
    preserve_folder_structure: bool = True
    on_progress: Optional[Callable[[DownloadJob], None]] = None


@dataclass(frozen=True)
class PlannedEntry:
    file: FileEntry
    arcname: str


@dataclass
class FetchedObject:
    """Bytes of one object spooled by a fetch worker, with their real length."""

    spool: SpooledTemporaryFile
    size: int

    def close(self) -> None:
        self.spool.close()


class ArchiveStream:
    """Iterator of archive bytes that can be closed before it is exhausted.

    Closing marks the download as cancelled, whether or not iteration began.
    """

    def __init__(self, chunks: Generator[bytes, None, None], on_abandon: Callable[[], None]) -> None:
        self._chunks = chunks
        self._on_abandon = on_abandon
        self._started = False
        self._closed = False

    def __iter__(self) -> "ArchiveStream":
        return self

    def __next__(self) -> bytes:
        if self._closed:
            raise StopIteration
        self._started = True
        return next(self._chunks)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._started:
            self._on_abandon()
        self._chunks.close()

    def __enter__(self) -> "ArchiveStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class ExportHandle:
    stream: ArchiveStream
    download_id: str
    filename: str
    total_files: int
    estimated_size: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkExportService(BaseService):
    metadata_service: MetadataService
    storage: StorageGateway
    bus: InMemoryBus | None = None
    registry: TTLRegistry[DownloadJob] = None

    def __post_init__(self) -> None:
        if self.registry is None:
            self.registry = TTLRegistry(
                "downloads", timedelta(seconds=self.config.export.retention_seconds)
            )

    # Entry points -----------------------------------------------------------

    def export_files(
        self,
        file_ids: Sequence[str],
        user_id: str,
        options: Optional[ExportOptions] = None,
    ) -> ExportHandle:
        options = options or ExportOptions()
        job = self._admit(DownloadType.FILES, user_id, user_id)
        with self._resolving(job):
            files = self.metadata_service.list_files_by_ids(file_ids, owner=user_id)
            if not files:
                raise ExportResolutionError("No files found or access denied")
            requested = len(set(file_ids))
            if len(files) < requested:
                logger.warning(
                    "Export %s resolved %d of %d requested files", job.download_id, len(files), requested
                )
        filename = self._archive_filename(options.archive_name or "selected_files")
        return self._handle(job, files, filename, options, {"requestedFiles": requested})

    def export_folder(
        self,
        folder_id: str,
        user_id: str,
        options: Optional[ExportOptions] = None,
    ) -> ExportHandle:
        options = options or ExportOptions()
        job = self._admit(DownloadType.FOLDER, folder_id, user_id)
        metadata = self.metadata_service
        with self._resolving(job):
            folder = metadata.get_folder(folder_id, owner=user_id)
            if folder is None:
                raise ExportResolutionError("Folder not found or access denied")
            files: List[FileEntry] = []
            folder_count = 0
            for current in iter_subtree([folder], lambda fid: metadata.list_subfolders(fid, owner=user_id)):
                folder_count += 1
                files.extend(metadata.list_files_in_folder(current.id, owner=user_id))
            if not files:
                raise ExportResolutionError("No files found in folder")
        filename = self._archive_filename(folder.name)
        extra = {"folderName": folder.name, "folderPath": folder.full_path, "folderCount": folder_count}
        return self._handle(job, files, filename, options, extra)

    def export_project(
        self,
        project_id: str,
        user_id: str,
        options: Optional[ExportOptions] = None,
    ) -> ExportHandle:
        options = options or ExportOptions()
        job = self._admit(DownloadType.PROJECT, project_id, user_id)
        with self._resolving(job):
            files = self.metadata_service.list_project_files(project_id, owner=user_id)
            if not files:
                raise ExportResolutionError("No files found in project")
            project = self.metadata_service.get_project(project_id)
        name = options.archive_name or (project.name if project else None) or "project"
        filename = self._archive_filename(name)
        return self._handle(job, files, filename, options, {})

    # Status and housekeeping ------------------------------------------------

    def can_user_start_download(self, user_id: str) -> bool:
        limit = self.config.export.max_active_downloads_per_user
        return self.registry.count(lambda job: job.user_id == user_id and job.is_active) < limit

    def active_download_count(self, user_id: Optional[str] = None) -> int:
        return self.registry.count(
            lambda job: job.is_active and (user_id is None or job.user_id == user_id)
        )

    def get_download_status(self, download_id: str) -> Optional[DownloadJob]:
        return self.registry.get(download_id)

    def cleanup_old_downloads(self, now: Optional[datetime] = None) -> List[str]:
        return self.registry.sweep(now)

    # Admission and planning -------------------------------------------------

    def _admit(self, download_type: DownloadType, scope_id: str, user_id: str) -> DownloadJob:
        limit = self.config.export.max_active_downloads_per_user
        stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        job = DownloadJob(
            download_id=f"{download_type.value}_{scope_id}_{stamp}_{uuid.uuid4().hex[:6]}",
            type=download_type,
            user_id=user_id,
            scope_id=scope_id,
        )

        def _under_limit(jobs: List[DownloadJob]) -> bool:
            return sum(1 for other in jobs if other.user_id == user_id and other.is_active) < limit

        if not self.registry.register_if(job.download_id, job, _under_limit):
            logger.warning("User %s hit the limit of %d concurrent downloads", user_id, limit)
            raise DownloadLimitExceeded(
                f"Maximum concurrent downloads ({limit}) exceeded. Please wait for current downloads to complete."
            )
        return job

    @contextmanager
    def _resolving(self, job: DownloadJob) -> Iterator[None]:
        """Mark an admitted job failed when its scope cannot be resolved."""
        try:
            yield
        except Exception as exc:
            self._finish(job, DownloadStatus.FAILED, str(exc))
            raise

    def _plan(self, files: List[FileEntry], preserve_structure: bool) -> List[PlannedEntry]:
        policy = self.config.export
        used: Set[str] = set()
        planned: List[PlannedEntry] = []

        def _clean(name: str) -> str:
            return sanitize_file_name(
                name, max_length=policy.max_filename_length, replacement=policy.replacement_char
            )

        if preserve_structure:
            groups = group_files_by_folder(files, self.metadata_service.get_folder)
        else:
            groups = {ROOT_BUCKET: list(files)}
        for folder_path, members in groups.items():
            prefix = sanitize_folder_path(
                folder_path, max_length=policy.max_filename_length, replacement=policy.replacement_char
            )
            for entry in sorted(members, key=lambda item: (_clean(item.name), item.id)):
                name = _clean(entry.name)
                arcname = f"{prefix}/{name}" if prefix else name
                planned.append(PlannedEntry(file=entry, arcname=unique_entry_path(arcname, used)))
        return planned

    def _handle(
        self,
        job: DownloadJob,
        files: List[FileEntry],
        filename: str,
        options: ExportOptions,
        extra: Dict[str, Any],
    ) -> ExportHandle:
        plan = self._plan(files, options.preserve_folder_structure)
        total_size = sum(max(0, entry.size or 0) for entry in files)
        estimated = math.ceil(total_size * self.config.export.compression_ratio_estimate)

        def _describe(target: DownloadJob) -> None:
            target.total_files = len(plan)
            target.total_size = total_size
            target.estimated_size = estimated
            target.last_update = datetime.now(timezone.utc)

        self.registry.update(job.download_id, _describe)
        folder_groups = {entry.arcname.rsplit("/", 1)[0] for entry in plan if "/" in entry.arcname}
        metadata = {
            "type": job.type.value,
            "totalSize": total_size,
            "folderCount": len(folder_groups),
            **extra,
        }
        logger.info(
            "Prepared %s export %s: %d files, %d bytes", job.type.value, job.download_id, len(plan), total_size
        )
        reserved = {entry.arcname for entry in plan}
        stream = ArchiveStream(
            self._generate(job, plan, reserved, options),
            on_abandon=lambda: self._finish(job, DownloadStatus.FAILED, CANCELLED),
        )
        return ExportHandle(
            stream=stream,
            download_id=job.download_id,
            filename=filename,
            total_files=len(plan),
            estimated_size=estimated,
            metadata=metadata,
        )

    def _archive_filename(self, name: str) -> str:
        policy = self.config.export
        stem = sanitize_file_name(name, max_length=policy.max_filename_length - 4, replacement=policy.replacement_char)
        return f"{stem}.zip"

    # Streaming --------------------------------------------------------------

    def _generate(
        self,
        job: DownloadJob,
        plan: List[PlannedEntry],
        reserved: Set[str],
        options: ExportOptions,
    ) -> Iterator[bytes]:
        policy = self.config.export
        cancel = threading.Event()
        writer = StreamingZipWriter(
            compression_level=policy.compression_level,
            chunk_size=policy.chunk_size,
            comment=f"Generated by Cloud Vault on {datetime.now(timezone.utc).isoformat()}",
        )
        workers = max(1, min(policy.fetch_concurrency, len(plan)))
        # The window bounds live reads. A fetch abandoned after its timeout keeps
        # its thread until the gateway call returns, so the pool has spare room
        # beyond the window for the entries behind it.
        pool = ThreadPoolExecutor(max_workers=max(workers, len(plan)), thread_name_prefix="export-fetch")
        started: Dict[str, float] = {}
        used = set(reserved)
        finished = False
        fetches = iter_ordered(
            pool,
            plan,
            lambda planned: self._fetch(planned, cancel, started),
            window=workers,
            release=_close_spool,
        )
        logger.info("Streaming export %s (%d entries)", job.download_id, len(plan))
        try:
            for planned, future in fetches:
                fetched = None
                try:
                    fetched = self._await_fetch(future, planned, started)
                except FetchTimeout:
                    release_when_done(future, _close_spool)
                    failure = f"Timed out after {policy.fetch_timeout_seconds}s"
                except Exception as exc:  # every per-file failure becomes a placeholder entry
                    failure = str(exc) or exc.__class__.__name__
                if fetched is None:
                    yield from self._write_placeholder(job, writer, planned, failure, used)
                else:
                    with fetched.spool:
                        yield from writer.add_stream(planned.arcname, fetched.spool, size_hint=fetched.size)
                    self._record_success(job, planned)
                    logger.debug("Added %s to export %s", planned.arcname, job.download_id)
                self._notify(options, job)
            tail = writer.finish()
            finished = True
            self._finish(job, DownloadStatus.COMPLETED, None)
            yield tail
        except GeneratorExit:
            logger.info("Export %s closed by consumer before completion", job.download_id)
            self._finish(job, DownloadStatus.FAILED, CANCELLED)
            raise
        except Exception as exc:
            logger.error("Export %s failed: %s", job.download_id, exc)
            self._finish(job, DownloadStatus.FAILED, str(exc))
            raise
        finally:
            cancel.set()
            fetches.close()
            pool.shutdown(wait=False, cancel_futures=True)
            if not finished:
                writer.abort()

    def _await_fetch(self, future: Future, planned: PlannedEntry, started: Dict[str, float]) -> FetchedObject:
        """Wait for one fetch, timing it from the moment a worker picked it up."""
        timeout = self.config.export.fetch_timeout_seconds
        while True:
            begun = started.get(planned.arcname)
            if begun is not None:
                return future.result(timeout=max(0.0, begun + timeout - time.monotonic()))
            try:
                return future.result(timeout=timeout)
            except FetchTimeout:
                # still queued behind other reads
                continue

    def _fetch(self, planned: PlannedEntry, cancel: threading.Event, started: Dict[str, float]) -> FetchedObject:
        policy = self.config.export
        begun = started[planned.arcname] = time.monotonic()
        if cancel.is_set():
            raise FetchAborted(CANCELLED)
        key = planned.file.storage.key if planned.file.storage else None
        if not key:
            raise StorageGatewayError(f"File {planned.file.id} has no storage key")
        if self.storage.get_metadata(key) is None:
            raise StorageGatewayError(f"Object {key} not found in storage", key=key)
        deadline = begun + policy.fetch_timeout_seconds
        spool = SpooledTemporaryFile(max_size=policy.spool_max_memory_bytes)
        try:
            with self.storage.open_read_stream(key) as source:
                while True:
                    if cancel.is_set():
                        raise FetchAborted(CANCELLED)
                    if time.monotonic() > deadline:
                        raise FetchAborted(f"Timed out after {policy.fetch_timeout_seconds}s")
                    chunk = source.read(policy.chunk_size)
                    if not chunk:
                        break
                    spool.write(chunk)
        except BaseException:
            spool.close()
            raise
        size = spool.tell()
        spool.seek(0)
        return FetchedObject(spool=spool, size=size)

    def _write_placeholder(
        self,
        job: DownloadJob,
        writer: StreamingZipWriter,
        planned: PlannedEntry,
        failure: str,
        used: Set[str],
    ) -> Iterator[bytes]:
        policy = self.config.export
        name = sanitize_file_name(
            planned.file.name, max_length=policy.max_filename_length, replacement=policy.replacement_char
        )
        arcname = unique_entry_path(f"{ERRORS_DIR}/FAILED_{name}.txt", used)
        logger.warning("Export %s could not include %s: %s", job.download_id, planned.arcname, failure)
        body = (
            f"Failed to download file: {planned.file.name}\n"
            f"File ID: {planned.file.id}\n"
            f"Archive path: {planned.arcname}\n"
            f"Error: {failure}\n"
            f"Time: {datetime.now(timezone.utc).isoformat()}\n"
        )
        yield from writer.add_bytes(arcname, body.encode("utf-8"))

        def _record(target: DownloadJob) -> None:
            target.failed_files.append(
                {"fileId": planned.file.id, "fileName": planned.file.name, "error": failure}
            )
            target.last_update = datetime.now(timezone.utc)

        self.registry.update(job.download_id, _record)

    def _record_success(self, job: DownloadJob, planned: PlannedEntry) -> None:
        def _record(target: DownloadJob) -> None:
            target.processed_files += 1
            target.processed_bytes += max(0, planned.file.size or 0)
            target.last_update = datetime.now(timezone.utc)

        self.registry.update(job.download_id, _record)

    def _notify(self, options: ExportOptions, job: DownloadJob) -> None:
        if options.on_progress is None:
            return
        try:
            options.on_progress(job)
        except Exception:  # a failing progress callback never aborts the stream
            logger.exception("Progress callback failed for export %s", job.download_id)

    def _finish(self, job: DownloadJob, status: DownloadStatus, error: Optional[str]) -> None:
        def _close(target: DownloadJob) -> bool:
            if not target.is_active:
                return False
            now = datetime.now(timezone.utc)
            target.status = status
            target.error = error
            target.finished_at = now
            target.last_update = now
            return True

        changed: List[bool] = []
        self.registry.update(job.download_id, lambda target: changed.append(_close(target)))
        if not any(changed):
            return
        self.emit_metric("export.files", float(job.processed_files), type=job.type.value)
        self.emit_metric("export.failed_entries", float(len(job.failed_files)), type=job.type.value)
        logger.info(
            "Export %s finished with status %s (%d files, %d failed)",
            job.download_id,
            status.value,
            job.processed_files,
            len(job.failed_files),
        )
        if self.bus is not None:
            self.bus.publish(
                MessageEnvelope(
                    topic="export.events",
                    payload={
                        "downloadId": job.download_id,
                        "userId": job.user_id,
                        "status": status.value,
                        "processedFiles": job.processed_files,
                        "failedFiles": len(job.failed_files),
                        "error": error,
                    },
                )
            )


def _close_spool(spool: object) -> None:
    close = getattr(spool, "close", None)
    if close is not None:
        close()
