"""Behavioural tests for the folder integrity verification engine."""

from __future__ import annotations

import hashlib
import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from cloud_vault.config import CloudVaultConfig
from cloud_vault.errors import IntegrityVerificationFailed, ResourceNotFound, StorageGatewayError
from cloud_vault.messaging import InMemoryBus
from cloud_vault.models import (
    Folder,
    IntegrityError,
    IssueKind,
    RepairType,
    VerificationOptions,
    VerificationResults,
    VerificationStatus,
)
from cloud_vault.services.integrity_service import FolderIntegrityService, compute_integrity_score
from cloud_vault.services.metadata_service import MetadataService
from cloud_vault.storage.memory_store import InMemoryObjectStore
from cloud_vault.telemetry import TelemetryCollector


class _FlakyStore(InMemoryObjectStore):
    def __init__(self, failing_keys=()) -> None:
        super().__init__()
        self.failing_keys = set(failing_keys)

    def get_metadata(self, key):
        if key in self.failing_keys:
            raise StorageGatewayError("connection reset", key=key)
        return super().get_metadata(key)

    def open_read_stream(self, key):
        if key in self.failing_keys:
            raise StorageGatewayError("connection reset", key=key)
        return super().open_read_stream(key)


class _CountingStore(InMemoryObjectStore):
    def __init__(self) -> None:
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter_lock = threading.Lock()

    def open_read_stream(self, key):
        with self._counter_lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(0.02)
            return super().open_read_stream(key)
        finally:
            with self._counter_lock:
                self.in_flight -= 1



class _RecordingStream(io.BytesIO):
    def __init__(self, data: bytes, read_sizes: list) -> None:
        super().__init__(data)
        self._read_sizes = read_sizes

    def read(self, size=-1):
        self._read_sizes.append(size)
        return super().read(size)


class _ChunkedReadStore(InMemoryObjectStore):
    def __init__(self) -> None:
        super().__init__()
        self.read_sizes: list = []

    def open_read_stream(self, key):
        return _RecordingStream(super().download_bytes(key), self.read_sizes)

    def download_bytes(self, key):
        raise AssertionError("deep scan must stream objects")

def _bootstrap_services(storage=None, **integrity_overrides):
    cfg = CloudVaultConfig.default()
    for name, value in integrity_overrides.items():
        setattr(cfg.integrity, name, value)
    telemetry = TelemetryCollector(cfg.observability)
    metadata = MetadataService(config=cfg, telemetry=telemetry)
    storage = storage if storage is not None else InMemoryObjectStore()
    bus = InMemoryBus()
    service = FolderIntegrityService(
        config=cfg,
        telemetry=telemetry,
        metadata_service=metadata,
        storage=storage,
        bus=bus,
    )
    return cfg, metadata, storage, bus, service


def _store_file(metadata, storage, name, owner, data, *, folder=None, project=None, checksum=None, size=None):
    key = f"{owner}/{name}"
    storage.put_object(key, data)
    return metadata.add_file(
        name,
        owner,
        size=len(data) if size is None else size,
        storage_key=key,
        folder=folder,
        project=project,
        checksum=checksum if checksum is not None else hashlib.md5(data).hexdigest(),
    )


def test_consistent_tree_reports_no_errors() -> None:
    _, metadata, storage, _, service = _bootstrap_services()
    project = metadata.create_project("Website", "alice")
    root = metadata.create_folder("site", "alice", project.id)
    child = metadata.create_folder("pages", "alice", None, root.id)
    _store_file(metadata, storage, "index.html", "alice", b"<html/>", folder=child.id)
    _store_file(metadata, storage, "logo.png", "alice", b"\x89PNG", folder=root.id)

    report = service.verify(root.id, "alice", VerificationOptions(deep_scan=True))

    results = report.results
    assert report.status == VerificationStatus.COMPLETED
    assert results.errors == []
    assert results.errors_of(IssueKind.PATH_MISMATCH) == []
    assert results.errors_of(IssueKind.BROKEN_PARENT_LINK) == []
    assert (results.total_folders, results.valid_folders) == (2, 2)
    assert (results.total_files, results.valid_files) == (2, 2)
    assert results.integrity_score == 100


def test_empty_root_scores_full_marks() -> None:
    _, _, _, _, service = _bootstrap_services()

    report = service.verify(None, "nobody")

    assert report.results.total_folders == 0
    assert report.results.total_files == 0
    assert report.results.integrity_score == 100


def test_single_checksum_mismatch_drops_score_below_80() -> None:
    _, metadata, storage, _, service = _bootstrap_services()
    folder = metadata.create_folder("docs", "alice", None)
    _store_file(
        metadata,
        storage,
        "report.pdf",
        "alice",
        b"actual bytes",
        folder=folder.id,
        checksum=hashlib.md5(b"expected bytes").hexdigest(),
    )

    report = service.verify(folder.id, "alice", VerificationOptions(deep_scan=True))

    mismatches = report.results.errors_of(IssueKind.CHECKSUM_MISMATCH)
    assert len(mismatches) == 1
    assert mismatches[0].expected == hashlib.md5(b"expected bytes").hexdigest()
    assert mismatches[0].actual == hashlib.md5(b"actual bytes").hexdigest()
    assert report.results.integrity_score < 80


def test_auto_repair_rewrites_wrong_path() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    metadata.upsert_folder(
        Folder(
            id="folder-1",
            name="test-folder",
            owner="alice",
            project=None,
            parent_folder=None,
            full_path="wrong-path",
            level=0,
        )
    )

    report = service.verify("folder-1", "alice", VerificationOptions(auto_repair=True))

    assert metadata.get_folder("folder-1").full_path == "test-folder"
    repairs = [action for action in report.results.repaired if action.type == RepairType.PATH_REPAIR]
    assert len(repairs) == 1
    assert (repairs[0].old_value, repairs[0].new_value) == ("wrong-path", "test-folder")
    # the score reflects what was found, not what was fixed
    assert report.results.errors_of(IssueKind.PATH_MISMATCH)


def test_level_drift_is_reported_and_repaired_separately() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    root = metadata.create_folder("root", "alice", None)
    child = metadata.create_folder("child", "alice", None, root.id)
    metadata.update_folder_placement(child.id, level=7)

    report = service.verify(root.id, "alice", VerificationOptions(auto_repair=True))

    [mismatch] = report.results.errors_of(IssueKind.PATH_MISMATCH)
    assert mismatch.details == {"expectedLevel": 1, "actualLevel": 7}
    assert [action.type for action in report.results.repaired] == [RepairType.LEVEL_REPAIR]
    assert metadata.get_folder(child.id).level == 1
    assert metadata.get_folder(child.id).full_path == "root/child"


def test_verification_without_repair_is_read_only() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    metadata.upsert_folder(
        Folder(id="f", name="real", owner="alice", project=None, parent_folder=None, full_path="stale", level=3)
    )

    report = service.verify("f", "alice")

    assert report.results.repaired == []
    assert metadata.get_folder("f").full_path == "stale"
    assert metadata.get_folder("f").level == 3


def test_orphaned_file_is_reported_and_detached_on_repair() -> None:
    _, metadata, storage, _, service = _bootstrap_services()
    folder = metadata.create_folder("docs", "alice", None)
    orphan = _store_file(metadata, storage, "lost.txt", "alice", b"data", folder="no-such-folder")

    report = service.verify(folder.id, "alice", VerificationOptions(auto_repair=True))

    [error] = report.results.errors_of(IssueKind.ORPHANED_FILE)
    assert error.file_id == orphan.id
    assert [action.type for action in report.results.repaired] == [RepairType.ORPHAN_REPAIR]
    repaired = metadata.get_file(orphan.id)
    assert repaired is not None
    assert repaired.folder is None


def test_unknown_or_foreign_folder_reports_not_found() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    foreign = metadata.create_folder("private", "bob", None)

    for folder_id in ("missing", foreign.id):
        report = service.verify(folder_id, "alice")
        [error] = report.results.errors
        assert error.kind == IssueKind.FOLDER_NOT_FOUND
        assert report.results.total_folders == 0
        assert report.results.integrity_score < 100


def test_broken_parent_and_project_links() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    metadata.upsert_folder(
        Folder(id="child", name="child", owner="alice", project=None, parent_folder="ghost", full_path="ghost/child", level=1)
    )
    stray = metadata.create_folder("stray", "alice", "no-such-project")

    broken_parent = service.verify("child", "alice")
    broken_project = service.verify(stray.id, "alice")

    assert [error.kind for error in broken_parent.results.errors] == [IssueKind.BROKEN_PARENT_LINK]
    assert [error.kind for error in broken_project.results.errors] == [IssueKind.BROKEN_PROJECT_LINK]
    assert broken_parent.results.valid_folders == 0


def test_storage_findings_per_file() -> None:
    _, metadata, storage, _, service = _bootstrap_services()
    folder = metadata.create_folder("docs", "alice", None)
    missing = metadata.add_file("ghost.bin", "alice", size=4, storage_key="alice/ghost.bin", folder=folder.id)
    wrong_size = _store_file(metadata, storage, "short.bin", "alice", b"abc", folder=folder.id, size=10)
    no_key = metadata.add_file("nokey.bin", "alice", size=1, storage_key=None, folder=folder.id)

    report = service.verify(folder.id, "alice", VerificationOptions(deep_scan=True))

    by_kind = {error.kind: error for error in report.results.errors}
    assert by_kind[IssueKind.STORAGE_FILE_MISSING].file_id == missing.id
    assert by_kind[IssueKind.SIZE_MISMATCH].file_id == wrong_size.id
    assert (by_kind[IssueKind.SIZE_MISMATCH].expected, by_kind[IssueKind.SIZE_MISMATCH].actual) == (10, 3)
    assert by_kind[IssueKind.MISSING_STORAGE_KEY].file_id == no_key.id
    # no deep scan of an object storage already reported missing
    assert report.results.errors_of(IssueKind.CHECKSUM_VERIFICATION_ERROR) == []
    assert report.results.valid_files == 0


def test_storage_errors_are_recorded_not_raised() -> None:
    storage = _FlakyStore(failing_keys={"alice/flaky.bin"})
    _, metadata, _, _, service = _bootstrap_services(storage=storage)
    folder = metadata.create_folder("docs", "alice", None)
    flaky = _store_file(metadata, storage, "flaky.bin", "alice", b"1234", folder=folder.id)
    _store_file(metadata, storage, "fine.bin", "alice", b"5678", folder=folder.id)

    report = service.verify(folder.id, "alice", VerificationOptions(deep_scan=True))

    assert report.status == VerificationStatus.COMPLETED
    kinds = sorted(error.kind.value for error in report.results.errors if error.file_id == flaky.id)
    assert kinds == ["CHECKSUM_VERIFICATION_ERROR", "STORAGE_ACCESS_ERROR"]
    assert report.results.valid_files == 1


def test_deep_scan_downloads_are_bounded() -> None:
    storage = _CountingStore()
    _, metadata, _, _, service = _bootstrap_services(storage=storage, deep_scan_concurrency=2)
    folder = metadata.create_folder("bulk", "alice", None)
    for index in range(8):
        _store_file(metadata, storage, f"file-{index}.bin", "alice", bytes([index]) * 16, folder=folder.id)

    report = service.verify(folder.id, "alice", VerificationOptions(deep_scan=True))

    assert report.results.errors == []
    assert 1 <= storage.max_in_flight <= 2



def test_deep_scan_hashes_objects_in_chunks() -> None:
    storage = _ChunkedReadStore()
    cfg, metadata, _, _, service = _bootstrap_services(storage=storage)
    cfg.storage.read_chunk_size = 4
    folder = metadata.create_folder("media", "alice", None)
    key = "alice/clip.bin"
    payload = b"0123456789"
    storage.put_object(key, payload)
    metadata.add_file(
        "clip.bin", "alice", size=len(payload), storage_key=key, folder=folder.id,
        checksum=hashlib.md5(payload).hexdigest(),
    )

    report = service.verify(folder.id, "alice", VerificationOptions(deep_scan=True))

    assert report.results.errors == []
    assert len(storage.read_sizes) >= 3
    assert set(storage.read_sizes) == {4}

def test_permission_checks_flag_foreign_projects_and_folders() -> None:
    _, metadata, storage, _, service = _bootstrap_services()
    bobs_project = metadata.create_project("Shared", "bob")
    shared = metadata.create_folder("shared", "alice", bobs_project.id)
    bobs_folder = metadata.create_folder("bob-only", "bob", None)
    crossed = _store_file(metadata, storage, "crossed.txt", "alice", b"x", folder=bobs_folder.id)

    report = service.verify(shared.id, "alice")

    assert [warning.kind for warning in report.results.warnings] == [IssueKind.PROJECT_PERMISSION_WARNING]
    [ownership] = report.results.errors_of(IssueKind.OWNERSHIP_MISMATCH)
    assert ownership.file_id == crossed.id
    assert report.results.valid_folders == 1

    relaxed = service.verify(shared.id, "alice", VerificationOptions(check_permissions=False))
    assert relaxed.results.warnings == []
    assert relaxed.results.errors_of(IssueKind.OWNERSHIP_MISMATCH) == []


def test_tree_store_outage_fails_the_run() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    folder = metadata.create_folder("docs", "alice", None)
    metadata.take_offline("database connection lost")

    with pytest.raises(IntegrityVerificationFailed, match="Integrity verification failed"):
        service.verify(folder.id, "alice")

    [report] = service.registry.values()
    assert report.status == VerificationStatus.FAILED
    assert "database connection lost" in report.error
    assert report.completed_at is not None


def test_verify_batch_returns_one_report_per_folder() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    first = metadata.create_folder("one", "alice", None)
    second = metadata.create_folder("two", "alice", None)

    reports = service.verify_batch([first.id, "missing", second.id], "alice")

    assert [report.folder_id for report in reports] == [first.id, "missing", second.id]
    assert [report.status for report in reports] == [VerificationStatus.COMPLETED] * 3
    assert reports[1].results.errors[0].kind == IssueKind.FOLDER_NOT_FOUND

    metadata.take_offline()
    failed = service.verify_batch([first.id], "alice")
    assert failed[0].status == VerificationStatus.FAILED


def test_background_verification_is_tracked_in_registry() -> None:
    _, metadata, _, bus, service = _bootstrap_services()
    folder = metadata.create_folder("docs", "alice", None)
    events = []
    bus.subscribe("integrity.events", events.append)
    pool = ThreadPoolExecutor(max_workers=1)
    service.executor = pool

    verification_id = service.start_verification(folder.id, "alice")
    pool.shutdown(wait=True)

    report = service.get_verification_status(verification_id)
    assert verification_id.startswith(f"verify_{folder.id}_")
    assert report.status == VerificationStatus.COMPLETED
    assert report.duration_ms is not None
    assert events[-1].payload["verificationId"] == verification_id
    assert events[-1].payload["status"] == "completed"


def test_old_reports_are_swept() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    folder = metadata.create_folder("docs", "alice", None)
    report = service.verify(folder.id, "alice")

    assert service.cleanup_old_verifications() == []
    later = datetime.now(timezone.utc) + timedelta(hours=3)
    assert service.cleanup_old_verifications(later) == [report.verification_id]
    assert service.get_verification_status(report.verification_id) is None


def test_project_health_summary_is_read_only() -> None:
    _, metadata, storage, _, service = _bootstrap_services()
    project = metadata.create_project("Website", "alice")
    good = metadata.create_folder("good", "alice", project.id)
    metadata.upsert_folder(
        Folder(id="bad", name="bad", owner="alice", project=project.id, parent_folder=None, full_path="elsewhere", level=0)
    )
    _store_file(metadata, storage, "ok.txt", "alice", b"ok", folder=good.id)
    _store_file(metadata, storage, "lost.txt", "alice", b"lost", folder="missing", project=project.id)

    summary = service.project_health_summary(project.id, "alice")

    assert summary["issuesByType"] == {"PATH_MISMATCH": 1, "ORPHANED_FILE": 1}
    assert summary["orphanedFiles"] == 1
    assert summary["integrityScore"] == 65
    assert summary["status"] == "critical"
    assert metadata.get_folder("bad").full_path == "elsewhere"
    assert len(service.registry) == 0

    with pytest.raises(ResourceNotFound):
        service.project_health_summary(project.id, "bob")


def test_score_weights_errors_by_severity() -> None:
    penalties = CloudVaultConfig.default().integrity.severity_penalties
    results = VerificationResults(total_folders=5, total_files=5, valid_folders=5, valid_files=4)
    results.errors.append(IntegrityError(kind=IssueKind.SIZE_MISMATCH, message="size"))
    assert compute_integrity_score(results, penalties) == 80

    results.errors.append(IntegrityError(kind=IssueKind.CHECKSUM_MISMATCH, message="checksum"))
    assert compute_integrity_score(results, penalties) == 55

    results.errors.extend(IntegrityError(kind=IssueKind.CHECKSUM_MISMATCH, message="x") for _ in range(5))
    assert compute_integrity_score(results, penalties) == 0


def test_completed_runs_emit_metrics() -> None:
    _, metadata, _, _, service = _bootstrap_services()
    folder = metadata.create_folder("docs", "alice", None)
    service.verify(folder.id, "alice")
    assert service.telemetry.metric_values("integrity.score") == [100.0]
    assert service.telemetry.metric_values("integrity.errors") == [0.0]
