"""Folder integrity verification: tree consistency, storage cross-checks and safe repairs."""

from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from collections import Counter
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import IntegrityVerificationFailed, ResourceNotFound, TreeStoreUnavailable
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import (
    FileEntry,
    Folder,
    IntegrityError,
    IssueKind,
    RepairAction,
    RepairType,
    VerificationOptions,
    VerificationReport,
    VerificationResults,
    VerificationStatus,
)
from ..storage.gateway import StorageGateway
from .base import BaseService
from .metadata_service import MetadataService
from .registry import TTLRegistry
from .tree_utils import iter_subtree, walk_ancestors

logger = logging.getLogger(__name__)

HEALTHY_THRESHOLD = 90
DEGRADED_THRESHOLD = 70


def compute_integrity_score(results: VerificationResults, penalties: Dict[str, float]) -> int:
    """Summarize ``results`` as a 0-100 score.

    No errors means 100, including an empty subtree. Otherwise the share of
    valid items (0 when nothing was counted) loses a fixed penalty per error
    according to its severity.
    """
    if not results.errors:
        return 100
    total = results.total_folders + results.total_files
    valid = results.valid_folders + results.valid_files
    score = (valid / total) * 100 if total else 0.0
    for error in results.errors:
        score -= penalties.get(error.severity.value, 0.0)
    return int(max(0, min(100, round(score))))


@dataclass
class FolderIntegrityService(BaseService):
    metadata_service: MetadataService
    storage: StorageGateway
    bus: InMemoryBus | None = None
    executor: Executor | None = None
    registry: TTLRegistry[VerificationReport] = None
    _deep_scan_slots: threading.BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        policy = self.config.integrity
        if self.registry is None:
            self.registry = TTLRegistry("verifications", timedelta(seconds=policy.retention_seconds))
        self._deep_scan_slots = threading.BoundedSemaphore(max(1, policy.deep_scan_concurrency))

    # Entry points -----------------------------------------------------------

    def verify(
        self,
        folder_id: Optional[str],
        user_id: str,
        options: Optional[VerificationOptions] = None,
    ) -> VerificationReport:
        """Run a verification to completion and return its report.

        ``folder_id=None`` verifies the user's root level (optionally limited to
        ``options.project_id``). Raises ``IntegrityVerificationFailed`` when the
        tree store cannot be read.
        """
        report = self._register(folder_id, user_id, options or VerificationOptions())
        return self._run(report)

    def start_verification(
        self,
        folder_id: Optional[str],
        user_id: str,
        options: Optional[VerificationOptions] = None,
    ) -> str:
        report = self._register(folder_id, user_id, options or VerificationOptions())
        if self.executor is None:
            self._run(report, raise_on_failure=False)
        else:
            self.executor.submit(self._run, report, raise_on_failure=False)
        return report.verification_id

    def verify_batch(
        self,
        folder_ids: Sequence[str],
        user_id: str,
        options: Optional[VerificationOptions] = None,
    ) -> List[VerificationReport]:
        reports: List[VerificationReport] = []
        for folder_id in folder_ids:
            report = self._register(folder_id, user_id, options or VerificationOptions())
            reports.append(self._run(report, raise_on_failure=False))
        return reports

    def get_verification_status(self, verification_id: str) -> Optional[VerificationReport]:
        return self.registry.get(verification_id)

    def cleanup_old_verifications(self, now: Optional[datetime] = None) -> List[str]:
        return self.registry.sweep(now)

    def project_health_summary(self, project_id: str, user_id: str) -> Dict[str, object]:
        """Read-only rollup of tree-level health for one project.

        Only tree consistency is checked: no storage I/O, no repairs and no
        registry entry.
        """
        project = self.metadata_service.get_project(project_id)
        if project is None or project.owner != user_id:
            raise ResourceNotFound("Project not found or access denied")
        options = VerificationOptions(check_storage=False, deep_scan=False, auto_repair=False)
        results = VerificationResults()
        for folder in self.metadata_service.list_project_folders(project_id, owner=user_id):
            self._record_folder(folder, user_id, options, results)
        files = self.metadata_service.list_project_files(project_id, owner=user_id)
        self._record_files(files, options, results)
        for entry in files:
            if entry.folder and self.metadata_service.get_folder(entry.folder) is None:
                results.errors.append(self._orphan_error(entry))
        results.integrity_score = compute_integrity_score(results, self.config.integrity.severity_penalties)
        score = results.integrity_score
        if score >= HEALTHY_THRESHOLD:
            status = "healthy"
        elif score >= DEGRADED_THRESHOLD:
            status = "degraded"
        else:
            status = "critical"
        by_kind = Counter(error.kind.value for error in results.errors)
        return {
            "projectId": project.id,
            "projectName": project.name,
            "totalFolders": results.total_folders,
            "totalFiles": results.total_files,
            "validFolders": results.valid_folders,
            "validFiles": results.valid_files,
            "orphanedFiles": by_kind.get(IssueKind.ORPHANED_FILE.value, 0),
            "issuesByType": dict(by_kind),
            "integrityScore": score,
            "status": status,
            "checkedAt": datetime.now(timezone.utc).isoformat(),
        }

    # Run lifecycle ----------------------------------------------------------

    def _register(self, folder_id: Optional[str], user_id: str, options: VerificationOptions) -> VerificationReport:
        stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        verification_id = f"verify_{folder_id or 'root'}_{stamp}_{uuid.uuid4().hex[:6]}"
        report = VerificationReport(
            verification_id=verification_id,
            folder_id=folder_id,
            user_id=user_id,
            options=options,
        )
        return self.registry.register(verification_id, report)

    def _run(self, report: VerificationReport, *, raise_on_failure: bool = True) -> VerificationReport:
        logger.info(
            "Starting folder integrity verification %s (folder=%s user=%s)",
            report.verification_id,
            report.folder_id,
            report.user_id,
        )
        try:
            self._execute(report)
        except Exception as exc:
            logger.error("Folder integrity verification %s failed: %s", report.verification_id, exc)
            report.status = VerificationStatus.FAILED
            report.error = str(exc)
            report.completed_at = datetime.now(timezone.utc)
            self._publish(report)
            if raise_on_failure:
                raise IntegrityVerificationFailed(f"Integrity verification failed: {exc}") from exc
            return report

        results = report.results
        results.integrity_score = compute_integrity_score(results, self.config.integrity.severity_penalties)
        report.status = VerificationStatus.COMPLETED
        report.completed_at = datetime.now(timezone.utc)
        self.emit_metric("integrity.score", float(results.integrity_score), folder_id=str(report.folder_id))
        self.emit_metric("integrity.errors", float(len(results.errors)), folder_id=str(report.folder_id))
        logger.info(
            "Folder integrity verification %s completed in %sms: score=%s errors=%d repaired=%d",
            report.verification_id,
            report.duration_ms,
            results.integrity_score,
            len(results.errors),
            len(results.repaired),
        )
        self._publish(report)
        return report

    def _execute(self, report: VerificationReport) -> None:
        options = report.options
        results = report.results
        user_id = report.user_id
        metadata = self.metadata_service

        root_files: List[FileEntry] = []
        if report.folder_id is None:
            roots = metadata.list_root_folders(user_id, project_id=options.project_id)
            root_files = metadata.list_files_in_folder(None, owner=user_id, project_id=options.project_id)
        else:
            target = metadata.get_folder(report.folder_id, owner=user_id)
            if target is None:
                results.errors.append(
                    IntegrityError(
                        kind=IssueKind.FOLDER_NOT_FOUND,
                        message=f"Folder {report.folder_id} not found or access denied",
                        folder_id=report.folder_id,
                    )
                )
                roots = []
            else:
                roots = [target]

        folders = list(iter_subtree(roots, lambda folder_id: metadata.list_subfolders(folder_id, owner=user_id)))
        for folder in folders:
            self._record_folder(folder, user_id, options, results)

        if options.check_files:
            files = list(root_files)
            for folder in folders:
                files.extend(metadata.list_files_in_folder(folder.id, owner=user_id))
            self._record_files(files, options, results)

        for entry in metadata.find_orphaned_files(user_id):
            results.errors.append(self._orphan_error(entry))
        if options.check_permissions:
            for entry in metadata.find_cross_owner_files(user_id):
                results.errors.append(
                    IntegrityError(
                        kind=IssueKind.OWNERSHIP_MISMATCH,
                        message=f'File "{entry.name}" references a folder owned by another user',
                        file_id=entry.id,
                        details={"referencedFolder": entry.folder},
                    )
                )

        if options.auto_repair and results.errors:
            self._auto_repair(results)

    # Folder checks ----------------------------------------------------------

    def _record_folder(
        self,
        folder: Folder,
        user_id: str,
        options: VerificationOptions,
        results: VerificationResults,
    ) -> None:
        results.total_folders += 1
        errors, warnings = self._check_folder(folder, user_id, options)
        results.warnings.extend(warnings)
        if errors:
            results.errors.extend(errors)
        else:
            results.valid_folders += 1

    def _check_folder(
        self,
        folder: Folder,
        user_id: str,
        options: VerificationOptions,
    ) -> Tuple[List[IntegrityError], List[IntegrityError]]:
        metadata = self.metadata_service
        errors: List[IntegrityError] = []
        warnings: List[IntegrityError] = []

        if folder.parent_folder is not None and metadata.get_folder(folder.parent_folder) is None:
            errors.append(
                IntegrityError(
                    kind=IssueKind.BROKEN_PARENT_LINK,
                    message=f"Parent folder reference is broken for folder {folder.name}",
                    folder_id=folder.id,
                    details={"parentFolder": folder.parent_folder},
                )
            )

        if folder.project:
            project = metadata.get_project(folder.project)
            if project is None:
                errors.append(
                    IntegrityError(
                        kind=IssueKind.BROKEN_PROJECT_LINK,
                        message=f"Project reference is broken for folder {folder.name}",
                        folder_id=folder.id,
                        details={"project": folder.project},
                    )
                )
            elif options.check_permissions and project.owner != user_id:
                warnings.append(
                    IntegrityError(
                        kind=IssueKind.PROJECT_PERMISSION_WARNING,
                        message="Folder belongs to project with different owner",
                        folder_id=folder.id,
                        details={"project": folder.project},
                    )
                )

        walk = walk_ancestors(folder, metadata.get_folder)
        if walk.cycle:
            errors.append(
                IntegrityError(
                    kind=IssueKind.BROKEN_PARENT_LINK,
                    message=f"Parent folder chain of {folder.name} loops back on itself",
                    folder_id=folder.id,
                    details={"parentFolder": folder.parent_folder, "cycle": True},
                )
            )
        elif not walk.is_broken:
            path_wrong = folder.full_path != walk.expected_path
            level_wrong = folder.level != walk.expected_level
            if path_wrong or level_wrong:
                errors.append(
                    IntegrityError(
                        kind=IssueKind.PATH_MISMATCH,
                        message=(
                            f'Folder path mismatch: expected "{walk.expected_path}" (level {walk.expected_level}), '
                            f'got "{folder.full_path}" (level {folder.level})'
                        ),
                        folder_id=folder.id,
                        expected=walk.expected_path,
                        actual=folder.full_path,
                        details={"expectedLevel": walk.expected_level, "actualLevel": folder.level},
                    )
                )
        return errors, warnings

    # File checks ------------------------------------------------------------

    def _record_files(
        self,
        files: Iterable[FileEntry],
        options: VerificationOptions,
        results: VerificationResults,
    ) -> None:
        files = list(files)
        results.total_files += len(files)
        for issues in self._check_files(files, options):
            if issues:
                results.errors.extend(issues)
            else:
                results.valid_files += 1

    def _check_files(self, files: List[FileEntry], options: VerificationOptions) -> List[List[IntegrityError]]:
        if not files:
            return []
        if not (options.check_storage or options.deep_scan):
            return [self._check_file(entry, options) for entry in files]
        workers = max(1, min(self.config.integrity.storage_check_concurrency, len(files)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="integrity-check") as pool:
            return list(pool.map(lambda entry: self._check_file(entry, options), files))

    def _check_file(self, entry: FileEntry, options: VerificationOptions) -> List[IntegrityError]:
        issues: List[IntegrityError] = []
        key = entry.storage.key if entry.storage else None

        if options.check_metadata:
            if not entry.original_name:
                issues.append(
                    IntegrityError(
                        kind=IssueKind.MISSING_METADATA,
                        message=f"File {entry.id} has missing name metadata",
                        file_id=entry.id,
                    )
                )
            if not key:
                issues.append(
                    IntegrityError(
                        kind=IssueKind.MISSING_STORAGE_KEY,
                        message=f"File {entry.id} has missing storage key",
                        file_id=entry.id,
                    )
                )

        object_missing = False
        if options.check_storage and key:
            try:
                stored = self.storage.get_metadata(key)
            except Exception as exc:  # any gateway failure is recorded per file
                issues.append(
                    IntegrityError(
                        kind=IssueKind.STORAGE_ACCESS_ERROR,
                        message=f"Cannot access storage for {entry.name}: {exc}",
                        file_id=entry.id,
                        storage_key=key,
                    )
                )
            else:
                if stored is None:
                    object_missing = True
                    issues.append(
                        IntegrityError(
                            kind=IssueKind.STORAGE_FILE_MISSING,
                            message=f"Storage file missing for {entry.name}",
                            file_id=entry.id,
                            storage_key=key,
                        )
                    )
                elif stored.size != entry.size:
                    issues.append(
                        IntegrityError(
                            kind=IssueKind.SIZE_MISMATCH,
                            message=f"File size mismatch: DB={entry.size}, Storage={stored.size}",
                            file_id=entry.id,
                            storage_key=key,
                            expected=entry.size,
                            actual=stored.size,
                        )
                    )

        if options.deep_scan and key and entry.checksum and not object_missing:
            issue = self._deep_scan(entry, key)
            if issue is not None:
                issues.append(issue)
        return issues

    def _deep_scan(self, entry: FileEntry, key: str) -> Optional[IntegrityError]:
        algorithm = self.config.integrity.checksum_algorithm
        chunk_size = self.config.storage.read_chunk_size
        hasher = hashlib.new(algorithm)
        with self._deep_scan_slots:
            try:
                with self.storage.open_read_stream(key) as source:
                    for chunk in iter(lambda: source.read(chunk_size), b""):
                        hasher.update(chunk)
            except Exception as exc:  # any gateway failure is recorded per file
                return IntegrityError(
                    kind=IssueKind.CHECKSUM_VERIFICATION_ERROR,
                    message=f"Cannot verify checksum for {entry.name}: {exc}",
                    file_id=entry.id,
                    storage_key=key,
                )
        digest = hasher.hexdigest()
        if digest.lower() == (entry.checksum or "").lower():
            return None
        logger.warning("Checksum mismatch for file %s (%s)", entry.id, key)
        return IntegrityError(
            kind=IssueKind.CHECKSUM_MISMATCH,
            message=f"File checksum mismatch: {entry.name}",
            file_id=entry.id,
            storage_key=key,
            expected=entry.checksum,
            actual=digest,
            details={"algorithm": algorithm},
        )

    @staticmethod
    def _orphan_error(entry: FileEntry) -> IntegrityError:
        return IntegrityError(
            kind=IssueKind.ORPHANED_FILE,
            message=f'File "{entry.name}" references non-existent folder',
            file_id=entry.id,
            details={"referencedFolder": entry.folder},
        )

    # Repairs ----------------------------------------------------------------

    def _auto_repair(self, results: VerificationResults) -> None:
        # Only path drift and orphans are repaired; every other kind needs a human.
        metadata = self.metadata_service
        for error in list(results.errors):
            try:
                if error.kind == IssueKind.PATH_MISMATCH and error.folder_id:
                    results.repaired.extend(self._repair_placement(error))
                elif error.kind == IssueKind.ORPHANED_FILE and error.file_id:
                    metadata.clear_file_folder(error.file_id)
                    results.repaired.append(
                        RepairAction(
                            type=RepairType.ORPHAN_REPAIR,
                            message="Moved orphaned file to project root",
                            file_id=error.file_id,
                            old_value=error.details.get("referencedFolder"),
                            new_value=None,
                        )
                    )
            except (TreeStoreUnavailable, KeyError) as exc:
                logger.error("Auto-repair of %s failed: %s", error.kind.value, exc)
                results.warnings.append(
                    IntegrityError(
                        kind=IssueKind.REPAIR_ERROR,
                        message=f"Auto-repair failed: {exc}",
                        folder_id=error.folder_id,
                        file_id=error.file_id,
                        details={"repairOf": error.kind.value},
                    )
                )
        logger.info("Auto-repair applied %d fixes", len(results.repaired))

    def _repair_placement(self, error: IntegrityError) -> List[RepairAction]:
        actions: List[RepairAction] = []
        expected_level = error.details.get("expectedLevel")
        actual_level = error.details.get("actualLevel")
        new_path = error.expected if error.expected != error.actual else None
        new_level = expected_level if expected_level != actual_level else None
        self.metadata_service.update_folder_placement(error.folder_id, full_path=new_path, level=new_level)
        if new_path is not None:
            actions.append(
                RepairAction(
                    type=RepairType.PATH_REPAIR,
                    message="Fixed path mismatch for folder",
                    folder_id=error.folder_id,
                    old_value=error.actual,
                    new_value=new_path,
                )
            )
        if new_level is not None:
            actions.append(
                RepairAction(
                    type=RepairType.LEVEL_REPAIR,
                    message="Fixed level mismatch for folder",
                    folder_id=error.folder_id,
                    old_value=actual_level,
                    new_value=new_level,
                )
            )
        return actions

    def _publish(self, report: VerificationReport) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            MessageEnvelope(
                topic="integrity.events",
                payload={
                    "verificationId": report.verification_id,
                    "folderId": report.folder_id,
                    "userId": report.user_id,
                    "status": report.status.value,
                    "integrityScore": report.results.integrity_score,
                    "errors": len(report.results.errors),
                },
            )
        )
