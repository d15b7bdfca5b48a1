"""Data models shared across the tree store, integrity and export services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Project:
    id: str
    name: str
    owner: str
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Folder:
    id: str
    name: str
    owner: str
    project: Optional[str]
    parent_folder: Optional[str]
    full_path: str
    level: int
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class StorageLocator:
    key: Optional[str]
    bucket: Optional[str] = None


@dataclass
class FileEntry:
    id: str
    original_name: str
    owner: str
    project: Optional[str]
    folder: Optional[str]
    size: int
    storage: StorageLocator
    checksum: Optional[str] = None
    display_name: Optional[str] = None
    mime_type: str = "application/octet-stream"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.original_name or self.display_name or ""


# Integrity findings ---------------------------------------------------------


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueKind(str, Enum):
    FOLDER_NOT_FOUND = "FOLDER_NOT_FOUND"
    BROKEN_PARENT_LINK = "BROKEN_PARENT_LINK"
    BROKEN_PROJECT_LINK = "BROKEN_PROJECT_LINK"
    PATH_MISMATCH = "PATH_MISMATCH"
    MISSING_METADATA = "MISSING_METADATA"
    MISSING_STORAGE_KEY = "MISSING_STORAGE_KEY"
    STORAGE_FILE_MISSING = "STORAGE_FILE_MISSING"
    STORAGE_ACCESS_ERROR = "STORAGE_ACCESS_ERROR"
    SIZE_MISMATCH = "SIZE_MISMATCH"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    CHECKSUM_VERIFICATION_ERROR = "CHECKSUM_VERIFICATION_ERROR"
    ORPHANED_FILE = "ORPHANED_FILE"
    OWNERSHIP_MISMATCH = "OWNERSHIP_MISMATCH"
    PROJECT_PERMISSION_WARNING = "PROJECT_PERMISSION_WARNING"
    REPAIR_ERROR = "REPAIR_ERROR"


# Severity is a property of the kind, never of an individual finding.
SEVERITY_BY_KIND: Dict[IssueKind, Severity] = {
    IssueKind.FOLDER_NOT_FOUND: Severity.HIGH,
    IssueKind.BROKEN_PARENT_LINK: Severity.HIGH,
    IssueKind.BROKEN_PROJECT_LINK: Severity.HIGH,
    IssueKind.PATH_MISMATCH: Severity.MEDIUM,
    IssueKind.MISSING_METADATA: Severity.MEDIUM,
    IssueKind.MISSING_STORAGE_KEY: Severity.HIGH,
    IssueKind.STORAGE_FILE_MISSING: Severity.HIGH,
    IssueKind.STORAGE_ACCESS_ERROR: Severity.HIGH,
    IssueKind.SIZE_MISMATCH: Severity.HIGH,
    IssueKind.CHECKSUM_MISMATCH: Severity.CRITICAL,
    IssueKind.CHECKSUM_VERIFICATION_ERROR: Severity.MEDIUM,
    IssueKind.ORPHANED_FILE: Severity.MEDIUM,
    IssueKind.OWNERSHIP_MISMATCH: Severity.HIGH,
    IssueKind.PROJECT_PERMISSION_WARNING: Severity.LOW,
    IssueKind.REPAIR_ERROR: Severity.MEDIUM,
}


@dataclass
class IntegrityError:
    kind: IssueKind
    message: str
    folder_id: Optional[str] = None
    file_id: Optional[str] = None
    storage_key: Optional[str] = None
    expected: Any = None
    actual: Any = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> Severity:
        return SEVERITY_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        for key, value in (
            ("folderId", self.folder_id),
            ("fileId", self.file_id),
            ("storageKey", self.storage_key),
            ("expected", self.expected),
            ("actual", self.actual),
        ):
            if value is not None:
                payload[key] = value
        payload.update(self.details)
        return payload


class RepairType(str, Enum):
    PATH_REPAIR = "PATH_REPAIR"
    LEVEL_REPAIR = "LEVEL_REPAIR"
    ORPHAN_REPAIR = "ORPHAN_REPAIR"


@dataclass
class RepairAction:
    type: RepairType
    message: str
    folder_id: Optional[str] = None
    file_id: Optional[str] = None
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value, "message": self.message}
        if self.folder_id is not None:
            payload["folderId"] = self.folder_id
        if self.file_id is not None:
            payload["fileId"] = self.file_id
        payload["oldValue"] = self.old_value
        payload["newValue"] = self.new_value
        return payload


# Verification reports -------------------------------------------------------


class VerificationStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class VerificationOptions:
    check_files: bool = True
    check_storage: bool = True
    check_metadata: bool = True
    check_permissions: bool = True
    deep_scan: bool = False
    auto_repair: bool = False
    project_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkFiles": self.check_files,
            "checkStorage": self.check_storage,
            "checkMetadata": self.check_metadata,
            "checkPermissions": self.check_permissions,
            "deepScan": self.deep_scan,
            "autoRepair": self.auto_repair,
            "projectId": self.project_id,
        }


@dataclass
class VerificationResults:
    total_folders: int = 0
    total_files: int = 0
    valid_folders: int = 0
    valid_files: int = 0
    errors: List[IntegrityError] = field(default_factory=list)
    warnings: List[IntegrityError] = field(default_factory=list)
    repaired: List[RepairAction] = field(default_factory=list)
    integrity_score: Optional[int] = None

    def errors_of(self, kind: IssueKind) -> List[IntegrityError]:
        return [error for error in self.errors if error.kind == kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalFolders": self.total_folders,
            "totalFiles": self.total_files,
            "validFolders": self.valid_folders,
            "validFiles": self.valid_files,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": [warning.to_dict() for warning in self.warnings],
            "repaired": [action.to_dict() for action in self.repaired],
            "integrityScore": self.integrity_score,
        }


@dataclass
class VerificationReport:
    verification_id: str
    folder_id: Optional[str]
    user_id: str
    options: VerificationOptions
    status: VerificationStatus = VerificationStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    results: VerificationResults = field(default_factory=VerificationResults)

    @property
    def is_active(self) -> bool:
        return self.status == VerificationStatus.RUNNING

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verificationId": self.verification_id,
            "folderId": self.folder_id,
            "userId": self.user_id,
            "status": self.status.value,
            "options": self.options.to_dict(),
            "startTime": self.started_at.isoformat(),
            "endTime": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration_ms,
            "error": self.error,
            "results": self.results.to_dict(),
        }


# Download jobs --------------------------------------------------------------


class DownloadType(str, Enum):
    FILES = "files"
    FOLDER = "folder"
    PROJECT = "project"


class DownloadStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class DownloadJob:
    download_id: str
    type: DownloadType
    user_id: str
    scope_id: Optional[str] = None
    total_files: int = 0
    total_size: int = 0
    estimated_size: int = 0
    status: DownloadStatus = DownloadStatus.ACTIVE
    start_time: datetime = field(default_factory=utcnow)
    last_update: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    processed_files: int = 0
    processed_bytes: int = 0
    failed_files: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == DownloadStatus.ACTIVE

    @property
    def started_at(self) -> datetime:
        return self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "downloadId": self.download_id,
            "type": self.type.value,
            "scopeId": self.scope_id,
            "userId": self.user_id,
            "totalFiles": self.total_files,
            "totalSize": self.total_size,
            "estimatedSize": self.estimated_size,
            "status": self.status.value,
            "startTime": self.start_time.isoformat(),
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "processedFiles": self.processed_files,
            "processedBytes": self.processed_bytes,
            "failedFiles": list(self.failed_files),
            "hasErrors": bool(self.failed_files),
            "error": self.error,
        }


@dataclass
class ObservabilityEvent:
    event_type: str
    message: str
    attributes: Optional[dict] = None
    timestamp: datetime = field(default_factory=utcnow)
