"""API gateway façade for clients."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..models import DownloadJob, FileEntry, Folder, Project, VerificationOptions, VerificationReport
from .export_service import BulkExportService, ExportHandle, ExportOptions
from .integrity_service import FolderIntegrityService
from .metadata_service import MetadataService


@dataclass
class APIGateway:
    metadata_service: MetadataService
    integrity_service: FolderIntegrityService
    export_service: BulkExportService
    object_writer: Callable[[str, bytes, str], object] | None = None

    # Tree -----------------------------------------------------------------

    def create_project(self, name: str, owner: str) -> Project:
        return self.metadata_service.create_project(name, owner)

    def create_folder(self, name: str, owner: str, *, project_id: Optional[str], parent_id: Optional[str] = None) -> Folder:
        if project_id is not None:
            self._require_project(project_id, owner)
        return self.metadata_service.create_folder(name, owner, project_id, parent_id)

    def upload_file(
        self,
        name: str,
        owner: str,
        data: bytes,
        *,
        folder_id: Optional[str] = None,
        project_id: Optional[str] = None,
        content_type: str = "application/octet-stream",
    ) -> FileEntry:
        """Store ``data`` and register it in the tree with its size and checksum."""
        if self.object_writer is None:
            raise RuntimeError("Uploads need a writable storage backend")
        if folder_id is not None and self.metadata_service.get_folder(folder_id, owner=owner) is None:
            raise KeyError(folder_id)
        if project_id is not None:
            self._require_project(project_id, owner)
        algorithm = self.integrity_service.config.integrity.checksum_algorithm
        storage_key = f"users/{owner}/{project_id or 'unassigned'}/{hashlib.sha1(data).hexdigest()[:12]}-{name}"
        self.object_writer(storage_key, data, content_type)
        return self.metadata_service.add_file(
            name,
            owner,
            size=len(data),
            storage_key=storage_key,
            folder=folder_id,
            project=project_id,
            checksum=hashlib.new(algorithm, data).hexdigest(),
            mime_type=content_type,
        )

    # Integrity ------------------------------------------------------------

    def verify_folder(self, folder_id: Optional[str], user_id: str, options: Optional[VerificationOptions] = None) -> VerificationReport:
        return self.integrity_service.verify(folder_id, user_id, options)

    def start_verification(self, folder_id: Optional[str], user_id: str, options: Optional[VerificationOptions] = None) -> str:
        return self.integrity_service.start_verification(folder_id, user_id, options)

    def verify_batch(self, folder_ids: Sequence[str], user_id: str, options: Optional[VerificationOptions] = None) -> List[VerificationReport]:
        return self.integrity_service.verify_batch(folder_ids, user_id, options)

    def get_verification(self, verification_id: str, user_id: str) -> VerificationReport:
        report = self.integrity_service.get_verification_status(verification_id)
        if report is None or report.user_id != user_id:
            raise KeyError(verification_id)
        return report

    def project_health(self, project_id: str, user_id: str) -> Dict[str, object]:
        return self.integrity_service.project_health_summary(project_id, user_id)

    # Exports --------------------------------------------------------------

    def export_files(self, file_ids: Sequence[str], user_id: str, options: Optional[ExportOptions] = None) -> ExportHandle:
        return self.export_service.export_files(file_ids, user_id, options)

    def export_folder(self, folder_id: str, user_id: str, options: Optional[ExportOptions] = None) -> ExportHandle:
        return self.export_service.export_folder(folder_id, user_id, options)

    def export_project(self, project_id: str, user_id: str, options: Optional[ExportOptions] = None) -> ExportHandle:
        return self.export_service.export_project(project_id, user_id, options)

    def get_download(self, download_id: str, user_id: str) -> DownloadJob:
        job = self.export_service.get_download_status(download_id)
        if job is None or job.user_id != user_id:
            raise KeyError(download_id)
        return job

    def _require_project(self, project_id: str, owner: str) -> Project:
        project = self.metadata_service.get_project(project_id)
        if project is None or project.owner != owner:
            raise KeyError(project_id)
        return project
