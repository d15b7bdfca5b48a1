"""Tree store holding projects, folders and file records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from datetime import datetime, timezone
import logging
import pickle
import threading
import uuid
from pathlib import Path

from ..errors import TreeStoreUnavailable
from ..models import FileEntry, Folder, Project, StorageLocator
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass
class MetadataService(BaseService):
    """In-memory tree store with optional pickle snapshots."""

    state_path: Optional[str] = None
    _projects: Dict[str, Project] = None
    _folders: Dict[str, Folder] = None
    _files: Dict[str, FileEntry] = None
    _offline_reason: Optional[str] = field(default=None, init=False, repr=False)
    _state_file: Optional[Path] = field(default=None, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self._projects is None:
            self._projects = {}
        if self._folders is None:
            self._folders = {}
        if self._files is None:
            self._files = {}
        if self.state_path:
            self._state_file = Path(self.state_path).expanduser()
            if self._state_file.parent:
                self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # Availability -----------------------------------------------------------

    def take_offline(self, reason: str = "tree store offline") -> None:
        self._offline_reason = reason

    def bring_online(self) -> None:
        self._offline_reason = None

    @property
    def is_online(self) -> bool:
        return self._offline_reason is None

    def _ensure_online(self) -> None:
        if self._offline_reason is not None:
            raise TreeStoreUnavailable(self._offline_reason)

    # Projects ---------------------------------------------------------------

    def create_project(self, name: str, owner: str, *, project_id: Optional[str] = None) -> Project:
        self._ensure_online()
        project = Project(id=project_id or str(uuid.uuid4()), name=name, owner=owner)
        with self._lock:
            self._projects[project.id] = project
        self.emit_event("project_created", project_id=project.id, owner=owner)
        self._persist_state()
        return project

    def get_project(self, project_id: Optional[str], *, include_deleted: bool = False) -> Optional[Project]:
        self._ensure_online()
        if not project_id:
            return None
        project = self._projects.get(project_id)
        if project is None or (project.deleted_at and not include_deleted):
            return None
        return project

    # Folders ----------------------------------------------------------------

    def create_folder(
        self,
        name: str,
        owner: str,
        project: Optional[str],
        parent_folder: Optional[str] = None,
        *,
        folder_id: Optional[str] = None,
    ) -> Folder:
        """Create a folder with ``full_path`` and ``level`` derived from its parent."""
        self._ensure_online()
        full_path = name
        level = 0
        if parent_folder is not None:
            parent = self.get_folder(parent_folder, owner=owner)
            if parent is None:
                raise KeyError(parent_folder)
            full_path = f"{parent.full_path}/{name}"
            level = parent.level + 1
            project = project or parent.project
        folder = Folder(
            id=folder_id or str(uuid.uuid4()),
            name=name,
            owner=owner,
            project=project,
            parent_folder=parent_folder,
            full_path=full_path,
            level=level,
        )
        with self._lock:
            self._folders[folder.id] = folder
        self.emit_event("folder_created", folder_id=folder.id, owner=owner)
        self._persist_state()
        return folder

    def upsert_folder(self, folder: Folder) -> Folder:
        """Store a folder record as-is, without deriving path or level."""
        self._ensure_online()
        with self._lock:
            self._folders[folder.id] = folder
        self._persist_state()
        return folder

    def get_folder(
        self,
        folder_id: Optional[str],
        *,
        owner: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[Folder]:
        self._ensure_online()
        if not folder_id:
            return None
        folder = self._folders.get(folder_id)
        if folder is None:
            return None
        if folder.deleted_at and not include_deleted:
            return None
        if owner is not None and folder.owner != owner:
            return None
        return folder

    def list_subfolders(self, parent_id: str, *, owner: Optional[str] = None) -> List[Folder]:
        self._ensure_online()
        with self._lock:
            candidates = list(self._folders.values())
        children = [
            folder
            for folder in candidates
            if folder.parent_folder == parent_id
            and folder.deleted_at is None
            and (owner is None or folder.owner == owner)
        ]
        children.sort(key=lambda folder: (folder.name.lower(), folder.id))
        return children

    def list_root_folders(self, owner: str, *, project_id: Optional[str] = None) -> List[Folder]:
        self._ensure_online()
        with self._lock:
            candidates = list(self._folders.values())
        roots = [
            folder
            for folder in candidates
            if folder.parent_folder is None
            and folder.owner == owner
            and folder.deleted_at is None
            and (project_id is None or folder.project == project_id)
        ]
        roots.sort(key=lambda folder: (folder.name.lower(), folder.id))
        return roots

    def list_project_folders(self, project_id: str, *, owner: Optional[str] = None) -> List[Folder]:
        self._ensure_online()
        with self._lock:
            candidates = list(self._folders.values())
        folders = [
            folder
            for folder in candidates
            if folder.project == project_id
            and folder.deleted_at is None
            and (owner is None or folder.owner == owner)
        ]
        folders.sort(key=lambda folder: (folder.level, folder.full_path))
        return folders

    def update_folder_placement(
        self,
        folder_id: str,
        *,
        full_path: Optional[str] = None,
        level: Optional[int] = None,
    ) -> Folder:
        self._ensure_online()
        with self._lock:
            folder = self._folders[folder_id]
            if full_path is not None:
                folder.full_path = full_path
            if level is not None:
                folder.level = level
            folder.updated_at = datetime.now(timezone.utc)
        self.emit_event("folder_placement_updated", folder_id=folder_id)
        self._persist_state()
        return folder

    def delete_folder(self, folder_id: str) -> Folder:
        self._ensure_online()
        folder = self._folders[folder_id]
        if folder.deleted_at is None:
            folder.deleted_at = datetime.now(timezone.utc)
            self.emit_event("folder_trashed", folder_id=folder_id)
            self._persist_state()
        return folder

    # Files ------------------------------------------------------------------

    def add_file(
        self,
        original_name: str,
        owner: str,
        *,
        size: int,
        storage_key: Optional[str],
        folder: Optional[str] = None,
        project: Optional[str] = None,
        checksum: Optional[str] = None,
        mime_type: str = "application/octet-stream",
        display_name: Optional[str] = None,
        file_id: Optional[str] = None,
    ) -> FileEntry:
        self._ensure_online()
        if folder is not None and project is None:
            parent = self.get_folder(folder, owner=owner)
            project = parent.project if parent else None
        entry = FileEntry(
            id=file_id or str(uuid.uuid4()),
            original_name=original_name,
            display_name=display_name,
            owner=owner,
            project=project,
            folder=folder,
            size=size,
            storage=StorageLocator(key=storage_key),
            checksum=checksum,
            mime_type=mime_type,
        )
        with self._lock:
            self._files[entry.id] = entry
        self.emit_event("file_created", file_id=entry.id, owner=owner)
        self._persist_state()
        return entry

    def get_file(self, file_id: str, *, owner: Optional[str] = None, include_deleted: bool = False) -> Optional[FileEntry]:
        self._ensure_online()
        entry = self._files.get(file_id)
        if entry is None:
            return None
        if entry.deleted_at and not include_deleted:
            return None
        if owner is not None and entry.owner != owner:
            return None
        return entry

    def list_files_in_folder(
        self,
        folder_id: Optional[str],
        *,
        owner: str,
        project_id: Optional[str] = None,
    ) -> List[FileEntry]:
        """Files directly inside ``folder_id``; ``None`` lists root-level files."""
        self._ensure_online()
        return self._select_files(
            lambda entry: entry.owner == owner
            and entry.folder == folder_id
            and (project_id is None or entry.project == project_id)
        )

    def list_files_by_ids(self, file_ids: Iterable[str], *, owner: str) -> List[FileEntry]:
        self._ensure_online()
        found: List[FileEntry] = []
        seen: set[str] = set()
        for file_id in file_ids:
            if file_id in seen:
                continue
            seen.add(file_id)
            entry = self.get_file(file_id, owner=owner)
            if entry is not None:
                found.append(entry)
        return found

    def list_project_files(self, project_id: str, *, owner: str) -> List[FileEntry]:
        self._ensure_online()
        return self._select_files(lambda entry: entry.owner == owner and entry.project == project_id)

    def list_user_files(self, owner: str) -> List[FileEntry]:
        self._ensure_online()
        return self._select_files(lambda entry: entry.owner == owner)

    def find_orphaned_files(self, owner: str) -> List[FileEntry]:
        """Files whose folder reference does not resolve to a live folder."""
        self._ensure_online()
        with self._lock:
            folders = dict(self._folders)
        orphans: List[FileEntry] = []
        for entry in self.list_user_files(owner):
            if entry.folder is None:
                continue
            folder = folders.get(entry.folder)
            if folder is None or folder.deleted_at is not None:
                orphans.append(entry)
        return orphans

    def find_cross_owner_files(self, owner: str) -> List[FileEntry]:
        """Files that reference a live folder belonging to another user."""
        self._ensure_online()
        with self._lock:
            folders = dict(self._folders)
        mismatched: List[FileEntry] = []
        for entry in self.list_user_files(owner):
            folder = folders.get(entry.folder) if entry.folder else None
            if folder is not None and folder.deleted_at is None and folder.owner != owner:
                mismatched.append(entry)
        return mismatched

    def clear_file_folder(self, file_id: str) -> FileEntry:
        """Detach a file from its folder, which places it at the project root."""
        self._ensure_online()
        with self._lock:
            entry = self._files[file_id]
            entry.folder = None
            entry.updated_at = datetime.now(timezone.utc)
        self.emit_event("file_detached", file_id=file_id)
        self._persist_state()
        return entry

    def delete_file(self, file_id: str) -> FileEntry:
        self._ensure_online()
        entry = self._files[file_id]
        if entry.deleted_at is None:
            entry.deleted_at = datetime.now(timezone.utc)
            self.emit_event("file_trashed", file_id=file_id)
            self._persist_state()
        return entry

    def snapshot_stats(self) -> Dict[str, int]:
        return {
            "projects": len(self._projects),
            "folders": len(self._folders),
            "files": len(self._files),
        }

    def _select_files(self, predicate) -> List[FileEntry]:
        with self._lock:
            candidates = list(self._files.values())
        selected = [entry for entry in candidates if entry.deleted_at is None and predicate(entry)]
        selected.sort(key=lambda entry: (entry.name.lower(), entry.id))
        return selected

    # Persistence helpers --------------------------------------------------

    def _load_state(self) -> None:
        if not self._state_file or not self._state_file.exists():
            return
        try:
            with self._state_file.open("rb") as handle:
                snapshot = pickle.load(handle)
        except (OSError, pickle.PickleError, EOFError):
            logger.warning("Ignoring unreadable tree snapshot at %s", self._state_file)
            return
        self._projects = snapshot.get("projects", self._projects)
        self._folders = snapshot.get("folders", self._folders)
        self._files = snapshot.get("files", self._files)

    def _persist_state(self) -> None:
        if not self._state_file:
            return
        with self._lock:
            payload = {
                "projects": self._projects,
                "folders": self._folders,
                "files": self._files,
            }
            temp_path = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
            try:
                with temp_path.open("wb") as handle:
                    pickle.dump(payload, handle)
                temp_path.replace(self._state_file)
            except OSError:
                logger.warning("Failed to persist tree snapshot to %s", self._state_file)
                return
