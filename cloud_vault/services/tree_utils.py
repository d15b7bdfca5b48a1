"""Shared helpers for walking the folder tree and naming archive entries."""

from __future__ import annotations

import posixpath
import re
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from ..models import FileEntry, Folder

FolderResolver = Callable[[str], Optional[Folder]]
ChildLister = Callable[[str], Sequence[Folder]]

_RESERVED_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MAX_KEPT_EXTENSION = 16
ROOT_BUCKET = ""


@dataclass(frozen=True)
class AncestorWalk:
    """Placement derived by following ``parent_folder`` links to the root."""

    expected_path: Optional[str]
    expected_level: Optional[int]
    broken_at: Optional[str] = None
    cycle: bool = False

    @property
    def is_broken(self) -> bool:
        return self.broken_at is not None or self.cycle


def walk_ancestors(folder: Folder, resolve: FolderResolver) -> AncestorWalk:
    """Compute the expected ``full_path``/``level`` of ``folder`` iteratively.

    ``resolve`` returns the live folder for an id or ``None``. When a link on
    the chain does not resolve, ``broken_at`` names the dangling id and no
    expectation is produced. A chain that revisits a folder is a cycle.
    """
    names: List[str] = [folder.name]
    seen: Set[str] = {folder.id}
    current = folder
    while current.parent_folder is not None:
        parent_id = current.parent_folder
        if parent_id in seen:
            return AncestorWalk(expected_path=None, expected_level=None, cycle=True)
        parent = resolve(parent_id)
        if parent is None:
            return AncestorWalk(expected_path=None, expected_level=None, broken_at=parent_id)
        seen.add(parent_id)
        names.append(parent.name)
        current = parent
    names.reverse()
    return AncestorWalk(expected_path="/".join(names), expected_level=len(names) - 1)


def iter_subtree(roots: Iterable[Folder], list_children: ChildLister) -> Iterator[Folder]:
    """Breadth-first walk over ``roots`` and every descendant, each yielded once."""
    queue = deque(roots)
    visited: Set[str] = set()
    while queue:
        folder = queue.popleft()
        if folder.id in visited:
            continue
        visited.add(folder.id)
        yield folder
        for child in list_children(folder.id):
            if child.id not in visited:
                queue.append(child)


def sanitize_file_name(name: Optional[str], *, max_length: int = 255, replacement: str = "_") -> str:
    """Make ``name`` safe to use as a single archive path segment."""
    cleaned = _RESERVED_CHARS.sub(replacement, name or "")
    if cleaned.startswith("."):
        cleaned = replacement + cleaned[1:]
    if len(cleaned) > max_length:
        stem, ext = posixpath.splitext(cleaned)
        if ext and len(ext) <= _MAX_KEPT_EXTENSION and len(ext) < max_length:
            cleaned = stem[: max_length - len(ext)] + ext
        else:
            cleaned = cleaned[:max_length]
    return cleaned or replacement


def sanitize_folder_path(path: Optional[str], *, max_length: int = 255, replacement: str = "_") -> str:
    segments = [segment for segment in (path or "").split("/") if segment]
    return "/".join(
        sanitize_file_name(segment, max_length=max_length, replacement=replacement) for segment in segments
    )


def group_files_by_folder(
    files: Iterable[FileEntry],
    resolve: FolderResolver,
) -> Dict[str, List[FileEntry]]:
    """Bucket files by their folder's ``full_path``; folderless files use ``ROOT_BUCKET``.

    Buckets come back in sorted path order with the root bucket first.
    """
    grouped: Dict[str, List[FileEntry]] = {}
    for entry in files:
        folder = resolve(entry.folder) if entry.folder else None
        key = folder.full_path if folder is not None else ROOT_BUCKET
        grouped.setdefault(key, []).append(entry)
    return {key: grouped[key] for key in sorted(grouped)}


def unique_entry_path(path: str, used: Set[str]) -> str:
    """Return ``path`` or ``stem_<n>.ext`` so that it does not collide with ``used``."""
    candidate = path
    counter = 1
    while candidate in used:
        directory, base = posixpath.split(path)
        stem, ext = posixpath.splitext(base)
        candidate = posixpath.join(directory, f"{stem}_{counter}{ext}")
        counter += 1
    used.add(candidate)
    return candidate
