from __future__ import annotations

import pytest

from cloud_vault.config import CloudVaultConfig
from cloud_vault.errors import TreeStoreUnavailable
from cloud_vault.services.metadata_service import MetadataService
from cloud_vault.telemetry import TelemetryCollector


def _metadata(state_path: str | None = None) -> MetadataService:
    cfg = CloudVaultConfig.default()
    return MetadataService(config=cfg, telemetry=TelemetryCollector(cfg.observability), state_path=state_path)


def test_create_folder_derives_path_and_level() -> None:
    metadata = _metadata()
    project = metadata.create_project("Website", "alice")
    root = metadata.create_folder("assets", "alice", project.id)
    child = metadata.create_folder("images", "alice", None, root.id)
    grandchild = metadata.create_folder("icons", "alice", None, child.id)

    assert (root.full_path, root.level) == ("assets", 0)
    assert (child.full_path, child.level) == ("assets/images", 1)
    assert (grandchild.full_path, grandchild.level) == ("assets/images/icons", 2)
    assert grandchild.project == project.id


def test_create_folder_rejects_unknown_parent() -> None:
    metadata = _metadata()
    with pytest.raises(KeyError):
        metadata.create_folder("orphan", "alice", None, "missing-parent")


def test_lookups_respect_owner_and_soft_delete() -> None:
    metadata = _metadata()
    folder = metadata.create_folder("docs", "alice", None)
    entry = metadata.add_file("a.txt", "alice", size=3, storage_key="k/a", folder=folder.id)

    assert metadata.get_folder(folder.id, owner="bob") is None
    assert metadata.get_file(entry.id, owner="bob") is None

    metadata.delete_file(entry.id)
    assert metadata.get_file(entry.id) is None
    assert metadata.get_file(entry.id, include_deleted=True) is entry
    assert metadata.list_files_in_folder(folder.id, owner="alice") == []


def test_listing_is_sorted_and_deduplicated() -> None:
    metadata = _metadata()
    folder = metadata.create_folder("docs", "alice", None)
    b = metadata.add_file("b.txt", "alice", size=1, storage_key="k/b", folder=folder.id)
    a = metadata.add_file("A.txt", "alice", size=1, storage_key="k/a", folder=folder.id)

    assert [entry.id for entry in metadata.list_files_in_folder(folder.id, owner="alice")] == [a.id, b.id]
    assert [entry.id for entry in metadata.list_files_by_ids([b.id, b.id, a.id], owner="alice")] == [b.id, a.id]


def test_orphan_and_cross_owner_queries() -> None:
    metadata = _metadata()
    mine = metadata.create_folder("mine", "alice", None)
    theirs = metadata.create_folder("theirs", "bob", None)
    gone = metadata.create_folder("gone", "alice", None)
    orphan = metadata.add_file("orphan.txt", "alice", size=1, storage_key="k/1", folder=gone.id)
    crossed = metadata.add_file("crossed.txt", "alice", size=1, storage_key="k/2", folder=theirs.id)
    metadata.add_file("fine.txt", "alice", size=1, storage_key="k/3", folder=mine.id)
    metadata.delete_folder(gone.id)

    assert [entry.id for entry in metadata.find_orphaned_files("alice")] == [orphan.id]
    assert [entry.id for entry in metadata.find_cross_owner_files("alice")] == [crossed.id]

    metadata.clear_file_folder(orphan.id)
    assert metadata.find_orphaned_files("alice") == []


def test_offline_store_raises_unavailable() -> None:
    metadata = _metadata()
    metadata.create_folder("docs", "alice", None)
    metadata.take_offline("database connection lost")
    assert not metadata.is_online

    with pytest.raises(TreeStoreUnavailable, match="database connection lost"):
        metadata.list_root_folders("alice")

    metadata.bring_online()
    assert len(metadata.list_root_folders("alice")) == 1


def test_state_snapshot_survives_restart(tmp_path) -> None:
    state_path = str(tmp_path / "tree.pkl")
    metadata = _metadata(state_path)
    folder = metadata.create_folder("docs", "alice", None)
    metadata.add_file("a.txt", "alice", size=3, storage_key="k/a", folder=folder.id)

    reloaded = _metadata(state_path)
    assert reloaded.get_folder(folder.id).full_path == "docs"
    assert reloaded.snapshot_stats()["files"] == 1
