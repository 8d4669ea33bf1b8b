"""Tests for the backup manager."""

import json

import pytest

from regraft.core.backup import BackupManager, BackupSnapshot
from regraft.core.errors import InputError


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def manager(linear_repo, backup_dir):
    return BackupManager(linear_repo.runner, backup_dir)


class TestBackupManager:
    def test_snapshot_all_refs(self, manager, linear_repo, backup_dir):
        """Test bundling every ref."""
        linear_repo.git("tag", "v1")

        snapshot = manager.snapshot("sign")

        assert snapshot.name.startswith("sign-backup-")
        assert snapshot.operation == "sign"
        assert snapshot.scope == "all"
        assert snapshot.refs["refs/heads/main"] == linear_repo.head()
        assert snapshot.refs["refs/tags/v1"] == linear_repo.head()
        assert snapshot.head == "main"
        assert manager.bundle_path(snapshot).exists()

        metadata = json.loads((backup_dir / f"{snapshot.name}.json").read_text())
        assert metadata["refs"]["refs/heads/main"] == linear_repo.head()

    def test_verify(self, manager):
        snapshot = manager.snapshot("drop")
        assert manager.verify(snapshot)

    def test_verify_detects_corruption(self, manager):
        snapshot = manager.snapshot("drop")
        manager.bundle_path(snapshot).write_bytes(b"not a bundle")
        assert not manager.verify(snapshot)

    def test_verify_missing_bundle(self, manager):
        snapshot = manager.snapshot("drop")
        manager.bundle_path(snapshot).unlink()
        assert not manager.verify(snapshot)

    def test_names_do_not_collide(self, manager):
        first = manager.snapshot("sign")
        second = manager.snapshot("sign")
        assert first.name != second.name
        assert len(manager.list()) == 2

    def test_scoped_snapshot(self, manager, linear_repo):
        linear_repo.git("branch", "topic", linear_repo.root)

        snapshot = manager.snapshot("promote", ["topic"])

        assert snapshot.refs == {"refs/heads/topic": linear_repo.root}
        assert manager.verify(snapshot)

    def test_scoped_snapshot_unknown_ref(self, manager):
        with pytest.raises(InputError):
            manager.snapshot("promote", ["missing"])
        assert manager.list() == []

    def test_restore_moves_refs_back(self, manager, linear_repo):
        """Test restoring refs after history was rewritten."""
        original = linear_repo.head()
        snapshot = manager.snapshot("drop")

        linear_repo.git("reset", "--quiet", "--hard", linear_repo.root)
        linear_repo.git("branch", "--force", "topic", linear_repo.root)
        assert linear_repo.head() == linear_repo.root

        result = manager.restore(snapshot)

        assert result.success
        assert result.refs_restored == 1
        assert linear_repo.head("main") == original
        assert linear_repo.head("topic") == linear_repo.root

    def test_restore_by_name(self, manager, linear_repo):
        original = linear_repo.head()
        snapshot = manager.snapshot("drop")
        linear_repo.git("update-ref", "refs/heads/main", linear_repo.root)

        result = manager.restore(snapshot.name)

        assert result.success
        assert linear_repo.head("main") == original

    def test_restore_unknown(self, manager):
        result = manager.restore("nope")
        assert not result.success
        assert "not found" in result.error

    def test_get_list_delete(self, manager):
        snapshot = manager.snapshot("sign")

        fetched = manager.get(snapshot.name)
        assert isinstance(fetched, BackupSnapshot)
        assert fetched.to_dict() == snapshot.to_dict()

        assert manager.delete(snapshot.name)
        assert manager.get(snapshot.name) is None
        assert not manager.bundle_path(snapshot).exists()
        assert not manager.delete(snapshot.name)

    def test_prune_keeps_newest(self, manager):
        names = [manager.snapshot("sign").name for _ in range(4)]

        deleted = manager.prune(keep=2)

        assert deleted == 2
        remaining = {s.name for s in manager.list()}
        assert remaining == set(names[-2:])

    def test_list_empty(self, tmp_path, linear_repo):
        manager = BackupManager(linear_repo.runner, tmp_path / "nowhere")
        assert manager.list() == []

    def test_tag_branch(self, manager, linear_repo):
        name = manager.tag("main")

        assert name.startswith("backup/main-")
        assert linear_repo.head(f"refs/tags/{name}") == linear_repo.head()
        assert manager.tag("main") != name
