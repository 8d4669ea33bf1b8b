"""Backup storage for regraft.

Handles creating, verifying, listing, and restoring ref snapshots stored
as git bundles with a JSON metadata sidecar.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..utils.dates import utc_stamp
from ..utils.fs import atomic_write
from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug, log_warning
from .errors import InfrastructureError
from .inspector import ReferenceInspector


SCOPE_ALL = "all"


@dataclass
class BackupSnapshot:
    """Metadata for a backup bundle."""
    name: str
    timestamp: str
    operation: str
    scope: str | list[str]
    refs: dict[str, str] = field(default_factory=dict)
    head: str | None = None
    bundle: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "operation": self.operation,
            "scope": self.scope,
            "refs": dict(self.refs),
            "head": self.head,
            "bundle": self.bundle,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BackupSnapshot:
        """Create from dictionary."""
        refs = data.get("refs")
        return cls(
            name=data.get("name", ""),
            timestamp=data.get("timestamp", ""),
            operation=data.get("operation", ""),
            scope=data.get("scope", SCOPE_ALL),
            refs=dict(refs) if isinstance(refs, dict) else {},
            head=data.get("head"),
            bundle=data.get("bundle", ""),
        )


@dataclass
class BackupResult:
    """Result of a backup operation."""
    success: bool
    name: str = ""
    refs_restored: int = 0
    error: str | None = None


class BackupManager:
    """Manages backup bundles for one repository."""

    BUNDLE_SUFFIX = ".bundle"
    METADATA_SUFFIX = ".json"

    def __init__(self, git: GitRunner, backup_dir: Path):
        """Initialize backup manager.

        Args:
            git: Runner for the repository being backed up
            backup_dir: Directory holding bundles and their metadata
        """
        self.git = git
        self.inspector = ReferenceInspector(git)
        self.backup_dir = Path(backup_dir)

    def bundle_path(self, snapshot: BackupSnapshot | str) -> Path:
        name = snapshot if isinstance(snapshot, str) else snapshot.name
        return self.backup_dir / f"{name}{self.BUNDLE_SUFFIX}"

    def _metadata_path(self, name: str) -> Path:
        return self.backup_dir / f"{name}{self.METADATA_SUFFIX}"

    def _unique_name(self, operation: str) -> str:
        base = f"{operation}-backup-{utc_stamp()}"
        name = base
        suffix = 1
        while self.bundle_path(name).exists() or self._metadata_path(name).exists():
            name = f"{base}-{suffix}"
            suffix += 1
        return name

    def snapshot(self, operation: str, scope: str | list[str] = SCOPE_ALL) -> BackupSnapshot:
        """Create a new backup bundle.

        Args:
            operation: Operation the backup protects (used in the name)
            scope: "all" for every ref, or a list of refs to capture

        Returns:
            The written BackupSnapshot

        Raises:
            InfrastructureError: If the bundle could not be written
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        name = self._unique_name(operation)
        bundle_path = self.bundle_path(name)

        try:
            if scope == SCOPE_ALL:
                refs = self.inspector.refs()
                rev_args = ["--all"]
            else:
                refs = {}
                for ref in scope:
                    sha = self.inspector.resolve(ref)
                    full = self.git.output(["rev-parse", "--symbolic-full-name", ref]) or ref
                    refs[full] = sha
                rev_args = list(refs)

            if not refs:
                raise InfrastructureError(f"Nothing to back up for {operation}", check="backup")

            self.git.run(["bundle", "create", str(bundle_path), *rev_args])

            snapshot = BackupSnapshot(
                name=name,
                timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds"),
                operation=operation,
                scope=scope if scope == SCOPE_ALL else list(scope),
                refs=refs,
                head=self.inspector.current_branch(),
                bundle=bundle_path.name,
            )
            atomic_write(self._metadata_path(name), json.dumps(snapshot.to_dict(), indent=2))
        except (GitError, OSError) as e:
            # Clean up on failure
            for path in (bundle_path, self._metadata_path(name)):
                path.unlink(missing_ok=True)
            raise InfrastructureError(f"Backup failed: {e}", check="backup", backup=str(bundle_path)) from e

        log_debug(f"Backup {name}: {len(refs)} refs -> {bundle_path}")
        return snapshot

    def verify(self, snapshot: BackupSnapshot) -> bool:
        """Check the bundle is readable and holds every captured ref."""
        bundle_path = self.bundle_path(snapshot)
        if not bundle_path.exists():
            return False
        if not self.git.ok(["bundle", "verify", "--quiet", str(bundle_path)]):
            return False
        heads = self._bundle_heads(bundle_path)
        return all(heads.get(ref) == sha for ref, sha in snapshot.refs.items())

    def restore(self, snapshot: BackupSnapshot | str) -> BackupResult:
        """Point every captured ref back at its backed-up commit.

        Args:
            snapshot: Snapshot or snapshot name to restore

        Returns:
            BackupResult with success status
        """
        if isinstance(snapshot, str):
            found = self.get(snapshot)
            if found is None:
                return BackupResult(success=False, name=snapshot, error=f"Backup not found: {snapshot}")
            snapshot = found

        bundle_path = self.bundle_path(snapshot)
        if not bundle_path.exists():
            return BackupResult(success=False, name=snapshot.name, error=f"Bundle missing: {bundle_path}")

        try:
            self.git.run(["bundle", "unbundle", str(bundle_path)])
            refs = snapshot.refs or {
                ref: sha for ref, sha in self._bundle_heads(bundle_path).items() if ref != "HEAD"
            }
            # Refs only; a checked-out branch keeps HEAD attached and the
            # caller resets its worktree afterwards
            for ref, sha in refs.items():
                self.git.run(["update-ref", "-m", f"regraft: restore {snapshot.name}", ref, sha])
        except GitError as e:
            return BackupResult(success=False, name=snapshot.name, error=str(e))

        return BackupResult(success=True, name=snapshot.name, refs_restored=len(refs))

    def list(self) -> list[BackupSnapshot]:
        """List all backups.

        Returns:
            List of snapshots, newest first
        """
        snapshots: list[BackupSnapshot] = []
        if not self.backup_dir.exists():
            return snapshots

        for entry in self.backup_dir.glob(f"*{self.BUNDLE_SUFFIX}"):
            name = entry.name[: -len(self.BUNDLE_SUFFIX)]
            snapshot = self.get(name)
            if snapshot is None:
                # Bundle without readable metadata
                snapshot = BackupSnapshot(
                    name=name, timestamp="", operation="", scope=SCOPE_ALL, bundle=entry.name
                )
            snapshots.append(snapshot)

        snapshots.sort(key=lambda s: (s.timestamp, s.name), reverse=True)
        return snapshots

    def get(self, name: str) -> BackupSnapshot | None:
        """Get metadata for a specific backup.

        Returns:
            BackupSnapshot or None if not found
        """
        metadata_path = self._metadata_path(name)
        if not metadata_path.exists():
            return None
        try:
            with open(metadata_path) as f:
                data: Any = json.load(f)
        except (OSError, json.JSONDecodeError):
            return None
        return BackupSnapshot.from_dict(data) if isinstance(data, dict) else None

    def delete(self, name: str) -> bool:
        """Delete a backup bundle and its metadata.

        Returns:
            True if anything was deleted
        """
        deleted = False
        for path in (self.bundle_path(name), self._metadata_path(name)):
            try:
                path.unlink()
                deleted = True
            except FileNotFoundError:
                continue
            except OSError as e:
                log_warning(f"Could not delete {path}: {e}")
        return deleted

    def prune(self, keep: int = 10) -> int:
        """Prune old backups, keeping the most recent.

        Returns:
            Number of backups deleted
        """
        snapshots = self.list()
        if len(snapshots) <= keep:
            return 0

        deleted = 0
        for snapshot in snapshots[keep:]:
            if self.delete(snapshot.name):
                deleted += 1
        return deleted

    def tag(self, branch: str, prefix: str = "backup") -> str:
        """Create a lightweight ``<prefix>/<branch>-<ts>`` tag on a branch tip.

        Returns:
            The new tag name
        """
        sha = self.inspector.resolve(branch)
        base = f"{prefix}/{branch}-{utc_stamp()}"
        name = base
        suffix = 1
        while self.git.ok(["show-ref", "--verify", "--quiet", f"refs/tags/{name}"]):
            name = f"{base}-{suffix}"
            suffix += 1
        self.git.run(["tag", name, sha])
        return name

    def _bundle_heads(self, bundle_path: Path) -> dict[str, str]:
        out = self.git.output(["bundle", "list-heads", str(bundle_path)])
        heads: dict[str, str] = {}
        for line in out.splitlines():
            sha, _, ref = line.partition(" ")
            if ref:
                heads[ref] = sha
        return heads
