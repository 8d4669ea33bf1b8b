"""regraft controller - main orchestrator.

Wires configuration, the git runner and every component together for one
repository, and owns the per-repository state directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import ConfigLoader, ReconstructMode, RegraftConfig
from ..utils.git import GitError, GitRunner
from .backup import BackupManager
from .cleanup import RefCleaner
from .conflicts import ConflictResolver
from .errors import InputError, RegraftError
from .harness import HarnessReport, SafetyHarness
from .inspector import ReferenceInspector
from .preserve import AtomicPreserve
from .reconstruct import TopologyReconstructor
from .signing import SigningIdentity
from .worktree import WorktreeSynchroniser


STATE_DIR_NAME = "regraft"


@dataclass
class RegraftStatus:
    """Status of regraft for one repository."""
    repo_root: str
    state_dir: str
    branch: str | None
    head: str
    clean: bool
    pending_operation: str | None
    backup_count: int
    latest_backup: str | None


class RegraftController:
    """Main controller for regraft operations."""

    def __init__(self, repo_root: Path | str | None = None, identity: SigningIdentity | None = None):
        """Initialize controller.

        Args:
            repo_root: Any directory inside the repository (defaults to cwd)
            identity: Explicit signing identity; git config is used when omitted

        Raises:
            InputError: If ``repo_root`` is not inside a git repository
        """
        self.git = GitRunner(Path(repo_root) if repo_root else Path.cwd())
        self.inspector = ReferenceInspector(self.git)
        try:
            self.repo_root = self.inspector.toplevel()
        except GitError as e:
            raise InputError(f"Not a git repository: {self.git.cwd}", check="repository") from e
        self.git = self.git.at(self.repo_root)
        self.inspector = ReferenceInspector(self.git)

        self._identity = identity
        self._config_loader: ConfigLoader | None = None
        self._backups: BackupManager | None = None

    def get_state_dir(self) -> Path:
        """Get the shared state directory (``<git-common-dir>/regraft``)."""
        return self.inspector.common_dir() / STATE_DIR_NAME

    @property
    def config_loader(self) -> ConfigLoader:
        if self._config_loader is None:
            self._config_loader = ConfigLoader(state_dir=self.get_state_dir())
        return self._config_loader

    @property
    def config(self) -> RegraftConfig:
        """Get current configuration."""
        return self.config_loader.config

    @property
    def backups(self) -> BackupManager:
        """Get backup manager (lazy init)."""
        if self._backups is None:
            self._backups = BackupManager(self.git, self.get_state_dir() / "backups")
        return self._backups

    @property
    def identity(self) -> SigningIdentity:
        if self._identity is None:
            self._identity = SigningIdentity.from_git_config(self.inspector, key=self.config.signing_key)
        return self._identity

    def harness(self) -> SafetyHarness:
        return SafetyHarness(self.git, self.backups, self.get_state_dir(), self.config, self.identity)

    def preserve(self, allow_unsigned: bool = False) -> AtomicPreserve:
        return AtomicPreserve(
            self.git,
            self.identity.validate(),
            self.get_state_dir() / "runs",
            drift_tolerance=self.config.drift_tolerance_seconds,
            allow_unsigned=allow_unsigned,
            temp_prefix=self.config.temp_prefix,
        )

    def reconstructor(self) -> TopologyReconstructor:
        return TopologyReconstructor(self.git)

    def resolver(self) -> ConflictResolver:
        return ConflictResolver(self.git, self.config.max_resolve_iterations)

    def worktrees(self) -> WorktreeSynchroniser:
        return WorktreeSynchroniser(self.git, self.backups)

    def cleaner(self) -> RefCleaner:
        return RefCleaner(
            self.git,
            self.config.base_branches,
            markers=(self.config.temp_prefix, self.config.backup_prefix, "restore"),
        )

    def run_harness(self, operation: str, argument: str, **kwargs: Any) -> HarnessReport:
        mode = kwargs.pop("mode", ReconstructMode.PRESERVE)
        return self.harness().run(operation, argument, mode=ReconstructMode(mode), **kwargs)

    def promote(self, source: str, target: str) -> dict[str, Any]:
        """Move ``target`` onto ``source`` (typically a verified temp branch).

        The target is bundled and tagged first, then repointed in every
        worktree that uses it.

        Returns:
            Result dictionary
        """
        try:
            source_id = self.inspector.resolve(source)
            if not self.inspector.branch_exists(target):
                raise InputError(f"Unknown branch: {target}", check="promote")
            snapshot = self.backups.snapshot("promote", [f"refs/heads/{target}"])
            if not self.backups.verify(snapshot):
                raise InputError(f"Backup of {target} failed verification", check="backup")
            tag = self.backups.tag(target, prefix=self.config.backup_prefix)
            sync = self.worktrees().sync(target, source_id)
        except (RegraftError, GitError) as e:
            return {"success": False, "error": str(e)}

        return {
            "success": True,
            "branch": target,
            "target": source_id,
            "backup": str(self.backups.bundle_path(snapshot)),
            "tag": tag,
            "worktrees": sync.worktrees,
        }

    def gc(
        self,
        *,
        merged: bool = False,
        keep_backups: int | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Delete disposable refs, optionally merged branches and old bundles."""
        cleaner = self.cleaner()
        try:
            disposable = cleaner.find_disposable()
            merged_branches = cleaner.find_merged() if merged else []
        except (RegraftError, GitError) as e:
            return {"success": False, "error": str(e)}

        result: dict[str, Any] = {
            "success": True,
            "dryRun": dry_run,
            "branches": disposable.branches + merged_branches,
            "tags": disposable.tags,
            "backupsPruned": 0,
        }
        if dry_run:
            return result

        result["branches"] = cleaner.delete_branches(disposable.branches)
        result["branches"] += cleaner.delete_branches(merged_branches, force=False)
        result["tags"] = cleaner.delete_tags(disposable.tags)
        if keep_backups is not None:
            result["backupsPruned"] = self.backups.prune(keep_backups)
        return result

    def get_status(self) -> RegraftStatus:
        """Get repository status.

        Returns:
            RegraftStatus with current state
        """
        backups = self.backups.list()
        return RegraftStatus(
            repo_root=str(self.repo_root),
            state_dir=str(self.get_state_dir()),
            branch=self.inspector.current_branch(),
            head=self.inspector.resolve("HEAD") if self.inspector.exists("HEAD") else "",
            clean=self.inspector.is_clean(),
            pending_operation=self.inspector.pending_operation(),
            backup_count=len(backups),
            latest_backup=backups[0].name if backups else None,
        )
