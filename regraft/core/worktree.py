"""Worktree synchroniser.

Moves a branch to a rewritten commit without leaving any checkout of it
pointing at something stale: checkouts with the branch active are
detached, the branch is forced, and the checkouts are re-attached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug
from .backup import BackupManager
from .errors import InfrastructureError
from .inspector import ReferenceInspector


@dataclass
class WorktreeInfo:
    path: Path
    head: str | None = None
    branch: str | None = None
    bare: bool = False
    detached: bool = False

    @classmethod
    def parse_porcelain(cls, text: str) -> list[WorktreeInfo]:
        """Parse ``git worktree list --porcelain`` output."""
        worktrees: list[WorktreeInfo] = []
        current: WorktreeInfo | None = None
        for line in text.splitlines():
            if not line.strip():
                current = None
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current = cls(path=Path(value))
                worktrees.append(current)
            elif current is None:
                continue
            elif key == "HEAD":
                current.head = value
            elif key == "branch":
                current.branch = value.removeprefix("refs/heads/")
            elif key == "bare":
                current.bare = True
            elif key == "detached":
                current.detached = True
        return worktrees


@dataclass
class SyncResult:
    branch: str
    target: str
    worktrees: list[str] = field(default_factory=list)
    backups: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "target": self.target,
            "worktrees": list(self.worktrees),
            "backups": list(self.backups),
        }


class WorktreeSynchroniser:
    """Repoints a branch across every worktree of a repository."""

    def __init__(self, git: GitRunner, backups: BackupManager):
        self.git = git
        self.inspector = ReferenceInspector(git)
        self.backups = backups

    def list(self) -> list[WorktreeInfo]:
        out = self.git.output(["worktree", "list", "--porcelain"])
        return WorktreeInfo.parse_porcelain(out)

    def find(self, branch: str) -> list[WorktreeInfo]:
        """Worktrees that have ``branch`` checked out."""
        return [wt for wt in self.list() if wt.branch == branch]

    def sync(self, branch: str, target: str) -> SyncResult:
        """Point ``branch`` at ``target`` everywhere.

        Raises:
            InputError: If ``target`` does not resolve
            InfrastructureError: If a checkout could not be moved
        """
        target_id = self.inspector.resolve(target)
        users = self.find(branch)
        result = SyncResult(branch=branch, target=target_id)

        if not users:
            if self.inspector.branch_exists(branch):
                snapshot = self.backups.snapshot("worktree", [f"refs/heads/{branch}"])
                result.backups.append(snapshot.name)
            self.git.run(["update-ref", f"refs/heads/{branch}", target_id])
            log_debug(f"repointed inactive branch {branch} -> {target_id[:12]}")
        else:
            for wt in users:
                snapshot = self.backups.snapshot("worktree", [f"refs/heads/{branch}"])
                result.backups.append(snapshot.name)
                result.worktrees.append(str(wt.path))

            try:
                for wt in users:
                    self.git.at(wt.path).run(["checkout", "--quiet", "--detach"])
                self.git.run(["branch", "--force", branch, target_id])
                for wt in users:
                    self.git.at(wt.path).run(["checkout", "--quiet", branch])
            except GitError as e:
                raise InfrastructureError(
                    f"Could not move {branch} in its worktrees: {e.stderr or e}",
                    commit=target_id,
                    check="worktree-sync",
                    backup=result.backups[0] if result.backups else None,
                ) from e

        if self.inspector.resolve(branch) != target_id:
            raise InfrastructureError(
                f"{branch} does not point at {target_id} after sync", commit=target_id, check="worktree-sync"
            )
        return result
