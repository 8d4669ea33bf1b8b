"""Topology reconstructor.

Rebuilds a range commit by commit with ``git commit-tree``: same tree,
same message, same author, parents remapped through the commits already
rebuilt, and both dates pinned to the captured timestamp.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from ..config.types import ReconstructMode
from ..utils.dates import to_git_date
from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug
from .errors import InfrastructureError, InputError, TreeMismatchError
from .inspector import CommitInfo, CommitRange, ReferenceInspector


@dataclass
class ReconstructionResult:
    """Rebuilt range: tip plus the original -> new id mapping."""
    tip: str
    mode: ReconstructMode
    mapping: dict[str, str] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "tip": self.tip,
            "mode": self.mode.value,
            "mapping": dict(self.mapping),
            "order": list(self.order),
        }


class TopologyReconstructor:
    """Replays a range of commits with remapped parents."""

    def __init__(self, git: GitRunner, committer: tuple[str, str] | None = None):
        """Initialize reconstructor.

        Args:
            git: Runner for the repository
            committer: (name, email) for new commits; the original committer
                identity is kept when omitted
        """
        self.git = git
        self.inspector = ReferenceInspector(git)
        self.committer = committer

    def reconstruct(
        self,
        commit_range: CommitRange,
        mode: ReconstructMode = ReconstructMode.PRESERVE,
        timestamps: Mapping[str, str] | None = None,
        branch: str | None = None,
    ) -> ReconstructionResult:
        """Rebuild every commit in ``commit_range``.

        Args:
            commit_range: Range to rebuild
            mode: Keep merge parents or linearise
            timestamps: Captured timestamp per original id (author date otherwise)
            branch: Branch to point at the new tip when done

        Returns:
            ReconstructionResult with the new tip

        Raises:
            InputError: If the range is empty
            InfrastructureError: If any commit could not be created
        """
        commits = self.inspector.commits_in_range(commit_range)
        if not commits:
            raise InputError(f"Empty range: {commit_range}", check="range")

        result = ReconstructionResult(tip="", mode=mode)
        previous: str | None = None
        for commit_id in commits:
            info = self.inspector.read_commit(commit_id)
            timestamp = (timestamps or {}).get(commit_id) or info.author_timestamp
            parents = self.resolve_parents(info, result.mapping, mode, previous)
            previous = self.reconstruct_one(info, parents, timestamp)
            result.mapping[commit_id] = previous
            result.order.append(commit_id)

        result.tip = previous or ""
        if branch:
            self.git.run(["update-ref", f"refs/heads/{branch}", result.tip])
        return result

    @staticmethod
    def resolve_parents(
        info: CommitInfo,
        mapping: Mapping[str, str],
        mode: ReconstructMode,
        previous: str | None = None,
    ) -> list[str]:
        """New parent list for ``info``.

        Parents outside the range keep their original id.
        """
        if mode == ReconstructMode.LINEARISE:
            if previous is not None:
                return [previous]
            if not info.parents:
                return []
            return [mapping.get(info.parents[0], info.parents[0])]
        return [mapping.get(parent, parent) for parent in info.parents]

    def reconstruct_one(self, info: CommitInfo, parents: list[str], timestamp: str) -> str:
        """Create the rebuilt counterpart of one commit.

        Returns:
            The new commit id
        """
        git_date = to_git_date(timestamp)
        committer_name, committer_email = self.committer or (info.committer.name, info.committer.email)
        env = {
            "GIT_AUTHOR_NAME": info.author.name,
            "GIT_AUTHOR_EMAIL": info.author.email,
            "GIT_AUTHOR_DATE": git_date,
            "GIT_COMMITTER_NAME": committer_name,
            "GIT_COMMITTER_EMAIL": committer_email,
            "GIT_COMMITTER_DATE": git_date,
        }

        args = ["commit-tree", info.tree]
        for parent in parents:
            args += ["-p", parent]

        try:
            new_id = self.git.output(args, input=info.message, env=env).strip()
        except GitError as e:
            raise InfrastructureError(
                f"commit-tree failed: {e.stderr or e}", commit=info.id, check="commit-tree"
            ) from e

        tree = self.inspector.tree_of(new_id)
        if tree != info.tree:
            raise TreeMismatchError(f"Rebuilt tree {tree} differs from {info.tree}", commit=info.id)

        log_debug(f"rebuilt {info.id[:12]} -> {new_id[:12]} parents={[p[:12] for p in parents]}")
        return new_id
