"""Garbage collection of disposable and fully merged refs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from ..utils.git import GitError, GitRunner
from ..utils.log import log_warning
from .errors import InputError
from .inspector import ReferenceInspector


@dataclass
class DisposableRefs:
    branches: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.branches or self.tags)


class RefCleaner:
    """Finds and deletes temp, backup and restore refs plus merged branches."""

    def __init__(
        self,
        git: GitRunner,
        base_branches: list[str] | None = None,
        markers: tuple[str, ...] = ("tmp", "backup", "restore"),
    ):
        self.git = git
        self.inspector = ReferenceInspector(git)
        self.base_branches = list(base_branches or ["Main", "main", "master", "develop"])
        self._pattern = re.compile(
            r"(^|[/_-])(" + "|".join(re.escape(m) for m in markers) + r")([/_-]|$)"
        )

    def is_disposable(self, name: str) -> bool:
        return bool(self._pattern.search(name))

    def find_disposable(self) -> DisposableRefs:
        current = self.inspector.current_branch()
        return DisposableRefs(
            branches=[b for b in self.inspector.branches() if self.is_disposable(b) and b != current],
            tags=[t for t in self.inspector.tags() if self.is_disposable(t)],
        )

    def default_base(self) -> str:
        for name in self.base_branches:
            if self.inspector.branch_exists(name):
                return name
        raise InputError(
            f"No base branch found (tried {', '.join(self.base_branches)})", check="base-branch"
        )

    def find_merged(self, base: str | None = None) -> list[str]:
        """Local branches fully merged into ``base``, minus protected and disposable ones."""
        base = base or self.default_base()
        current = self.inspector.current_branch()
        out = self.git.output(["branch", "--merged", base, "--format=%(refname:short)"])
        protected = set(self.base_branches) | {base}
        return [
            name
            for name in out.splitlines()
            if name and name not in protected and name != current and not self.is_disposable(name)
        ]

    def delete_branches(self, names: list[str], force: bool = True) -> list[str]:
        """Delete branches, returning the ones actually deleted."""
        deleted = []
        for name in names:
            try:
                self.git.run(["branch", "-D" if force else "-d", name])
                deleted.append(name)
            except GitError as e:
                log_warning(f"Could not delete branch {name}: {e.stderr or e}")
        return deleted

    def delete_tags(self, names: list[str]) -> list[str]:
        deleted = []
        for name in names:
            try:
                self.git.run(["tag", "-d", name])
                deleted.append(name)
            except GitError as e:
                log_warning(f"Could not delete tag {name}: {e.stderr or e}")
        return deleted
