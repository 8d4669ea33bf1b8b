"""Read-only repository queries.

Everything the rewriting components need to know about the commit graph,
refs and working tree goes through ReferenceInspector, so the mutating
modules never parse git output themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..utils.dates import format_timestamp, from_git_ident_date
from ..utils.git import GitError, GitRunner
from .errors import InfrastructureError, InputError


# Marker files/dirs inside the git dir, checked in this order
PENDING_MARKERS = (
    ("rebase-merge", "rebase"),
    ("rebase-apply", "rebase"),
    ("CHERRY_PICK_HEAD", "cherry-pick"),
    ("REVERT_HEAD", "revert"),
    ("MERGE_HEAD", "merge"),
)

# Todo commands that replay an existing commit
REPLAY_COMMANDS = ("pick", "p", "reword", "r", "edit", "e")
MERGE_COMMANDS = ("merge", "m")


@dataclass(frozen=True)
class Identity:
    """Name, email and date from an author/committer header."""
    name: str
    email: str
    date: datetime

    @property
    def epoch(self) -> int:
        return int(self.date.timestamp())

    @classmethod
    def parse(cls, value: str) -> Identity:
        # "Name <email> 1700000000 +0100"
        try:
            ident, rest = value.rsplit(">", 1)
            name, email = ident.split("<", 1)
            epoch, tz = rest.split()
        except ValueError as e:
            raise InfrastructureError(f"Unparsable identity header: {value!r}", check="read-commit") from e
        return cls(name=name.strip(), email=email.strip(), date=from_git_ident_date(epoch, tz))


@dataclass(frozen=True)
class CommitInfo:
    """An original commit, parsed from ``git cat-file commit``."""
    id: str
    tree: str
    parents: tuple[str, ...]
    author: Identity
    committer: Identity
    message: str

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def is_root(self) -> bool:
        return not self.parents

    @property
    def author_timestamp(self) -> str:
        """Author date as ISO 8601 with the original offset."""
        return format_timestamp(self.author.date)

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0]

    @classmethod
    def parse(cls, commit_id: str, raw: str) -> CommitInfo:
        header, sep, message = raw.partition("\n\n")
        if not sep:
            message = ""

        fields: dict[str, list[str]] = {}
        last_key = None
        for line in header.split("\n"):
            if line.startswith(" ") and last_key:
                # continuation of a multi-line header (gpgsig, mergetag)
                fields[last_key][-1] += "\n" + line[1:]
                continue
            key, _, value = line.partition(" ")
            fields.setdefault(key, []).append(value)
            last_key = key

        try:
            tree = fields["tree"][0]
            author = Identity.parse(fields["author"][0])
            committer = Identity.parse(fields["committer"][0])
        except KeyError as e:
            raise InfrastructureError(
                f"Commit object is missing the {e.args[0]} header", commit=commit_id, check="read-commit"
            ) from e

        return cls(
            id=commit_id,
            tree=tree,
            parents=tuple(fields.get("parent", [])),
            author=author,
            committer=committer,
            message=message,
        )


@dataclass(frozen=True)
class CommitRange:
    """A span of history: ``start`` (exclusive) up to ``end`` (inclusive).

    ``start`` of None means from the first commit.
    """
    start: str | None
    end: str = "HEAD"

    @classmethod
    def parse(cls, spec: str | None) -> CommitRange:
        """Parse ``A..B``, a bare ``A`` (meaning ``A..HEAD``) or ``--root``/empty.

        Either side of ``..`` may be left out and reads as ``HEAD``, as in git.
        """
        text = (spec or "").strip()
        if not text or text == "--root":
            return cls(start=None)
        if "..." in text:
            raise InputError(f"Symmetric ranges are not supported: {text}", check="range")
        if ".." in text:
            start, end = text.split("..", 1)
            return cls(start=start or "HEAD", end=end or "HEAD")
        return cls(start=text)

    def rev_spec(self) -> str:
        return f"{self.start}..{self.end}" if self.start else self.end

    def __str__(self) -> str:
        return self.rev_spec() if self.start else f"--root..{self.end}"


class ReferenceInspector:
    """Answers questions about the repository without changing it."""

    def __init__(self, git: GitRunner):
        self.git = git

    # --- refs and ancestry ---

    def resolve(self, ref: str) -> str:
        """Resolve a ref to a full commit id.

        Raises:
            InputError: If the ref does not name a commit
        """
        result = self.git.run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if result.returncode != 0 or not result.stdout.strip():
            raise InputError(f"Unknown revision: {ref}", commit=ref, check="resolve")
        return result.stdout.strip()

    def exists(self, ref: str) -> bool:
        return self.git.ok(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return self.git.ok(["merge-base", "--is-ancestor", ancestor, descendant])

    def merge_base(self, a: str, b: str) -> str | None:
        result = self.git.run(["merge-base", a, b], check=False)
        return result.stdout.strip() or None

    def commits_in_range(self, commit_range: CommitRange) -> list[str]:
        """Commit ids in the range, parents before children."""
        if commit_range.start:
            self.resolve(commit_range.start)
        self.resolve(commit_range.end)
        out = self.git.output(["rev-list", "--topo-order", "--reverse", commit_range.rev_spec()])
        return [line for line in out.splitlines() if line]

    def read_commit(self, ref: str) -> CommitInfo:
        commit_id = self.resolve(ref)
        try:
            raw = self.git.run(["cat-file", "commit", commit_id]).stdout
        except GitError as e:
            raise InfrastructureError(
                f"Unreadable commit object: {e.stderr or e}", commit=commit_id, check="read-commit"
            ) from e
        return CommitInfo.parse(commit_id, raw)

    def tree_of(self, ref: str) -> str:
        return self.git.output(["rev-parse", f"{ref}^{{tree}}"])

    def current_branch(self) -> str | None:
        """Short name of the checked-out branch, or None when detached."""
        result = self.git.run(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        return result.stdout.strip() or None

    def branch_exists(self, name: str) -> bool:
        return self.git.ok(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"])

    def branches(self) -> list[str]:
        out = self.git.output(["for-each-ref", "--format=%(refname:short)", "refs/heads"])
        return [line for line in out.splitlines() if line]

    def tags(self) -> list[str]:
        out = self.git.output(["for-each-ref", "--format=%(refname:short)", "refs/tags"])
        return [line for line in out.splitlines() if line]

    def refs(self) -> dict[str, str]:
        """Full ref name -> object id for every branch and tag."""
        out = self.git.output(["for-each-ref", "--format=%(objectname) %(refname)", "refs/heads", "refs/tags"])
        refs: dict[str, str] = {}
        for line in out.splitlines():
            sha, _, name = line.partition(" ")
            if name:
                refs[name] = sha
        return refs

    def config_value(self, key: str) -> str | None:
        result = self.git.run(["config", "--get", key], check=False)
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    # --- locations ---

    def git_dir(self) -> Path:
        return Path(self.git.output(["rev-parse", "--absolute-git-dir"]))

    def common_dir(self) -> Path:
        """Directory shared by every worktree of this repository."""
        out = self.git.output(["rev-parse", "--path-format=absolute", "--git-common-dir"])
        return Path(out)

    def toplevel(self) -> Path:
        return Path(self.git.output(["rev-parse", "--show-toplevel"]))

    # --- working tree ---

    def status_lines(self) -> list[str]:
        out = self.git.output(["status", "--porcelain", "--untracked-files=no"])
        return [line for line in out.splitlines() if line]

    def is_clean(self) -> bool:
        return not self.status_lines()

    def conflicted_paths(self) -> list[str]:
        out = self.git.output(["diff", "--name-only", "--diff-filter=U"])
        return sorted(set(line for line in out.splitlines() if line))

    def pending_operation(self) -> str | None:
        """The stalled operation in progress, if any.

        Returns:
            "rebase", "cherry-pick", "revert", "merge" or None
        """
        git_dir = self.git_dir()
        for marker, operation in PENDING_MARKERS:
            if (git_dir / marker).exists():
                return operation
        return None

    def replayed_commit(self) -> str | None:
        """Original id of the commit the running rebase replayed last.

        Read from the rebase's ``done`` list. None when no rebase is
        running, or when the last step built a merge without ``-C``.
        """
        done = self.git_dir() / "rebase-merge" / "done"
        try:
            lines = done.read_text(encoding="utf-8").splitlines()
        except OSError:
            return None

        for line in reversed(lines):
            words = line.split()
            if not words:
                continue
            if words[0] in REPLAY_COMMANDS and len(words) > 1:
                return self.resolve(words[1])
            if words[0] in MERGE_COMMANDS:
                for flag, value in zip(words, words[1:]):
                    if flag in ("-C", "-c"):
                        return self.resolve(value)
                return None
        return None

    # --- per-commit metadata ---

    def signature_status(self, ref: str = "HEAD") -> str:
        """Signature status letter from ``%G?`` (G, B, U, N, ...)."""
        return self.git.output(["log", "-1", "--format=%G?", ref]).strip() or "N"

    def author_epoch(self, ref: str = "HEAD") -> int:
        return int(self.git.output(["log", "-1", "--format=%at", ref]))

    def committer_epoch(self, ref: str = "HEAD") -> int:
        return int(self.git.output(["log", "-1", "--format=%ct", ref]))

    def log_window(self, n: int, ref: str = "HEAD") -> list[str]:
        """One-line log of the last ``n`` commits reachable from ``ref``."""
        if not self.exists(ref):
            return []
        out = self.git.output(["log", "--oneline", "--decorate=no", f"-n{n}", ref])
        return out.splitlines()

    def diff_summary(self, a: str, b: str) -> str:
        return self.git.output(["diff", "--stat", a, b])
