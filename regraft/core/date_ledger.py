"""Date ledger: capture original timestamps, re-apply them one at a time.

The ledger file is the only state. Each line is ``<commit>|<iso8601>``,
oldest first. ``apply_next`` consumes the top line; ``apply_for`` consumes
the line recorded for one original commit, as a rebase exec step does.
A line that cannot be parsed is dropped with a warning so a driver loop
never stalls on it.
"""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from ..config.types import DEFAULT_DRIFT_TOLERANCE
from ..utils.dates import parse_timestamp, to_epoch
from ..utils.fs import read_lines, write_lines
from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug, log_warning
from .errors import InfrastructureError, VerificationError
from .inspector import CommitRange, ReferenceInspector
from .signing import SignAndVerify, SignResult


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    EXHAUSTED = "exhausted"
    DROPPED = "dropped"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class DateLedgerEntry:
    original_id: str
    timestamp: str

    def to_line(self) -> str:
        return f"{self.original_id}|{self.timestamp}"

    @classmethod
    def from_line(cls, line: str) -> DateLedgerEntry:
        """Parse a ledger line.

        Raises:
            ValueError: If the line is malformed or the timestamp unparsable
        """
        original_id, sep, timestamp = line.strip().partition("|")
        if not sep or not original_id.strip():
            raise ValueError(f"malformed ledger line: {line!r}")
        parse_timestamp(timestamp)
        return cls(original_id=original_id.strip(), timestamp=timestamp.strip())


@dataclass
class ApplyOutcome:
    status: ApplyStatus
    entry: DateLedgerEntry | None = None
    result: SignResult | None = None
    remaining: int = 0
    line: str | None = None


class DateLedger:
    """A persisted list of captured timestamps."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    @classmethod
    def capture(cls, path: Path | str, inspector: ReferenceInspector, commit_range: CommitRange) -> DateLedger:
        """Record each commit's author timestamp, oldest first.

        Replaces any existing ledger at ``path``.
        """
        entries = [
            DateLedgerEntry(commit_id, inspector.read_commit(commit_id).author_timestamp)
            for commit_id in inspector.commits_in_range(commit_range)
        ]
        ledger = cls(path)
        write_lines(ledger.path, [entry.to_line() for entry in entries])
        log_debug(f"Captured {len(entries)} timestamps into {ledger.path}")
        return ledger

    def lines(self) -> list[str]:
        return read_lines(self.path)

    def entries(self) -> list[DateLedgerEntry]:
        """Well-formed entries; malformed lines are skipped."""
        entries = []
        for line in self.lines():
            try:
                entries.append(DateLedgerEntry.from_line(line))
            except ValueError:
                continue
        return entries

    def __len__(self) -> int:
        return len(self.lines())

    def lookup(self, original_id: str) -> str | None:
        for entry in self.entries():
            if _same_commit(entry.original_id, original_id):
                return entry.timestamp
        return None

    def retain(self, predicate: Callable[[DateLedgerEntry], bool]) -> int:
        """Keep only entries matching ``predicate``.

        Returns:
            Number of lines removed (malformed lines are always removed)
        """
        lines = self.lines()
        kept = [entry.to_line() for entry in self.entries() if predicate(entry)]
        write_lines(self.path, kept)
        return len(lines) - len(kept)

    def apply_next(self, signer: SignAndVerify) -> ApplyOutcome:
        """Amend ``HEAD`` to the oldest unapplied timestamp and sign it.

        Returns:
            EXHAUSTED when the ledger is empty (no-op), DROPPED when the top
            line was unusable, APPLIED when the entry was consumed

        Raises:
            VerificationError: If the amended commit fails verification;
                the entry stays in the ledger
        """
        lines = self.lines()
        if not lines:
            return ApplyOutcome(status=ApplyStatus.EXHAUSTED)

        top, rest = lines[0], lines[1:]
        try:
            entry = DateLedgerEntry.from_line(top)
        except ValueError as e:
            log_warning(f"Dropping unusable ledger line: {e}")
            write_lines(self.path, rest)
            return ApplyOutcome(status=ApplyStatus.DROPPED, remaining=len(rest), line=top)

        result = signer.amend_head(entry.timestamp, original_id=entry.original_id)
        write_lines(self.path, rest)
        return ApplyOutcome(status=ApplyStatus.APPLIED, entry=entry, result=result, remaining=len(rest))

    def apply_for(self, signer: SignAndVerify, original_id: str) -> ApplyOutcome:
        """Amend ``HEAD`` to the timestamp recorded for ``original_id`` and sign it.

        ``HEAD`` must be the replay of ``original_id`` (same author and
        message). When it is not, the commit was skipped or emptied away,
        and its entry is dropped with a warning.

        Returns:
            EXHAUSTED when the ledger is empty, UNMATCHED when no entry
            belongs to ``original_id``, DROPPED when the entry was
            discarded, APPLIED when it was consumed

        Raises:
            VerificationError: If the amended commit fails verification;
                the entry stays in the ledger
        """
        lines = self.lines()
        if not lines:
            return ApplyOutcome(status=ApplyStatus.EXHAUSTED)

        for index, line in enumerate(lines):
            try:
                entry = DateLedgerEntry.from_line(line)
            except ValueError:
                continue
            if _same_commit(entry.original_id, original_id):
                break
        else:
            return ApplyOutcome(status=ApplyStatus.UNMATCHED, remaining=len(lines))

        rest = lines[:index] + lines[index + 1:]
        original = signer.inspector.read_commit(entry.original_id)
        head = signer.inspector.read_commit("HEAD")
        if (head.author, head.message) != (original.author, original.message):
            log_warning(f"HEAD {head.id[:12]} is not a replay of {entry.original_id[:12]}; dropping its date")
            write_lines(self.path, rest)
            return ApplyOutcome(status=ApplyStatus.DROPPED, entry=entry, remaining=len(rest), line=line)

        result = signer.amend_head(entry.timestamp, original_id=entry.original_id)
        write_lines(self.path, rest)
        return ApplyOutcome(status=ApplyStatus.APPLIED, entry=entry, result=result, remaining=len(rest))

    @staticmethod
    def verify_commit_date(
        inspector: ReferenceInspector,
        ref: str,
        expected_timestamp: str,
        tolerance: int = DEFAULT_DRIFT_TOLERANCE,
    ) -> bool:
        """Whether author and committer dates of ``ref`` match within ``tolerance``."""
        expected = to_epoch(expected_timestamp)
        return (
            abs(inspector.author_epoch(ref) - expected) <= tolerance
            and abs(inspector.committer_epoch(ref) - expected) <= tolerance
        )

    def exec_command(
        self,
        repo: Path,
        *,
        drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
        allow_unsigned: bool = False,
        signing_key: str | None = None,
    ) -> str:
        """Shell command for a ``rebase -x`` step that dates the commit just replayed."""
        package_root = str(Path(__file__).resolve().parents[2])
        python_path = os.pathsep.join(p for p in (package_root, os.environ.get("PYTHONPATH")) if p)

        step = [
            "env", f"PYTHONPATH={python_path}",
            sys.executable, "-m", "regraft", "-C", str(repo),
            "ledger", "apply-next", "--replayed",
            "--ledger", str(self.path.resolve()),
            "--drift-tolerance", str(drift_tolerance),
        ]
        if signing_key:
            step += ["--signing-key", signing_key]
        if allow_unsigned:
            step.append("--allow-unsigned")
        return shlex.join(step)

    def apply_with_rebase(
        self,
        git: GitRunner,
        base: str,
        *,
        drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
        allow_unsigned: bool = False,
        signing_key: str | None = None,
    ) -> int:
        """Replay ``base..HEAD``, dating each commit from its own ledger entry.

        Drives ``git rebase --rebase-merges -x`` with ``exec_command`` as
        the exec step.

        Returns:
            Number of entries left in the ledger afterwards

        Raises:
            VerificationError: If any step failed; the rebase is aborted
        """
        inspector = ReferenceInspector(git)
        command = self.exec_command(
            inspector.toplevel(),
            drift_tolerance=drift_tolerance,
            allow_unsigned=allow_unsigned,
            signing_key=signing_key,
        )
        try:
            git.run(
                ["rebase", "--force-rebase", "--rebase-merges", "-x", command, base],
                env={"GIT_EDITOR": ":", "GIT_SEQUENCE_EDITOR": ":"},
            )
        except GitError as e:
            if inspector.pending_operation() == "rebase":
                try:
                    git.run(["rebase", "--abort"])
                except GitError as abort_error:
                    raise InfrastructureError(
                        f"Could not abort date rebase: {abort_error}", check="dates"
                    ) from e
            raise VerificationError(
                f"Date restoration failed, ledger kept at {self.path}: {e.stderr or e}",
                check="dates",
            ) from e

        return len(self)


def _same_commit(recorded: str, wanted: str) -> bool:
    """Whether two ids name the same commit, either one possibly abbreviated."""
    return recorded.startswith(wanted) or wanted.startswith(recorded)
