"""Atomic preserve orchestrator.

Rebuilds a range one commit at a time and signs each rebuilt commit
before moving on, so a failure stops at the exact offending commit. Every
completed step is persisted to a map file, which also makes a halted run
resumable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..config.types import DEFAULT_DRIFT_TOLERANCE, ReconstructMode
from ..utils.dates import utc_stamp
from ..utils.fs import append_line, read_lines
from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug
from .date_ledger import DateLedger
from .errors import InfrastructureError, InputError, RegraftError
from .inspector import CommitRange, ReferenceInspector
from .reconstruct import TopologyReconstructor
from .signing import GOOD, SignAndVerify, SigningIdentity
from .transcript import Transcript


SIG_FIELD = "sig:"


@dataclass
class PreserveMapEntry:
    """One rebuilt-and-signed commit."""
    original_id: str
    current_id: str
    timestamp: str
    signature_status: str = GOOD

    def to_line(self) -> str:
        line = f"{self.original_id}|{self.current_id}|{self.timestamp}"
        if self.signature_status != GOOD:
            line += f"|{SIG_FIELD}{self.signature_status}"
        return line

    @classmethod
    def from_line(cls, line: str) -> PreserveMapEntry:
        parts = line.strip().split("|")
        if len(parts) < 3 or not all(parts[:3]):
            raise ValueError(f"malformed map line: {line!r}")
        status = GOOD
        if len(parts) > 3 and parts[3].startswith(SIG_FIELD):
            status = parts[3][len(SIG_FIELD):] or GOOD
        return cls(original_id=parts[0], current_id=parts[1], timestamp=parts[2], signature_status=status)

    def to_dict(self) -> dict:
        return {
            "originalId": self.original_id,
            "currentId": self.current_id,
            "timestamp": self.timestamp,
            "signatureStatus": self.signature_status,
        }


class PreserveMap:
    """Append-only map file, one line per completed commit."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def append(self, entry: PreserveMapEntry) -> None:
        append_line(self.path, entry.to_line())

    def load(self) -> list[PreserveMapEntry]:
        """Read entries back.

        Raises:
            InputError: If a line cannot be parsed
        """
        entries = []
        for line in read_lines(self.path):
            try:
                entries.append(PreserveMapEntry.from_line(line))
            except ValueError as e:
                raise InputError(f"Corrupt preserve map {self.path}: {e}", check="resume") from e
        return entries


@dataclass
class PreserveRun:
    """Artefacts of one orchestrator run."""
    branch: str
    map_path: Path
    log_path: Path
    ledger_path: Path
    entries: list[PreserveMapEntry] = field(default_factory=list)
    tip: str | None = None

    @property
    def overridden(self) -> list[PreserveMapEntry]:
        return [e for e in self.entries if e.signature_status != GOOD]

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "mapPath": str(self.map_path),
            "logPath": str(self.log_path),
            "ledgerPath": str(self.ledger_path),
            "tip": self.tip,
            "entries": [e.to_dict() for e in self.entries],
        }


class PreserveHalted(RegraftError):
    """The orchestrator stopped at a commit; partial artefacts are kept."""

    def __init__(self, run: PreserveRun, cause: RegraftError):
        self.run = run
        self.cause = cause
        self.kind = cause.kind
        super().__init__(
            f"Preserve halted after {len(run.entries)} commit(s): {cause.message}",
            commit=cause.commit,
            check=cause.check,
            backup=cause.backup,
        )


class AtomicPreserve:
    """Interleaves reconstruction and signing, commit by commit."""

    def __init__(
        self,
        git: GitRunner,
        identity: SigningIdentity,
        run_dir: Path,
        *,
        drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
        allow_unsigned: bool = False,
        temp_prefix: str = "tmp",
    ):
        self.git = git
        self.inspector = ReferenceInspector(git)
        self.identity = identity
        self.run_dir = Path(run_dir)
        self.drift_tolerance = drift_tolerance
        self.allow_unsigned = allow_unsigned
        self.temp_prefix = temp_prefix

    def run(
        self,
        commit_range: CommitRange,
        mode: ReconstructMode = ReconstructMode.PRESERVE,
        branch: str | None = None,
        resume_map: Path | str | None = None,
    ) -> PreserveRun:
        """Rebuild and sign ``commit_range`` onto ``branch``.

        Args:
            commit_range: Commits to rewrite
            mode: Keep merge parents or linearise
            branch: Branch receiving the result (``<tmp>/atomic-preserve-<ts>`` if None)
            resume_map: Map file of an earlier halted run to continue

        Returns:
            PreserveRun describing the artefacts

        Raises:
            InputError: Empty range or unusable resume map
            PreserveHalted: A commit failed; completed entries stay persisted
        """
        if resume_map:
            map_path = Path(resume_map)
            if not map_path.exists():
                raise InputError(f"Resume map not found: {map_path}", check="resume")
        else:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            map_path = self.run_dir / f"atomic-preserve-{utc_stamp()}.map"

        stamp = map_path.stem.replace("atomic-preserve-", "")
        run = PreserveRun(
            branch=branch or f"{self.temp_prefix}/atomic-preserve-{stamp}",
            map_path=map_path,
            log_path=map_path.with_suffix(".log"),
            ledger_path=map_path.with_suffix(".dates"),
        )
        transcript = Transcript(run.log_path)
        preserve_map = PreserveMap(map_path)

        commits = self.inspector.commits_in_range(commit_range)
        if not commits:
            raise InputError(f"Empty range: {commit_range}", check="range")

        if resume_map and run.ledger_path.exists():
            ledger = DateLedger(run.ledger_path)
        else:
            ledger = DateLedger.capture(run.ledger_path, self.inspector, commit_range)

        run.entries = preserve_map.load() if resume_map else []
        mapping = {e.original_id: e.current_id for e in run.entries}
        previous = run.entries[-1].current_id if run.entries else None

        signer = SignAndVerify(
            self.git,
            self.identity,
            drift_tolerance=self.drift_tolerance,
            allow_unsigned=self.allow_unsigned,
            transcript=transcript,
        )
        reconstructor = TopologyReconstructor(self.git, committer=(self.identity.name, self.identity.email))

        transcript.write(
            "atomic",
            f"start range={commit_range} mode={mode.value} branch={run.branch} "
            f"commits={len(commits)} resumed={len(run.entries)}",
        )
        if self.allow_unsigned:
            transcript.write("override", "unsigned/drifted commits will be accepted for this run")

        for commit_id in commits:
            if commit_id in mapping:
                continue
            try:
                info = self.inspector.read_commit(commit_id)
                timestamp = ledger.lookup(commit_id) or info.author_timestamp
                parents = reconstructor.resolve_parents(info, mapping, mode, previous)
                unsigned = reconstructor.reconstruct_one(info, parents, timestamp)
                transcript.write("atomic", f"rebuilt {commit_id} -> {unsigned} parents={','.join(parents)}")
                signed = signer.sign_in_place(unsigned, timestamp, original_id=commit_id)
                self.git.run(["update-ref", f"refs/heads/{run.branch}", signed.new_id])
            except GitError as e:
                cause = InfrastructureError(str(e), commit=commit_id, check="git")
                transcript.write("atomic", f"HALT {cause}")
                raise PreserveHalted(run, cause) from e
            except RegraftError as e:
                transcript.write("atomic", f"HALT {e}")
                raise PreserveHalted(run, e) from e

            entry = PreserveMapEntry(commit_id, signed.new_id, timestamp, signed.status)
            preserve_map.append(entry)
            run.entries.append(entry)
            mapping[commit_id] = signed.new_id
            previous = signed.new_id
            log_debug(f"preserved {commit_id[:12]} -> {signed.new_id[:12]}")

        run.tip = previous
        if run.tip:
            self.git.run(["update-ref", f"refs/heads/{run.branch}", run.tip])
            self.git.run(["checkout", "--quiet", run.branch])
        transcript.write("atomic", f"done tip={run.tip} entries={len(run.entries)}")
        return run
