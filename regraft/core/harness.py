"""Safety harness - top-level state machine for history rewrites.

    start -> backed-up -> executing -> verified -> cleaned
                                    -> conflicted
                                    -> simulated
                                    -> failed -> restored

Every run works on a fresh temp branch, takes a verified bundle of all
refs before touching anything, and restores from it when any step or
post-check fails. Conflicts that cannot be auto-resolved leave the temp
branch in place for manual work.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from ..config.types import RegraftConfig, ReconstructMode
from ..utils.dates import utc_stamp
from ..utils.fs import atomic_write
from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug, log_warning
from .backup import SCOPE_ALL, BackupManager, BackupSnapshot
from .conflicts import ConflictResolver
from .date_ledger import DateLedger
from .errors import ConflictError, InfrastructureError, InputError, RegraftError
from .inspector import CommitRange, ReferenceInspector
from .preserve import AtomicPreserve, PreserveHalted
from .signing import SigningIdentity
from .transcript import Transcript


OPERATIONS = ("drop", "sign")
EDITOR_ENV = {"GIT_EDITOR": ":", "GIT_SEQUENCE_EDITOR": ":"}
ABORT_COMMANDS = {
    "rebase": ["rebase", "--abort"],
    "cherry-pick": ["cherry-pick", "--abort"],
    "revert": ["revert", "--abort"],
    "merge": ["merge", "--abort"],
}


class HarnessState(str, Enum):
    START = "start"
    BACKED_UP = "backed-up"
    EXECUTING = "executing"
    VERIFIED = "verified"
    CLEANED = "cleaned"
    CONFLICTED = "conflicted"
    FAILED = "failed"
    RESTORED = "restored"
    SIMULATED = "simulated"

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self]


TRANSITIONS: dict[HarnessState, frozenset[HarnessState]] = {
    HarnessState.START: frozenset({HarnessState.BACKED_UP, HarnessState.FAILED}),
    HarnessState.BACKED_UP: frozenset({HarnessState.EXECUTING, HarnessState.FAILED}),
    HarnessState.EXECUTING: frozenset({
        HarnessState.VERIFIED,
        HarnessState.CONFLICTED,
        HarnessState.FAILED,
        HarnessState.SIMULATED,
    }),
    HarnessState.VERIFIED: frozenset({HarnessState.CLEANED}),
    HarnessState.FAILED: frozenset({HarnessState.RESTORED}),
    HarnessState.CLEANED: frozenset(),
    HarnessState.CONFLICTED: frozenset(),
    HarnessState.RESTORED: frozenset(),
    HarnessState.SIMULATED: frozenset(),
}


@dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "passed": self.passed, "detail": self.detail}


@dataclass
class HarnessReport:
    """Everything one harness invocation did."""
    operation: str
    argument: str
    dry_run: bool = False
    started_at: str = ""
    temp_branch: str | None = None
    original_branch: str | None = None
    original_tip: str | None = None
    backup: str | None = None
    pre_log: list[str] = field(default_factory=list)
    post_log: list[str] = field(default_factory=list)
    checks: list[CheckResult] = field(default_factory=list)
    states: list[HarnessState] = field(default_factory=lambda: [HarnessState.START])
    diff_summary: str = ""
    notes: list[str] = field(default_factory=list)
    preserve: dict | None = None
    error: str | None = None
    report_path: str | None = None

    @property
    def state(self) -> HarnessState:
        return self.states[-1]

    @property
    def success(self) -> bool:
        return self.state in (HarnessState.CLEANED, HarnessState.SIMULATED)

    def advance(self, state: HarnessState) -> None:
        """Move to ``state``.

        Raises:
            ValueError: If the transition is not allowed
        """
        if state not in TRANSITIONS[self.state]:
            raise ValueError(f"Invalid harness transition {self.state.value} -> {state.value}")
        self.states.append(state)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "argument": self.argument,
            "dryRun": self.dry_run,
            "startedAt": self.started_at,
            "tempBranch": self.temp_branch,
            "originalBranch": self.original_branch,
            "originalTip": self.original_tip,
            "backup": self.backup,
            "preLog": list(self.pre_log),
            "postLog": list(self.post_log),
            "checks": [c.to_dict() for c in self.checks],
            "states": [s.value for s in self.states],
            "outcome": self.state.value,
            "success": self.success,
            "diffSummary": self.diff_summary,
            "notes": list(self.notes),
            "preserve": self.preserve,
            "error": self.error,
        }

    def render_text(self) -> str:
        lines = [
            f"Operation: {self.operation} {self.argument}",
            f"Started: {self.started_at}",
        ]
        if self.dry_run:
            lines.append("Mode: DRY-RUN")
        lines += [
            f"Original branch: {self.original_branch or '(detached)'} at {self.original_tip}",
            f"Temp branch: {self.temp_branch}",
            f"Backup bundle: {self.backup or '(none)'}",
            f"Pre-op log (last {len(self.pre_log)} commits):",
        ]
        lines += [f"  {line}" for line in self.pre_log]
        lines.append(f"Post-op log (last {len(self.post_log)} commits):")
        lines += [f"  {line}" for line in self.post_log]
        if self.checks:
            lines.append("Post-operation checks:")
            lines += [f"{'OK' if c.passed else 'ERROR'}: {c.name} {c.detail}".rstrip() for c in self.checks]
        if self.diff_summary:
            lines.append("Diff summary:")
            lines += [f"  {line}" for line in self.diff_summary.splitlines()]
        lines += self.notes
        if self.error:
            lines.append(f"ERROR: {self.error}")
        lines.append(f"States: {' -> '.join(s.value for s in self.states)}")
        lines.append(f"Outcome: {self.state.value}")
        return "\n".join(lines) + "\n"

    def save(self, reports_dir: Path, stamp: str) -> Path:
        path = Path(reports_dir) / f"report-{stamp}.txt"
        self.report_path = str(path)
        atomic_write(path, self.render_text())
        atomic_write(path.with_suffix(".json"), json.dumps(self.to_dict(), indent=2))
        return path


class SafetyHarness:
    """Runs one destructive operation on a temp branch with backup and rollback."""

    def __init__(
        self,
        git: GitRunner,
        backups: BackupManager,
        state_dir: Path,
        config: RegraftConfig | None = None,
        identity: SigningIdentity | None = None,
    ):
        """Initialize harness.

        Args:
            git: Runner for the worktree to operate in
            backups: Backup manager for the repository
            state_dir: Directory holding ``reports/`` and ``runs/``
            config: Loaded configuration
            identity: Signing identity, required for ``sign`` and date restoration
        """
        self.git = git
        self.inspector = ReferenceInspector(git)
        self.backups = backups
        self.state_dir = Path(state_dir)
        self.config = config or RegraftConfig()
        self.identity = identity

    @property
    def reports_dir(self) -> Path:
        return self.state_dir / "reports"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    def run(
        self,
        operation: str,
        argument: str,
        *,
        dry_run: bool = False,
        cleanup: bool | None = None,
        auto_resolve: str | None = None,
        mode: ReconstructMode = ReconstructMode.PRESERVE,
        allow_unsigned: bool = False,
        restore_dates: bool = False,
    ) -> HarnessReport:
        """Run ``operation`` against ``argument``.

        Args:
            operation: "drop" (argument is a commit) or "sign" (argument is a range)
            argument: Commit or range
            dry_run: Stop after backup without changing history
            cleanup: Delete the temp branch after success (config default if None)
            auto_resolve: "ours"/"theirs" to resolve drop conflicts automatically
            mode: Reconstruction mode for "sign"
            allow_unsigned: Accept failed signature/timestamp checks (logged loudly)
            restore_dates: Re-apply original timestamps after a drop

        Returns:
            HarnessReport in a terminal state

        Raises:
            InputError: Invalid input, raised before anything is mutated
        """
        argument = (argument or "").strip()
        cleanup = self.config.cleanup_temp_branch if cleanup is None else cleanup
        plan = self._validate(operation, argument, restore_dates)

        stamp = utc_stamp()
        report = HarnessReport(
            operation=operation,
            argument=argument,
            dry_run=dry_run,
            started_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            original_branch=self.inspector.current_branch(),
            original_tip=self.inspector.resolve("HEAD"),
        )
        transcript = Transcript(self.runs_dir / f"harness-{stamp}.log")
        transcript.write("harness", f"start {operation} {argument} dry_run={dry_run}")
        report.pre_log = self.inspector.log_window(self.config.log_window)

        snapshot: BackupSnapshot | None = None
        try:
            report.temp_branch = self._create_temp_branch(stamp)
            transcript.write("harness", f"temp branch {report.temp_branch}")

            snapshot = self.backups.snapshot(operation, SCOPE_ALL)
            report.backup = str(self.backups.bundle_path(snapshot))
            if not self.backups.verify(snapshot):
                raise InfrastructureError("Backup bundle failed verification", check="backup", backup=report.backup)
            report.advance(HarnessState.BACKED_UP)
            transcript.write("harness", f"backed-up {report.backup}")
        except (RegraftError, GitError, OSError) as e:
            report.error = str(e)
            report.advance(HarnessState.FAILED)
            transcript.write("harness", f"failed before execution: {e}")
            self._return_to_original(report)
            report.save(self.reports_dir, stamp)
            return report

        report.advance(HarnessState.EXECUTING)
        try:
            if dry_run:
                self._simulate(operation, plan, report)
                report.post_log = self.inspector.log_window(self.config.log_window)
                report.advance(HarnessState.SIMULATED)
                transcript.write("harness", "simulated")
                self._return_to_original(report)
                if cleanup:
                    self._delete_temp_branch(report)
                report.save(self.reports_dir, stamp)
                return report

            if operation == "drop":
                self._drop(plan, report, transcript, stamp, auto_resolve, restore_dates, allow_unsigned)
            else:
                self._sign(plan, report, transcript, mode, allow_unsigned)

            report.post_log = self.inspector.log_window(self.config.log_window)
            self._post_checks(operation, plan, report)
            failed = [c for c in report.checks if not c.passed]
            if failed:
                raise InfrastructureError(
                    f"Post-check failed: {failed[0].name} {failed[0].detail}".rstrip(),
                    commit=plan.get("target"),
                    check=failed[0].name,
                )
        except ConflictError as e:
            e.backup = report.backup
            report.error = str(e)
            report.post_log = self.inspector.log_window(self.config.log_window)
            report.notes.append(
                f"CONFLICT: leaving {report.temp_branch} for manual resolution; "
                f"restore with backup {report.backup}"
            )
            report.advance(HarnessState.CONFLICTED)
            transcript.write("harness", f"conflicted: {e}")
            report.save(self.reports_dir, stamp)
            return report
        except (RegraftError, GitError, OSError) as e:
            error = e
            if isinstance(e, OSError):
                error = InfrastructureError(f"I/O failure: {e}", check="io", backup=report.backup)
            elif isinstance(e, RegraftError):
                e.backup = report.backup
            report.error = str(error)
            report.advance(HarnessState.FAILED)
            transcript.write("harness", f"failed: {error}")
            self._restore(snapshot, report, transcript)
            report.save(self.reports_dir, stamp)
            return report

        report.advance(HarnessState.VERIFIED)
        transcript.write("harness", "verified")
        if cleanup:
            self._return_to_original(report)
            self._delete_temp_branch(report)
        else:
            report.notes.append(f"Temp branch retained: {report.temp_branch}")
        report.advance(HarnessState.CLEANED)
        transcript.write("harness", "cleaned")
        report.save(self.reports_dir, stamp)
        return report

    # --- input validation ---

    def _validate(self, operation: str, argument: str, restore_dates: bool) -> dict:
        if operation not in OPERATIONS:
            raise InputError(f"Unknown harness operation: {operation}", check="operation")
        if not argument:
            raise InputError(f"{operation} needs an argument", check="argument")
        if self.inspector.pending_operation():
            raise InputError(
                f"A {self.inspector.pending_operation()} is already in progress", check="worktree-clean"
            )
        if not self.inspector.is_clean():
            raise InputError("Working tree has uncommitted changes", check="worktree-clean")

        if operation == "drop":
            target = self.inspector.resolve(argument)
            info = self.inspector.read_commit(target)
            if info.is_root:
                raise InputError("Cannot drop a root commit", commit=target, check="drop-target")
            if not self.inspector.is_ancestor(target, "HEAD"):
                raise InputError("Commit is not in the current history", commit=target, check="drop-target")
            if restore_dates:
                self._require_identity()
            return {"target": target, "parent": info.parents[0]}

        commit_range = CommitRange.parse(argument)
        commits = self.inspector.commits_in_range(commit_range)
        if not commits:
            raise InputError(f"Empty range: {argument}", check="range")
        self._require_identity()
        return {"range": commit_range, "commits": commits, "end": self.inspector.resolve(commit_range.end)}

    def _require_identity(self) -> SigningIdentity:
        if self.identity is None:
            raise InputError("No signing identity configured", check="identity")
        return self.identity.validate()

    # --- states ---

    def _create_temp_branch(self, stamp: str) -> str:
        base = f"{self.config.temp_prefix}/harness-{stamp}"
        name = base
        suffix = 1
        while self.inspector.branch_exists(name):
            name = f"{base}-{suffix}"
            suffix += 1
        self.git.run(["checkout", "--quiet", "-b", name])
        return name

    def _simulate(self, operation: str, plan: dict, report: HarnessReport) -> None:
        if operation == "drop":
            report.notes.append(f"DRY-RUN: drop of {plan['target']} simulated (no changes applied)")
        else:
            report.notes.append(
                f"DRY-RUN: would rebuild and sign {len(plan['commits'])} commit(s) in {plan['range']}"
            )
        report.notes.append("DRY-RUN: skipping post-op verification checks")

    def _drop(
        self,
        plan: dict,
        report: HarnessReport,
        transcript: Transcript,
        stamp: str,
        auto_resolve: str | None,
        restore_dates: bool,
        allow_unsigned: bool,
    ) -> None:
        target, parent = plan["target"], plan["parent"]
        rebase = ["rebase", "--rebase-merges"]
        ledger = None
        if restore_dates:
            ledger = DateLedger.capture(
                self.runs_dir / f"harness-{stamp}.dates", self.inspector, CommitRange(parent, "HEAD")
            )
            ledger.retain(lambda entry: entry.original_id != target)
            identity = self._require_identity()
            rebase += ["-x", ledger.exec_command(
                self.inspector.toplevel(),
                drift_tolerance=self.config.drift_tolerance_seconds,
                allow_unsigned=allow_unsigned,
                signing_key=identity.key,
            )]

        transcript.write("harness", f"drop {target}")
        result = self.git.run([*rebase, "--onto", parent, target], check=False, env=EDITOR_ENV)
        if result.returncode != 0:
            paths = self.inspector.conflicted_paths()
            if self.inspector.pending_operation() != "rebase" or not paths:
                raise InfrastructureError(
                    f"Rebase failed: {result.stderr.strip()}", commit=target, check="rebase"
                )
            preference = auto_resolve or self.config.auto_resolve
            if not preference:
                raise ConflictError(
                    "Rebase stopped due to conflicts during drop", commit=target, paths=paths
                )
            resolver = ConflictResolver(
                self.git, self.config.max_resolve_iterations, transcript=transcript
            )
            outcome = resolver.resolve_all(preference)
            report.notes.append(
                f"Auto-resolve ({preference}): {outcome.state.value} after {outcome.iterations} iteration(s)"
            )
            if not outcome.success:
                paths = self.inspector.conflicted_paths()
                if not paths:
                    raise InfrastructureError(
                        outcome.error or "Rebase stopped without conflicts", commit=target, check="rebase"
                    )
                raise ConflictError(
                    outcome.error or "Automatic conflict resolution did not complete",
                    commit=target,
                    paths=paths,
                )

        if ledger is not None:
            remaining = len(ledger)
            report.notes.append(f"Dates restored from {ledger.path} ({remaining} entries left)")
            if remaining:
                log_warning(f"{remaining} ledger entries were not applied: {ledger.path}")

    def _sign(
        self,
        plan: dict,
        report: HarnessReport,
        transcript: Transcript,
        mode: ReconstructMode,
        allow_unsigned: bool,
    ) -> None:
        identity = self._require_identity()
        preserve = AtomicPreserve(
            self.git,
            identity,
            self.runs_dir,
            drift_tolerance=self.config.drift_tolerance_seconds,
            allow_unsigned=allow_unsigned,
            temp_prefix=self.config.temp_prefix,
        )
        transcript.write("harness", f"sign {plan['range']} mode={mode.value}")
        try:
            run = preserve.run(plan["range"], mode, branch=report.temp_branch)
        except PreserveHalted as e:
            report.preserve = e.run.to_dict()
            raise
        report.preserve = run.to_dict()
        if run.overridden:
            report.notes.append(
                f"OVERRIDE: {len(run.overridden)} commit(s) accepted without a good signature"
            )

    def _post_checks(self, operation: str, plan: dict, report: HarnessReport) -> None:
        if operation == "drop":
            target = plan["target"]
            present = self.inspector.is_ancestor(target, "HEAD")
            report.checks.append(CheckResult(
                "commit-absent",
                not present,
                f"{target} {'still present in' if present else 'absent from'} history",
            ))
        else:
            expected = self.inspector.tree_of(plan["end"])
            actual = self.inspector.tree_of("HEAD")
            report.checks.append(CheckResult(
                "tree-identity",
                expected == actual,
                f"tip tree {actual} {'==' if expected == actual else '!='} original {expected}",
            ))

        clean = self.inspector.is_clean()
        report.checks.append(CheckResult("worktree-clean", clean, "" if clean else "uncommitted changes"))

        report.diff_summary = self.inspector.diff_summary(report.original_tip or "HEAD", "HEAD")
        report.checks.append(CheckResult("diff-summary", True, "captured"))

    def _restore(self, snapshot: BackupSnapshot | None, report: HarnessReport, transcript: Transcript) -> None:
        if snapshot is None:
            return
        pending = self.inspector.pending_operation()
        if pending:
            self.git.run(ABORT_COMMANDS[pending], check=False)

        result = self.backups.restore(snapshot)
        if not result.success:
            report.notes.append(f"RESTORE FAILED: {result.error}; restore manually from {report.backup}")
            transcript.write("harness", f"restore failed: {result.error}")
            return

        try:
            self._return_to_original(report, force=True)
            self.git.run(["reset", "--quiet", "--hard"])
        except GitError as e:
            report.notes.append(f"RESTORE FAILED: {e}; restore manually from {report.backup}")
            transcript.write("harness", f"restore failed: {e}")
            return

        report.advance(HarnessState.RESTORED)
        report.notes.append(f"Restored {result.refs_restored} ref(s) from {report.backup}")
        transcript.write("harness", f"restored from {report.backup}")
        log_debug(f"harness restored {snapshot.name}")

    def _return_to_original(self, report: HarnessReport, force: bool = False) -> None:
        target = report.original_branch or report.original_tip
        if not target:
            return
        args = ["checkout", "--quiet", target]
        if not report.original_branch:
            args.insert(2, "--detach")
        if force:
            args.insert(2, "--force")
        self.git.run(args)

    def _delete_temp_branch(self, report: HarnessReport) -> None:
        if report.temp_branch and self.inspector.branch_exists(report.temp_branch):
            self.git.run(["branch", "-D", report.temp_branch])
            report.notes.append(f"Cleaned up temp branch {report.temp_branch}")
