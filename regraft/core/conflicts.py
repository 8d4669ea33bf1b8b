"""Bounded conflict auto-resolver.

A small state machine: while RESOLVING, stage the preferred side of every
conflicted path and continue the stalled operation. It ends COMPLETED when
nothing is pending, FAILED when an operation is pending without conflicts
to resolve, and STALLED once the iteration ceiling is reached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..config.types import DEFAULT_MAX_RESOLVE_ITERATIONS
from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug
from .errors import InputError
from .inspector import ReferenceInspector
from .transcript import Transcript


PREFERENCES = ("ours", "theirs")
STAGE_FOR = {"ours": "2", "theirs": "3"}
EDITOR_ENV = {"GIT_EDITOR": ":"}


class ResolutionState(str, Enum):
    RESOLVING = "resolving"
    COMPLETED = "completed"
    STALLED = "stalled"
    FAILED = "failed"


@dataclass
class ResolutionOutcome:
    state: ResolutionState
    iterations: int = 0
    resolved_paths: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.state == ResolutionState.COMPLETED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "iterations": self.iterations,
            "resolvedPaths": list(self.resolved_paths),
            "error": self.error,
        }


class ConflictResolver:
    """Resolves rebase, cherry-pick, revert and merge conflicts by preference."""

    def __init__(
        self,
        git: GitRunner,
        max_iterations: int = DEFAULT_MAX_RESOLVE_ITERATIONS,
        *,
        inspector: ReferenceInspector | None = None,
        transcript: Transcript | None = None,
    ):
        self.git = git
        self.inspector = inspector or ReferenceInspector(git)
        self.max_iterations = max_iterations
        self.transcript = transcript or Transcript(None)

    def resolve_all(self, preference: str) -> ResolutionOutcome:
        """Resolve until the pending operation completes or the ceiling is hit.

        Args:
            preference: "ours" or "theirs", passed to ``git checkout`` as is

        Returns:
            ResolutionOutcome in a terminal state
        """
        if preference not in PREFERENCES:
            raise InputError(f"Unknown conflict preference: {preference}", check="preference")

        outcome = ResolutionOutcome(state=ResolutionState.RESOLVING)
        while outcome.state == ResolutionState.RESOLVING:
            operation = self.inspector.pending_operation()
            if operation is None:
                outcome.state = ResolutionState.COMPLETED
                break
            if outcome.iterations >= self.max_iterations:
                outcome.state = ResolutionState.STALLED
                outcome.error = (
                    f"{operation} still conflicted after {outcome.iterations} iterations; "
                    "manual resolution required"
                )
                break

            outcome.iterations += 1
            paths = self.inspector.conflicted_paths()
            if not paths:
                outcome.state = ResolutionState.FAILED
                outcome.error = f"{operation} is stopped but has no conflicted paths"
                break

            self.transcript.write(
                "resolve", f"iteration {outcome.iterations}: {operation} {preference} {' '.join(paths)}"
            )
            try:
                for path in paths:
                    self.take_side(path, preference)
                outcome.resolved_paths.extend(p for p in paths if p not in outcome.resolved_paths)
            except GitError as e:
                outcome.state = ResolutionState.FAILED
                outcome.error = str(e)
                break
            self.continue_operation(operation)

        self.transcript.write("resolve", f"{outcome.state.value} after {outcome.iterations} iteration(s)")
        return outcome

    def take_side(self, path: str, preference: str) -> None:
        """Stage ``preference``'s version of ``path``, or remove it if that side deleted it."""
        stages = self.git.output(["ls-files", "--unmerged", "--", path])
        present = any(line.split()[2] == STAGE_FOR[preference] for line in stages.splitlines() if line)
        if present:
            self.git.run(["checkout", f"--{preference}", "--", path])
            self.git.run(["add", "--", path])
        else:
            self.git.run(["rm", "--quiet", "--force", "--", path])
        log_debug(f"resolved {path} ({preference}, {'kept' if present else 'removed'})")

    def continue_operation(self, operation: str) -> None:
        """Continue the stalled operation.

        A continuation that stops again on new conflicts is expected; the
        next iteration picks them up.
        """
        if operation == "merge":
            args = ["commit", "--no-edit"]
        else:
            args = [operation, "--continue"]

        result = self.git.run(args, check=False, env=EDITOR_ENV)
        if result.returncode == 0:
            return

        # Resolution left nothing to commit: skip the now-empty step
        if (
            operation != "merge"
            and self.inspector.pending_operation() == operation
            and not self.inspector.conflicted_paths()
            and self.git.ok(["diff", "--cached", "--quiet", "HEAD"])
        ):
            self.transcript.write("resolve", f"{operation}: empty after resolution, skipping")
            self.git.run([operation, "--skip"], check=False, env=EDITOR_ENV)
