"""Sign-and-verify unit.

Amends a commit to attach a signature while re-asserting its preserved
timestamp, then checks the result: signature status must be good, author
and committer epochs must sit within the drift tolerance, and the tree
must be untouched.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from ..config.types import DEFAULT_DRIFT_TOLERANCE
from ..utils.dates import to_epoch, to_git_date
from ..utils.git import GitError, GitRunner
from ..utils.log import log_debug, log_warning
from .errors import (
    InputError,
    SignatureError,
    TimestampDriftError,
    TreeMismatchError,
    VerificationError,
)
from .inspector import ReferenceInspector
from .transcript import Transcript


GOOD = "G"


@dataclass(frozen=True)
class SigningIdentity:
    """Who reconstructed commits are committed and signed as."""
    name: str
    email: str
    key: str | None = None
    program: str = "gpg"

    @classmethod
    def from_git_config(
        cls,
        inspector: ReferenceInspector,
        name: str | None = None,
        email: str | None = None,
        key: str | None = None,
    ) -> SigningIdentity:
        """Fill anything not given explicitly from git config."""
        return cls(
            name=name or inspector.config_value("user.name") or "",
            email=email or inspector.config_value("user.email") or "",
            key=key or inspector.config_value("user.signingkey"),
            program=inspector.config_value("gpg.program") or "gpg",
        )

    def validate(self) -> SigningIdentity:
        """Reject an identity that cannot sign.

        Raises:
            InputError: If name, email or the signing program is missing
        """
        if not self.name or not self.email:
            raise InputError(
                "Signing identity needs user.name and user.email", check="identity"
            )
        if shutil.which(self.program) is None and not Path(self.program).is_file():
            raise InputError(f"Signing program not found: {self.program}", check="identity")
        return self

    def committer_env(self) -> dict[str, str]:
        return {"GIT_COMMITTER_NAME": self.name, "GIT_COMMITTER_EMAIL": self.email}


@dataclass
class SignResult:
    """Outcome of signing one commit."""
    original_id: str
    new_id: str
    status: str
    author_epoch: int
    committer_epoch: int
    expected_epoch: int
    overridden: list[str] = field(default_factory=list)

    @property
    def good(self) -> bool:
        return self.status == GOOD

    @property
    def drift(self) -> int:
        return max(
            abs(self.author_epoch - self.expected_epoch),
            abs(self.committer_epoch - self.expected_epoch),
        )


class SignAndVerify:
    """Signs commits one at a time and refuses to continue past a bad one."""

    def __init__(
        self,
        git: GitRunner,
        identity: SigningIdentity,
        *,
        drift_tolerance: int = DEFAULT_DRIFT_TOLERANCE,
        allow_unsigned: bool = False,
        transcript: Transcript | None = None,
    ):
        """Initialize the unit.

        Args:
            git: Runner for the worktree holding the temp branch
            identity: Committer identity and signing key
            drift_tolerance: Maximum accepted timestamp difference in seconds
            allow_unsigned: Log and continue past failed signature/timestamp
                checks instead of halting. Recovery use only.
            transcript: Optional run transcript
        """
        self.git = git
        self.inspector = ReferenceInspector(git)
        self.identity = identity
        self.drift_tolerance = drift_tolerance
        self.allow_unsigned = allow_unsigned
        self.transcript = transcript or Transcript(None)

    def sign_in_place(self, commit_id: str, expected_timestamp: str, original_id: str | None = None) -> SignResult:
        """Detach onto ``commit_id``, sign it and verify the amended commit.

        Args:
            commit_id: Commit to sign (usually freshly reconstructed)
            expected_timestamp: Timestamp the signed commit must keep
            original_id: Original commit named in errors, defaults to commit_id

        Returns:
            SignResult describing the new commit

        Raises:
            VerificationError: On a failed check without the override
        """
        self.git.run(["checkout", "--quiet", "--detach", commit_id])
        return self.amend_head(expected_timestamp, original_id=original_id or commit_id)

    def amend_head(self, expected_timestamp: str, original_id: str | None = None) -> SignResult:
        """Amend and sign whatever ``HEAD`` points at, forcing both dates."""
        before = self.inspector.resolve("HEAD")
        before_tree = self.inspector.tree_of("HEAD")
        original = original_id or before
        git_date = to_git_date(expected_timestamp)

        sign_flag = f"-S{self.identity.key}" if self.identity.key else "-S"
        env = {**self.identity.committer_env(), "GIT_COMMITTER_DATE": git_date}
        try:
            self.git.run(
                [
                    "commit", "--amend", "--no-edit", "--no-verify",
                    "--allow-empty", "--allow-empty-message", "--cleanup=verbatim",
                    sign_flag, f"--date={git_date}",
                ],
                env=env,
            )
        except GitError as e:
            error = SignatureError(f"Signing failed: {e.stderr or e}", commit=original, status="N")
            self._fail(error)

        return self.verify(expected_timestamp, original_id=original, expected_tree=before_tree)

    def verify(
        self,
        expected_timestamp: str,
        *,
        ref: str = "HEAD",
        original_id: str | None = None,
        expected_tree: str | None = None,
    ) -> SignResult:
        """Check signature, dates and tree of ``ref``."""
        new_id = self.inspector.resolve(ref)
        original = original_id or new_id
        expected_epoch = to_epoch(expected_timestamp)
        result = SignResult(
            original_id=original,
            new_id=new_id,
            status=self.inspector.signature_status(new_id),
            author_epoch=self.inspector.author_epoch(new_id),
            committer_epoch=self.inspector.committer_epoch(new_id),
            expected_epoch=expected_epoch,
        )
        log_debug(
            f"verify {original[:12]} -> {new_id[:12]}: sig={result.status} drift={result.drift}s"
        )

        if expected_tree is not None:
            tree = self.inspector.tree_of(new_id)
            if tree != expected_tree:
                # Never overridable
                raise TreeMismatchError(
                    f"Tree changed while signing ({expected_tree} -> {tree})", commit=original
                )

        if not result.good:
            self._fail(
                SignatureError(
                    f"Signature status is {result.status}, expected {GOOD}",
                    commit=original,
                    status=result.status,
                ),
                result,
            )

        if result.drift > self.drift_tolerance:
            self._fail(
                TimestampDriftError(
                    f"Timestamp drift {result.drift}s exceeds {self.drift_tolerance}s "
                    f"(expected {expected_timestamp})",
                    commit=original,
                    drift=result.drift,
                ),
                result,
            )

        self.transcript.write(
            "sign", f"{original} -> {new_id} status={result.status} drift={result.drift}s"
        )
        return result

    def _fail(self, error: VerificationError, result: SignResult | None = None) -> None:
        if not self.allow_unsigned:
            self.transcript.write("sign", f"FAILED {error}")
            raise error
        log_warning(f"OVERRIDE: continuing past failed check: {error}")
        self.transcript.write("override", f"continuing past failed check: {error}")
        if result is not None and error.check:
            result.overridden.append(error.check)
