"""Error taxonomy for regraft.

Every error carries enough context for a user-visible message: the commit
it concerns, the check that failed and, once one exists, the backup that
can restore the repository.
"""

from __future__ import annotations


class RegraftError(Exception):
    """Base class for regraft failures."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        commit: str | None = None,
        check: str | None = None,
        backup: str | None = None,
    ):
        self.message = message
        self.commit = commit
        self.check = check
        self.backup = backup
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.commit:
            parts.append(f"commit={self.commit}")
        if self.check:
            parts.append(f"check={self.check}")
        if self.backup:
            parts.append(f"backup={self.backup}")
        return " | ".join(parts)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "commit": self.commit,
            "check": self.check,
            "backup": self.backup,
        }


class InputError(RegraftError):
    """Malformed or missing input, rejected before anything is mutated."""

    kind = "input"


class VerificationError(RegraftError):
    """A post-condition on a rewritten commit did not hold."""

    kind = "verification"


class SignatureError(VerificationError):
    def __init__(self, message: str, *, status: str = "", **kwargs):
        self.status = status
        kwargs.setdefault("check", "signature")
        super().__init__(message, **kwargs)


class TimestampDriftError(VerificationError):
    def __init__(self, message: str, *, drift: int = 0, **kwargs):
        self.drift = drift
        kwargs.setdefault("check", "timestamp")
        super().__init__(message, **kwargs)


class TreeMismatchError(VerificationError):
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("check", "tree")
        super().__init__(message, **kwargs)


class ConflictError(RegraftError):
    """A merge or rebase stalled on conflicts that need a human."""

    kind = "conflict"

    def __init__(self, message: str, *, paths: list[str] | None = None, **kwargs):
        self.paths = list(paths or [])
        kwargs.setdefault("check", "conflicts")
        super().__init__(message, **kwargs)


class InfrastructureError(RegraftError):
    """git, the filesystem or the signing program failed underneath us."""

    kind = "infrastructure"
