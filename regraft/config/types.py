"""Configuration schemas for regraft.

Defines dataclasses for all configuration structures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal


Preference = Literal["ours", "theirs"]


class ReconstructMode(str, Enum):
    """How merge structure is treated when rebuilding a range."""
    PRESERVE = "preserve"    # keep every parent, in order
    LINEARISE = "linearise"  # single-parent chain


DEFAULT_DRIFT_TOLERANCE = 86400
DEFAULT_MAX_RESOLVE_ITERATIONS = 15


@dataclass
class RegraftConfig:
    """Main regraft configuration.

    Has no unsigned-commit override; callers pass that explicitly.
    """
    drift_tolerance_seconds: int = DEFAULT_DRIFT_TOLERANCE
    max_resolve_iterations: int = DEFAULT_MAX_RESOLVE_ITERATIONS
    log_window: int = 10
    temp_prefix: str = "tmp"
    backup_prefix: str = "backup"
    cleanup_temp_branch: bool = False
    auto_resolve: Preference | None = None
    signing_key: str | None = None
    base_branches: list[str] = field(default_factory=lambda: [
        "Main",
        "main",
        "master",
        "develop",
    ])

    @classmethod
    def from_dict(cls, data: dict) -> RegraftConfig:
        """Create RegraftConfig from dictionary."""
        defaults = cls()

        auto_val = data.get("autoResolve")
        auto_resolve: Preference | None = None
        if auto_val in ("ours", "theirs"):
            auto_resolve = auto_val

        signing_key = data.get("signingKey")
        base_branches = data.get("baseBranches")

        return cls(
            drift_tolerance_seconds=_coerce_int(
                data.get("driftToleranceSeconds"), defaults.drift_tolerance_seconds, minimum=0
            ),
            max_resolve_iterations=_coerce_int(
                data.get("maxResolveIterations"), defaults.max_resolve_iterations, minimum=1
            ),
            log_window=_coerce_int(data.get("logWindow"), defaults.log_window, minimum=1),
            temp_prefix=str(data.get("tempPrefix") or defaults.temp_prefix),
            backup_prefix=str(data.get("backupPrefix") or defaults.backup_prefix),
            cleanup_temp_branch=bool(data.get("cleanupTempBranch", defaults.cleanup_temp_branch)),
            auto_resolve=auto_resolve,
            signing_key=signing_key if isinstance(signing_key, str) and signing_key else None,
            base_branches=(
                [str(b) for b in base_branches]
                if isinstance(base_branches, list) and base_branches
                else defaults.base_branches
            ),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "driftToleranceSeconds": self.drift_tolerance_seconds,
            "maxResolveIterations": self.max_resolve_iterations,
            "logWindow": self.log_window,
            "tempPrefix": self.temp_prefix,
            "backupPrefix": self.backup_prefix,
            "cleanupTempBranch": self.cleanup_temp_branch,
            "autoResolve": self.auto_resolve,
            "signingKey": self.signing_key,
            "baseBranches": list(self.base_branches),
        }


def _coerce_int(val: object, default: int, minimum: int = 0) -> int:
    if isinstance(val, bool) or not isinstance(val, (int, str)):
        return default
    try:
        number = int(val)
    except ValueError:
        return default
    return number if number >= minimum else default
