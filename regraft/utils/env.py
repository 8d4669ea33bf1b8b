"""Environment variables read by regraft.

REGRAFT_DEBUG   truthy value enables debug logging on stderr
REGRAFT_REPO    repository to operate on when no ``--repo`` is given
"""

from __future__ import annotations

import os
from pathlib import Path


TRUTHY = ("1", "true", "yes", "on")


def is_debug_mode() -> bool:
    return os.environ.get("REGRAFT_DEBUG", "").strip().lower() in TRUTHY


def get_home_dir() -> Path:
    return Path.home()


def get_global_regraft_dir() -> Path:
    """Global config directory (``~/.regraft``)."""
    return get_home_dir() / ".regraft"


def get_repo_override() -> Path | None:
    val = os.environ.get("REGRAFT_REPO", "").strip()
    return Path(val).expanduser() if val else None
