"""Stderr logging helpers for regraft.

Library code never prints to stdout; stdout belongs to the CLI.
"""

from __future__ import annotations

import sys

from .env import is_debug_mode


PREFIX = "[regraft]"


def log_debug(message: str) -> None:
    """Log debug message to stderr.

    Only outputs if REGRAFT_DEBUG is set.
    """
    if is_debug_mode():
        print(f"{PREFIX} {message}", file=sys.stderr)


def log_warning(message: str) -> None:
    print(f"{PREFIX} WARNING: {message}", file=sys.stderr)
