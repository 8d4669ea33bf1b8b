"""Utility modules for regraft."""

from .env import get_global_regraft_dir, get_home_dir, get_repo_override, is_debug_mode
from .fs import append_line, atomic_write, read_json_object, read_lines, write_lines
from .git import GitError, GitRunner
from .log import log_debug, log_warning

__all__ = [
    "append_line",
    "atomic_write",
    "read_json_object",
    "read_lines",
    "write_lines",
    "get_home_dir",
    "get_global_regraft_dir",
    "get_repo_override",
    "is_debug_mode",
    "GitError",
    "GitRunner",
    "log_debug",
    "log_warning",
]
