"""Thin subprocess wrapper around the git CLI."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Mapping, Sequence

from .log import log_debug


class GitError(Exception):
    """Raised when a git command exits non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = ""):
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"git {' '.join(self.git_args)} failed (exit {returncode}){detail}")


class GitRunner:
    """Runs git commands against one worktree."""

    def __init__(self, cwd: Path | str | None = None, env: Mapping[str, str] | None = None):
        """Initialize runner.

        Args:
            cwd: Worktree to run in (defaults to the process cwd)
            env: Extra environment applied to every command
        """
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self._env = dict(env or {})

    def at(self, path: Path | str) -> GitRunner:
        """Return a runner for another worktree sharing this runner's env."""
        return GitRunner(path, env=self._env)

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``git <args>``.

        Args:
            args: Arguments after ``git``
            check: Raise GitError on non-zero exit
            input: Text fed to stdin
            env: Extra environment for this call only

        Returns:
            Completed process with text stdout/stderr
        """
        full_env = os.environ.copy()
        full_env["GIT_TERMINAL_PROMPT"] = "0"
        full_env.update(self._env)
        if env:
            full_env.update(env)

        log_debug(f"git {' '.join(args)}")
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.cwd,
                input=input,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="surrogateescape",
                env=full_env,
            )
        except OSError as e:
            raise GitError(args, 127, str(e)) from e

        if check and result.returncode != 0:
            raise GitError(args, result.returncode, result.stderr)
        return result

    def output(self, args: Sequence[str], **kwargs) -> str:
        """Run a command and return stdout without the trailing newline."""
        return self.run(args, **kwargs).stdout.rstrip("\n")

    def ok(self, args: Sequence[str], **kwargs) -> bool:
        """Run a command and report whether it exited zero."""
        return self.run(args, check=False, **kwargs).returncode == 0
