"""Append-only, grep-friendly run transcripts."""

from __future__ import annotations

from pathlib import Path

from ..utils.fs import append_line, read_lines


class Transcript:
    """One line per notable event, formatted ``[tag] message``."""

    def __init__(self, path: Path | str | None):
        self.path = Path(path) if path else None

    def write(self, tag: str, message: str) -> None:
        if self.path is None:
            return
        for line in message.splitlines() or [""]:
            append_line(self.path, f"[{tag}] {line}")

    def lines(self) -> list[str]:
        return read_lines(self.path) if self.path else []
