"""File helpers for regraft state files.

Map, ledger and transcript files are plain UTF-8 text with one record
per line; metadata and reports are JSON.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable


def atomic_write(file_path: Path | str, content: str) -> None:
    """Replace ``file_path`` with ``content`` via a sibling temp file and rename.

    Readers never observe a half-written file.
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as tmp:
        tmp.write(content)
        tmp.flush()
        os.fsync(tmp.fileno())
    try:
        os.replace(tmp.name, path)
    except OSError:
        Path(tmp.name).unlink(missing_ok=True)
        raise


def append_line(file_path: Path | str, line: str) -> None:
    """Append a single line to a text file, creating it if needed."""
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line.rstrip("\n") + "\n")


def read_lines(file_path: Path | str) -> list[str]:
    """Read non-empty lines from a text file.

    Returns:
        Stripped lines, or an empty list if the file does not exist
    """
    try:
        with open(file_path, encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip()]
    except FileNotFoundError:
        return []


def write_lines(file_path: Path | str, lines: Iterable[str]) -> None:
    """Atomically replace a text file with the given lines."""
    atomic_write(file_path, "".join(line.rstrip("\n") + "\n" for line in lines))


def read_json_object(file_path: Path | str) -> dict[str, Any]:
    """Load a JSON object; anything else (or no file at all) reads as empty."""
    try:
        with open(file_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}
