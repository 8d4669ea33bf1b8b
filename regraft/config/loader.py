"""Configuration loader for regraft.

Two JSON files feed one RegraftConfig, later sources winning key by key:

1. ``~/.regraft/config.json`` (global)
2. ``<git-common-dir>/regraft/config.json`` (repository)

Keys are camelCase, matching ``RegraftConfig.to_dict``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from ..utils.env import get_global_regraft_dir
from ..utils.fs import atomic_write, read_json_object
from ..utils.log import log_debug
from .types import RegraftConfig


CONFIG_NAME = "config.json"

Scope = Literal["global", "repository"]


class ConfigLoader:
    """Loads, caches and saves regraft configuration for one repository."""

    def __init__(self, state_dir: Path | None = None):
        """
        Args:
            state_dir: Per-repository state directory; without one only the
                global file is consulted
        """
        self.state_dir = Path(state_dir) if state_dir else None
        self._config: RegraftConfig | None = None

    @property
    def config(self) -> RegraftConfig:
        if self._config is None:
            self._config = self.load()
        return self._config

    def sources(self) -> list[Path]:
        """Config files in increasing priority."""
        paths = [get_global_regraft_dir() / CONFIG_NAME]
        if self.state_dir:
            paths.append(self.state_dir / CONFIG_NAME)
        return paths

    def load(self) -> RegraftConfig:
        merged: dict[str, Any] = {}
        for path in self.sources():
            if path.exists():
                merged = self._deep_merge(merged, read_json_object(path))
                log_debug(f"config: merged {path}")
        return RegraftConfig.from_dict(merged)

    def reload(self) -> RegraftConfig:
        self._config = None
        return self.config

    def path_for(self, scope: Scope) -> Path:
        if scope == "global":
            return get_global_regraft_dir() / CONFIG_NAME
        if not self.state_dir:
            raise ValueError("No repository state directory set for repository-scope config")
        return self.state_dir / CONFIG_NAME

    def save_config(self, config: RegraftConfig, scope: Scope = "repository") -> Path:
        """Write ``config`` to the file for ``scope`` and return its path."""
        path = self.path_for(scope)
        atomic_write(path, json.dumps(config.to_dict(), indent=2) + "\n")
        self._config = None
        return path

    @staticmethod
    def _deep_merge(base: dict, override: dict) -> dict:
        result = dict(base)
        for key, value in override.items():
            current = result.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                result[key] = ConfigLoader._deep_merge(current, value)
            else:
                result[key] = value
        return result
