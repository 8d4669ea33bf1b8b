"""Configuration management for regraft."""

from .types import (
    DEFAULT_DRIFT_TOLERANCE,
    DEFAULT_MAX_RESOLVE_ITERATIONS,
    Preference,
    ReconstructMode,
    RegraftConfig,
)
from .loader import ConfigLoader

__all__ = [
    "DEFAULT_DRIFT_TOLERANCE",
    "DEFAULT_MAX_RESOLVE_ITERATIONS",
    "Preference",
    "ReconstructMode",
    "RegraftConfig",
    "ConfigLoader",
]
