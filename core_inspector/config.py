"""Runtime configuration for a report run.

Values come from CORE_INSPECTOR_* environment variables (a .env file is
loaded by the launchers before this module is used) and can be overridden
by explicit command arguments.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Dict, Optional

ENV_PREFIX = "CORE_INSPECTOR_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool, environ: Dict[str, str]) -> bool:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int, environ: Dict[str, str]) -> int:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip(), 0)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class InspectorConfig:
    """Limits and rendering switches for the introspection engine."""
    max_tree_depth: int = 64
    max_chain_length: int = 1_000_000
    max_string_length: int = 4096
    utc: bool = False
    locks_csv: bool = False
    verbose: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "InspectorConfig":
        env = os.environ if environ is None else environ
        default = cls()
        return cls(
            max_tree_depth=_env_int("MAX_TREE_DEPTH", default.max_tree_depth, env),
            max_chain_length=_env_int("MAX_CHAIN_LENGTH", default.max_chain_length, env),
            max_string_length=_env_int("MAX_STRING_LENGTH", default.max_string_length, env),
            utc=_env_bool("UTC", default.utc, env),
            locks_csv=_env_bool("LOCKS_CSV", default.locks_csv, env),
            verbose=_env_bool("VERBOSE", default.verbose, env),
        )

    def with_overrides(self, **overrides) -> "InspectorConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **changes)


@dataclass(frozen=True)
class ReportOptions:
    """Which sections the external caller asked for."""
    thread1: bool = True
    brief: bool = True
    full: bool = True
    locks: bool = True
    info: bool = True

    @classmethod
    def only(cls, *names: str) -> "ReportOptions":
        """Options with just the named sections enabled."""
        known = {f.name for f in fields(cls)}
        unknown = set(names) - known
        if unknown:
            raise ValueError(f"Unknown report section(s): {', '.join(sorted(unknown))}")
        return cls(**{name: name in names for name in known})
