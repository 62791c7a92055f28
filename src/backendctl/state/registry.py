"""Helpers for interacting with the backendctl state directory.

The state directory (``~/.local/share/backendctl`` by default) stores YAML
artifacts:

* ``state.yml`` holds the retention policy and port preferences.
* ``cache/installability.yml`` holds per-tag registry verdicts.
* ``cache/releases.yml`` holds the release catalog keyed by source repository.

Writes are atomic (temporary file plus ``os.replace``) so a crash never leaves
a partially written record behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

STATE_FILE = "state.yml"
INSTALLABILITY_CACHE_FILE = "cache/installability.yml"
RELEASES_CACHE_FILE = "cache/releases.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML state store."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named state file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a state file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse state file {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read state file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given state file."""
        path = self.path_for(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        except OSError as exc:
            raise StateRegistryError(f"Failed to prepare state file {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write state file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_state(self) -> dict[str, Any]:
        """Return the contents of ``state.yml`` (empty mapping if missing)."""
        value = self.read(STATE_FILE, default={})
        return dict(value) if isinstance(value, Mapping) else {}

    def update_state(self, updates: Mapping[str, object]) -> dict[str, Any]:
        """Merge *updates* into ``state.yml`` and stamp ``updated_at``."""
        state = self.read_state()
        state.update(deepcopy(dict(updates)))
        state["updated_at"] = _now_iso()
        self.write(STATE_FILE, state)
        return state

    def read_installability(self) -> dict[str, Any]:
        """Return the installability cache with a guaranteed ``entries`` mapping."""
        value = self.read(INSTALLABILITY_CACHE_FILE, default={"entries": {}})
        cache = dict(value) if isinstance(value, Mapping) else {}
        entries = cache.get("entries")
        cache["entries"] = dict(entries) if isinstance(entries, Mapping) else {}
        return cache

    def write_installability(self, entries: Mapping[str, object]) -> None:
        """Persist installability *entries* to the cache file."""
        self.write(
            INSTALLABILITY_CACHE_FILE,
            {"entries": dict(entries), "updated_at": _now_iso()},
        )

    def read_releases_cache(self) -> dict[str, Any] | None:
        """Return the release catalog cache if present."""
        value = self.read(RELEASES_CACHE_FILE, default=None)
        return dict(value) if isinstance(value, Mapping) else None

    def write_releases_cache(self, payload: Mapping[str, object]) -> None:
        """Persist the release catalog cache."""
        self.write(RELEASES_CACHE_FILE, payload)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


__all__ = [
    "INSTALLABILITY_CACHE_FILE",
    "RELEASES_CACHE_FILE",
    "STATE_FILE",
    "StateRegistry",
    "StateRegistryError",
]
