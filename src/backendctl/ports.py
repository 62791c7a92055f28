"""Host port preferences for the active instance."""
from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass

from .errors import ErrorCode, ValidationError
from .state import StateRegistry

DEFAULT_UI_PORT = 8880
DEFAULT_SSH_PORT = 55022
PORT_FIELDS = ("ui", "ssh")


@dataclass(frozen=True, slots=True)
class PortPreferences:
    """Host ports published for the UI and SSH container ports."""

    ui: int = DEFAULT_UI_PORT
    ssh: int = DEFAULT_SSH_PORT

    def to_dict(self) -> dict[str, int]:
        """Return a serialisable representation."""
        return {"ui": self.ui, "ssh": self.ssh}


def normalize_port(value: object) -> int | None:
    """Return *value* as a port number in 1-65535, or ``None`` when invalid."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(numeric):
        return None
    port = math.floor(numeric)
    if port <= 0 or port > 65535:
        return None
    return port


def validate_port_preferences(payload: object) -> PortPreferences:
    """Validate a ``{"ui", "ssh"}`` mapping, raising ``INVALID_PORT_PREFERENCES``."""
    if not isinstance(payload, Mapping):
        raise ValidationError(ErrorCode.INVALID_PORT_PREFERENCES, "Port preferences must be a mapping")
    unknown = set(payload.keys()) - set(PORT_FIELDS)
    if unknown:
        raise ValidationError(
            ErrorCode.INVALID_PORT_PREFERENCES,
            "Unknown port preference fields",
            details={"fields": sorted(str(key) for key in unknown)},
        )
    ui = normalize_port(payload.get("ui"))
    ssh = normalize_port(payload.get("ssh"))
    if ui is None or ssh is None:
        raise ValidationError(
            ErrorCode.INVALID_PORT_PREFERENCES,
            "Ports must be integers between 1 and 65535",
            details={"ui": payload.get("ui"), "ssh": payload.get("ssh")},
        )
    if ui == ssh:
        raise ValidationError(
            ErrorCode.INVALID_PORT_PREFERENCES,
            "UI and SSH ports must differ",
            details={"ui": ui, "ssh": ssh},
        )
    return PortPreferences(ui=ui, ssh=ssh)


@dataclass(slots=True)
class PortPreferencesStore:
    """Read and write port preferences stored in ``state.yml``."""

    registry: StateRegistry
    defaults: PortPreferences = PortPreferences()

    def read(self) -> PortPreferences:
        """Return stored preferences, repairing invalid values with defaults."""
        state = self.registry.read_state()
        raw = state.get("port_preferences")
        stored = raw if isinstance(raw, Mapping) else {}
        ui = normalize_port(stored.get("ui"))
        ssh = normalize_port(stored.get("ssh"))
        prefs = PortPreferences(
            ui=ui if ui is not None else self.defaults.ui,
            ssh=ssh if ssh is not None else self.defaults.ssh,
        )
        if prefs.ui == prefs.ssh:
            return self.defaults
        return prefs

    def write(self, payload: object) -> PortPreferences:
        """Validate and persist *payload*; nothing is written when invalid."""
        prefs = validate_port_preferences(payload)
        self.registry.update_state({"port_preferences": prefs.to_dict()})
        return prefs


__all__ = [
    "DEFAULT_SSH_PORT",
    "DEFAULT_UI_PORT",
    "PortPreferences",
    "PortPreferencesStore",
    "normalize_port",
    "validate_port_preferences",
]
