"""Layered configuration for backendctl.

Later layers win:

1. Built-in :data:`DEFAULTS`.
2. The YAML file at ``~/.config/backendctl/config.yml``, or the path given by
   ``--config-file`` / ``BACKENDCTL_CONFIG_FILE``.
3. ``BACKENDCTL_*`` environment variables, with ``__`` separating a section
   from its key::

       export BACKENDCTL_IMAGE_REPO=acme/backend
       export BACKENDCTL_HEALTH__TIMEOUT=90

4. Programmatic overrides.

Environment values are parsed as YAML scalars, so ``90`` is a number and
``true`` a boolean. The merged result is validated once and frozen into
:class:`AppConfig`.
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping, MutableMapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from . import DEFAULT_USER_AGENT

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "BACKENDCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_IMAGE_REPO = "agent0ai/agent-zero"
DEFAULT_RELEASE_REPO = "agent0ai/agent-zero"
REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RegistryConfig:
    """Container registry endpoints and request tuning."""

    base_url: str = "https://registry-1.docker.io"
    auth_url: str = "https://auth.docker.io/token"
    service: str = "registry.docker.io"
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = 15.0
    page_size: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base_url": self.base_url,
            "auth_url": self.auth_url,
            "service": self.service,
            "user_agent": self.user_agent,
            "request_timeout": self.request_timeout,
            "page_size": self.page_size,
        }


@dataclass(frozen=True)
class ReleasesConfig:
    """Release catalog source settings."""

    api_url: str = "https://api.github.com"
    cache_ttl_hours: float = 24.0
    max_pages: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "api_url": self.api_url,
            "cache_ttl_hours": self.cache_ttl_hours,
            "max_pages": self.max_pages,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Timings for the UI readiness poll."""

    timeout: float = 60.0
    interval: float = 0.45
    attempt_timeout: float = 0.35

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "interval": self.interval,
            "attempt_timeout": self.attempt_timeout,
        }


@dataclass(frozen=True)
class ProgressConfig:
    """Pull progress aggregation tuning."""

    freeze_delay: float = 1.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"freeze_delay": self.freeze_delay}


@dataclass(frozen=True)
class PortsConfig:
    """Default host ports for a fresh installation."""

    ui: int = 8880
    ssh: int = 55022

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ui": self.ui, "ssh": self.ssh}


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime connection settings."""

    docker_host: str | None = None
    stop_timeout: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_host": self.docker_host, "stop_timeout": self.stop_timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for backendctl."""

    config_file: Path
    image_repo: str
    release_repo: str
    state_dir: Path
    logs_dir: Path
    registry: RegistryConfig
    releases: ReleasesConfig
    health: HealthConfig
    progress: ProgressConfig
    ports: PortsConfig
    runtime: RuntimeConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "image_repo": self.image_repo,
            "release_repo": self.release_repo,
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "registry": self.registry.to_dict(),
            "releases": self.releases.to_dict(),
            "health": self.health.to_dict(),
            "progress": self.progress.to_dict(),
            "ports": self.ports.to_dict(),
            "runtime": self.runtime.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/backendctl/config.yml",
    "image_repo": DEFAULT_IMAGE_REPO,
    "release_repo": DEFAULT_RELEASE_REPO,
    "state_dir": "~/.local/share/backendctl",
    "logs_dir": None,  # derived from state_dir when absent
    "registry": {
        "base_url": "https://registry-1.docker.io",
        "auth_url": "https://auth.docker.io/token",
        "service": "registry.docker.io",
        "user_agent": DEFAULT_USER_AGENT,
        "request_timeout": 15.0,
        "page_size": 100,
    },
    "releases": {
        "api_url": "https://api.github.com",
        "cache_ttl_hours": 24.0,
        "max_pages": 50,
    },
    "health": {
        "timeout": 60.0,
        "interval": 0.45,
        "attempt_timeout": 0.35,
    },
    "progress": {
        "freeze_delay": 1.5,
    },
    "ports": {
        "ui": 8880,
        "ssh": 55022,
    },
    "runtime": {
        "docker_host": None,
        "stop_timeout": 10,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("registry", "releases", "health", "progress", "ports", "runtime")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge every configuration layer into an :class:`AppConfig`.

    Raises :class:`ConfigError` for unknown keys or invalid values.
    """
    environ = dict(os.environ if env is None else env)
    path = _config_path(config_file, environ)

    merged = deepcopy(DEFAULTS)
    for layer in (_read_config_file(path), _env_layer(environ), _as_dict(overrides, "overrides")):
        _merge_into(merged, layer)
    merged["config_file"] = str(path)

    _check_keys(merged)
    return _build_app_config(merged, environ)


def normalize_repo(value: object, default: str) -> str:
    """Return *value* when it looks like ``owner/name``; otherwise *default*."""
    if not isinstance(value, str):
        return default
    candidate = value.strip()
    if candidate and REPO_PATTERN.match(candidate):
        return candidate
    if candidate:
        LOGGER.warning("Ignoring invalid repository %r; using %s.", candidate, default)
    return default


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------
def _config_path(explicit: str | os.PathLike[str] | None, env: Mapping[str, str]) -> Path:
    chosen = explicit or env.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"])
    return Path(chosen).expanduser()


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, str(path))


def _env_layer(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``BACKENDCTL_SECTION__KEY=value`` variables into a nested mapping."""
    layer: dict[str, object] = {}
    for name in sorted(env):
        if name in RESERVED_ENV_KEYS or not name.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = layer
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {name} conflicts with a scalar setting.")
            node = cast(dict[str, object], child)
        node[path[-1]] = _parse_scalar(env[name])
    return layer


def _parse_scalar(text: str) -> object:
    value = text.strip()
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _merge_into(target: MutableMapping[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _merge_into(current, _as_dict(value, key))
        else:
            target[key] = value


def _check_keys(raw: Mapping[str, object]) -> None:
    unknown = sorted(set(raw) - ALLOWED_TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        extra = sorted(set(_as_dict(raw.get(section), section)) - allowed)
        if extra:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(extra)}.")

    ports = _as_dict(raw.get("ports"), "ports")
    if _read_port(ports.get("ui"), "ports.ui", default=8880) == _read_port(
        ports.get("ssh"), "ports.ssh", default=55022
    ):
        raise ConfigError("ports.ui and ports.ssh must be different ports.")


# ---------------------------------------------------------------------------
# Typed sections
# ---------------------------------------------------------------------------
def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_dir_value) if logs_dir_value else state_dir / "logs"

    registry_map = _as_dict(raw.get("registry"), "registry")
    page_size = _read_int(registry_map.get("page_size"), "registry.page_size", default=100)
    if page_size < 1:
        raise ConfigError("registry.page_size must be at least 1.")
    registry = RegistryConfig(
        base_url=_strip_slash(registry_map.get("base_url"), RegistryConfig.base_url),
        auth_url=str(registry_map.get("auth_url") or RegistryConfig.auth_url),
        service=str(registry_map.get("service") or RegistryConfig.service),
        user_agent=str(registry_map.get("user_agent") or RegistryConfig.user_agent),
        request_timeout=_read_positive_float(
            registry_map.get("request_timeout"), "registry.request_timeout", default=15.0
        ),
        page_size=page_size,
    )

    releases_map = _as_dict(raw.get("releases"), "releases")
    max_pages = _read_int(releases_map.get("max_pages"), "releases.max_pages", default=50)
    if max_pages < 1:
        raise ConfigError("releases.max_pages must be at least 1.")
    releases = ReleasesConfig(
        api_url=_strip_slash(releases_map.get("api_url"), ReleasesConfig.api_url),
        cache_ttl_hours=_read_positive_float(
            releases_map.get("cache_ttl_hours"), "releases.cache_ttl_hours", default=24.0
        ),
        max_pages=max_pages,
    )

    health_map = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        timeout=_read_positive_float(health_map.get("timeout"), "health.timeout", default=60.0),
        interval=_read_positive_float(
            health_map.get("interval"), "health.interval", default=0.45
        ),
        attempt_timeout=_read_positive_float(
            health_map.get("attempt_timeout"), "health.attempt_timeout", default=0.35
        ),
    )

    progress_map = _as_dict(raw.get("progress"), "progress")
    progress = ProgressConfig(
        freeze_delay=_read_positive_float(
            progress_map.get("freeze_delay"), "progress.freeze_delay", default=1.5
        ),
    )

    ports_map = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        ui=_read_port(ports_map.get("ui"), "ports.ui", default=8880),
        ssh=_read_port(ports_map.get("ssh"), "ports.ssh", default=55022),
    )

    runtime_map = _as_dict(raw.get("runtime"), "runtime")
    docker_host_value = runtime_map.get("docker_host")
    if docker_host_value in (None, ""):
        docker_host_value = env.get("DOCKER_HOST") or None
    stop_timeout = _read_int(runtime_map.get("stop_timeout"), "runtime.stop_timeout", default=10)
    if stop_timeout < 0:
        raise ConfigError("runtime.stop_timeout must be non-negative.")
    runtime = RuntimeConfig(
        docker_host=str(docker_host_value).strip() if docker_host_value else None,
        stop_timeout=stop_timeout,
    )

    return AppConfig(
        config_file=config_file,
        image_repo=normalize_repo(raw.get("image_repo"), DEFAULT_IMAGE_REPO),
        release_repo=normalize_repo(raw.get("release_repo"), DEFAULT_RELEASE_REPO),
        state_dir=state_dir,
        logs_dir=logs_dir,
        registry=registry,
        releases=releases,
        health=health,
        progress=progress,
        ports=ports,
        runtime=runtime,
    )


# ---------------------------------------------------------------------------
# Value readers
# ---------------------------------------------------------------------------
def _strip_slash(value: object, default: str) -> str:
    text = str(value).strip() if value else ""
    return (text or default).rstrip("/")


def _to_path(value: object) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path, got {value!r}.")


def _read_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an integer, not a boolean ({value!r}).")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"{label} must be an integer, not {type(value).__name__}.")


def _read_port(value: object | None, label: str, *, default: int) -> int:
    port = _read_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535 (got {port}).")
    return port


def _read_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number, not a boolean ({value!r}).")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"{label} must be a number, not {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero (got {numeric}).")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping, got {type(value).__name__}.")
    bad = [key for key in value if not isinstance(key, str)]
    if bad:
        raise ConfigError(f"Mapping {label} must use string keys, got {bad[0]!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_IMAGE_REPO",
    "DEFAULT_RELEASE_REPO",
    "HealthConfig",
    "PortsConfig",
    "ProgressConfig",
    "RegistryConfig",
    "ReleasesConfig",
    "RuntimeConfig",
    "load_config",
    "normalize_repo",
]
