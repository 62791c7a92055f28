"""Container runtime port: records, ``DOCKER_HOST`` parsing, and the interface.

The orchestrator only talks to the runtime through :class:`ContainerRuntime`.
Implementations surface failures as :class:`~backendctl.errors.ContainerRuntimeError`
with a normalised :class:`~backendctl.errors.ErrorCode` instead of raw transport
errors.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import unquote, urlsplit

from ..cancellation import CancellationToken

DEFAULT_TCP_PORT = 2375

MANAGED_LABEL = "backendctl.managed"
ROLE_LABEL = "backendctl.role"
VERSION_LABEL = "backendctl.version_tag"
UI_PORT_LABEL = "backendctl.port.ui"
SSH_PORT_LABEL = "backendctl.port.ssh"

CONTAINER_UI_PORT = 80
CONTAINER_SSH_PORT = 22
BIND_ADDRESS = "127.0.0.1"

PullEventCallback = Callable[[Mapping[str, Any]], None]


@dataclass(frozen=True)
class DockerHostInfo:
    """Parsed form of a ``DOCKER_HOST`` value."""

    raw: str
    kind: str
    socket_path: str | None = None
    host: str | None = None
    port: int | None = None
    protocol: str | None = None
    error: str | None = None

    @property
    def base_url(self) -> str | None:
        """Return the docker SDK ``base_url`` (``None`` for the default socket)."""
        if self.kind == "unix":
            return f"unix://{self.socket_path}"
        if self.kind == "npipe":
            return f"npipe://{self.socket_path}"
        if self.kind in {"tcp", "http"}:
            return f"tcp://{self.host}:{self.port}"
        if self.kind == "https":
            return f"https://{self.host}:{self.port}"
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "raw": self.raw,
            "kind": self.kind,
            "socket_path": self.socket_path,
            "host": self.host,
            "port": self.port,
            "protocol": self.protocol,
            "error": self.error,
        }


def parse_docker_host(value: str | None) -> DockerHostInfo:
    """Classify *value* as ``default``, ``unix``, ``npipe``, ``tcp``, ``http(s)`` or ``invalid``."""
    raw = (value or "").strip()
    if not raw:
        return DockerHostInfo(raw="", kind="default")
    if raw.startswith("/"):
        return DockerHostInfo(raw=raw, kind="unix", socket_path=raw)

    try:
        parts = urlsplit(raw)
        scheme = parts.scheme.lower()
        if scheme == "unix":
            path = unquote(f"{parts.netloc}{parts.path}")
            if not path:
                return DockerHostInfo(raw=raw, kind="invalid", error="Missing unix socket path")
            return DockerHostInfo(raw=raw, kind="unix", socket_path=path)
        if scheme == "npipe":
            path = unquote(f"{parts.netloc}{parts.path}")
            if not path:
                return DockerHostInfo(raw=raw, kind="invalid", error="Missing npipe path")
            if path.startswith("////"):
                path = f"//{path[4:]}"
            elif not path.startswith("//"):
                path = f"//{path.lstrip('/')}"
            return DockerHostInfo(raw=raw, kind="npipe", socket_path=path)
        if scheme in {"tcp", "http", "https"}:
            host = parts.hostname or ""
            if not host:
                return DockerHostInfo(raw=raw, kind="invalid", error="Missing host")
            port = parts.port or DEFAULT_TCP_PORT
            return DockerHostInfo(
                raw=raw,
                kind=scheme,
                host=host,
                port=port,
                protocol="http" if scheme == "tcp" else scheme,
            )
    except ValueError as exc:
        return DockerHostInfo(raw=raw, kind="invalid", error=f"Failed to parse DOCKER_HOST: {exc}")
    return DockerHostInfo(
        raw=raw,
        kind="invalid",
        error=f"Unsupported DOCKER_HOST protocol: {parts.scheme or '(none)'}",
    )


@dataclass(frozen=True)
class RuntimeEnvironment:
    """Outcome of probing the container runtime."""

    available: bool
    docker_host: DockerHostInfo
    platform: str = ""
    arch: str = ""
    daemon_version: str | None = None
    diagnostic_code: str | None = None
    diagnostic_message: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "available": self.available,
            "docker_host": self.docker_host.to_dict(),
            "platform": self.platform,
            "arch": self.arch,
            "daemon_version": self.daemon_version,
            "diagnostic_code": self.diagnostic_code,
            "diagnostic_message": self.diagnostic_message,
        }


@dataclass(frozen=True)
class LocalImage:
    """A local image reference belonging to the managed repository."""

    image_ref: str
    tag: str
    image_id: str | None = None
    size_bytes: int | None = None
    created_at: datetime | None = None
    repo_digests: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "image_ref": self.image_ref,
            "tag": self.tag,
            "image_id": self.image_id,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "repo_digests": list(self.repo_digests),
        }


@dataclass(frozen=True)
class ContainerInfo:
    """A container created from the managed repository."""

    container_id: str
    name: str | None
    image_ref: str
    tag: str
    state: str | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "container_id": self.container_id,
            "name": self.name,
            "image_ref": self.image_ref,
            "tag": self.tag,
            "state": self.state,
            "status": self.status,
        }


@dataclass(frozen=True)
class VolumeInfo:
    """A runtime volume."""

    name: str
    driver: str = ""
    mountpoint: str = ""
    scope: str = ""
    created_at: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "driver": self.driver,
            "mountpoint": self.mountpoint,
            "scope": self.scope,
            "created_at": self.created_at,
            "labels": dict(self.labels),
        }


@dataclass(frozen=True)
class ContainerSpec:
    """Parameters for creating the active instance."""

    name: str
    image_ref: str
    version_tag: str
    ui_port: int
    ssh_port: int

    def labels(self) -> dict[str, str]:
        """Return the labels attached to the created container."""
        return {
            MANAGED_LABEL: "true",
            ROLE_LABEL: "active",
            VERSION_LABEL: self.version_tag,
            UI_PORT_LABEL: str(self.ui_port),
            SSH_PORT_LABEL: str(self.ssh_port),
        }

    def port_bindings(self) -> dict[int, tuple[str, int]]:
        """Return container-port to ``(host_ip, host_port)`` bindings."""
        return {
            CONTAINER_UI_PORT: (BIND_ADDRESS, self.ui_port),
            CONTAINER_SSH_PORT: (BIND_ADDRESS, self.ssh_port),
        }


PULL_COMPLETED = "completed"
PULL_ABORTED_CLIENT = "aborted_client"


@dataclass(frozen=True)
class PullResult:
    """Terminal status of an image pull."""

    image_ref: str
    status: str

    @property
    def aborted(self) -> bool:
        """Return ``True`` when the client stopped following the pull."""
        return self.status == PULL_ABORTED_CLIENT


class ContainerRuntime(Protocol):
    """Capability interface over the local container daemon."""

    def detect_environment(self) -> RuntimeEnvironment: ...

    def list_local_images(self, image_repo: str) -> list[LocalImage]: ...

    def remove_local_image(self, image_ref: str) -> None: ...

    def pull_image(
        self,
        image_ref: str,
        *,
        on_event: PullEventCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> PullResult: ...

    def list_containers(self, image_repo: str) -> list[ContainerInfo]: ...

    def create_container(self, spec: ContainerSpec) -> str: ...

    def rename_container(self, container_id: str, new_name: str) -> None: ...

    def inspect_container(self, container_id: str) -> dict[str, Any]: ...

    def start_container(self, container_id: str) -> None: ...

    def stop_container(self, container_id: str, *, timeout: int = 10) -> None: ...

    def delete_container(self, container_id: str, *, force: bool = False) -> None: ...

    def list_volumes(self) -> list[VolumeInfo]: ...

    def remove_volume(self, name: str) -> None: ...

    def prune_volumes(self) -> dict[str, Any]: ...


def split_image_ref(image_ref: str) -> tuple[str, str]:
    """Split ``repo:tag`` (or ``repo@digest``) into ``(repo, tag)``."""
    ref = (image_ref or "").strip()
    if "@" in ref:
        return ref.split("@", 1)[0], ""
    slash = ref.find("/")
    colon = ref.rfind(":")
    if colon != -1 and colon > slash:
        return ref[:colon], ref[colon + 1 :]
    return ref, ""


__all__ = [
    "BIND_ADDRESS",
    "CONTAINER_SSH_PORT",
    "CONTAINER_UI_PORT",
    "ContainerInfo",
    "ContainerRuntime",
    "ContainerSpec",
    "DockerHostInfo",
    "LocalImage",
    "MANAGED_LABEL",
    "PULL_ABORTED_CLIENT",
    "PULL_COMPLETED",
    "PullEventCallback",
    "PullResult",
    "RuntimeEnvironment",
    "VolumeInfo",
    "parse_docker_host",
    "split_image_ref",
]
