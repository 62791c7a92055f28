"""Container runtime port backed by the Docker SDK for Python.

All calls go through the low-level ``client.api`` so the raw daemon payloads
(``RepoTags``, ``RepoDigests``, ``Names`` ...) are visible. Every failure is
normalised into :class:`~backendctl.errors.ContainerRuntimeError`.
"""
from __future__ import annotations

import errno
import logging
import platform
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

import docker
from docker.errors import APIError, DockerException

from ..cancellation import CancellationToken, is_cancelled
from ..errors import ContainerRuntimeError, ErrorCode, ServiceVersionsError
from .runtime import (
    CONTAINER_SSH_PORT,
    CONTAINER_UI_PORT,
    PULL_ABORTED_CLIENT,
    PULL_COMPLETED,
    ContainerInfo,
    ContainerSpec,
    DockerHostInfo,
    LocalImage,
    PullEventCallback,
    PullResult,
    RuntimeEnvironment,
    VolumeInfo,
    parse_docker_host,
    split_image_ref,
)

LOGGER = logging.getLogger(__name__)

PROBE_TIMEOUT = 1.5
DEFAULT_TIMEOUT = 120

_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM}
_MISSING_ERRNOS = {errno.ENOENT}
_UNREACHABLE_ERRNOS = {errno.ECONNREFUSED, errno.EHOSTUNREACH}

ClientFactory = Callable[[DockerHostInfo, float], Any]


def _default_client_factory(host: DockerHostInfo, timeout: float) -> Any:
    kwargs: dict[str, Any] = {"timeout": timeout}
    if host.base_url:
        kwargs["base_url"] = host.base_url
    return docker.DockerClient(**kwargs)


def _iter_error_chain(error: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    pending: list[BaseException] = [error]
    while pending:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for linked in (current.__cause__, current.__context__):
            if isinstance(linked, BaseException):
                pending.append(linked)
        for arg in getattr(current, "args", ()):
            if isinstance(arg, BaseException):
                pending.append(arg)


def _errno_code(error: BaseException) -> ErrorCode | None:
    for item in _iter_error_chain(error):
        if not isinstance(item, OSError) or item.errno is None:
            continue
        if item.errno in _PERMISSION_ERRNOS:
            return ErrorCode.PERMISSION_DENIED
        if item.errno in _MISSING_ERRNOS:
            return ErrorCode.DOCKER_NOT_FOUND
        if item.errno in _UNREACHABLE_ERRNOS:
            return ErrorCode.DAEMON_UNAVAILABLE
    return None


def _message_code(text: str) -> ErrorCode | None:
    lowered = text.lower()
    if "permission denied" in lowered:
        return ErrorCode.PERMISSION_DENIED
    if "no such file or directory" in lowered:
        return ErrorCode.DOCKER_NOT_FOUND
    if "connection refused" in lowered or "no route to host" in lowered:
        return ErrorCode.DAEMON_UNAVAILABLE
    return None


def normalize_docker_error(error: BaseException, *, op: str, **context: object) -> ServiceVersionsError:
    """Map a docker SDK (or transport) failure to a :class:`ContainerRuntimeError`."""
    if isinstance(error, ServiceVersionsError):
        return error
    details: dict[str, object] = {"op": op, **context, "exception": type(error).__name__}
    status = getattr(error, "status_code", None)
    if isinstance(error, APIError) and status is not None:
        details["status_code"] = status
        if status == 404:
            return ContainerRuntimeError(ErrorCode.NOT_FOUND, str(error), details=details)
        if status == 409:
            return ContainerRuntimeError(ErrorCode.CONFLICT, str(error), details=details)
        return ContainerRuntimeError(ErrorCode.DOCKER_ERROR, str(error), details=details)

    code = _errno_code(error) or _message_code(str(error))
    if code is ErrorCode.PERMISSION_DENIED:
        return ContainerRuntimeError(code, "Permission denied accessing Docker", details=details)
    if code is ErrorCode.DOCKER_NOT_FOUND:
        return ContainerRuntimeError(code, "Docker is not installed or not available", details=details)
    if code is ErrorCode.DAEMON_UNAVAILABLE:
        return ContainerRuntimeError(code, "Docker daemon is not reachable", details=details)
    return ContainerRuntimeError(
        ErrorCode.DOCKER_ERROR,
        str(error) or "Docker operation failed",
        details=details,
    )


def _close_quietly(client: Any) -> None:
    close = getattr(client, "close", None)
    if not callable(close):
        return
    try:
        close()
    except (DockerException, OSError) as exc:
        LOGGER.debug("Ignoring docker client close failure: %s", exc)


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


class DockerRuntime:
    """:class:`~backendctl.providers.runtime.ContainerRuntime` over the Docker SDK."""

    def __init__(
        self,
        docker_host: str | DockerHostInfo | None = None,
        *,
        client_factory: ClientFactory | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if isinstance(docker_host, DockerHostInfo):
            self._host = docker_host
        else:
            self._host = parse_docker_host(docker_host)
        self._client_factory = client_factory or _default_client_factory
        self._timeout = timeout
        self._client: Any = None

    @property
    def docker_host(self) -> DockerHostInfo:
        """Return the parsed ``DOCKER_HOST``."""
        return self._host

    def close(self) -> None:
        """Release the cached SDK client."""
        client, self._client = self._client, None
        _close_quietly(client)

    def _api(self, op: str) -> Any:
        if self._host.kind == "invalid":
            raise ContainerRuntimeError(
                ErrorCode.INVALID_DOCKER_HOST,
                self._host.error or "Invalid DOCKER_HOST",
                details={"op": op, "docker_host": self._host.raw},
            )
        if self._client is None:
            try:
                self._client = self._client_factory(self._host, self._timeout)
            except (DockerException, OSError) as exc:
                raise normalize_docker_error(exc, op=op) from exc
        return self._client.api

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------
    def detect_environment(self) -> RuntimeEnvironment:
        """Ping the daemon and report availability without raising."""
        base = {
            "docker_host": self._host,
            "platform": platform.system().lower(),
            "arch": platform.machine().lower(),
        }
        if self._host.kind == "invalid":
            return RuntimeEnvironment(
                available=False,
                diagnostic_code=ErrorCode.INVALID_DOCKER_HOST.value,
                diagnostic_message=self._host.error or "Invalid DOCKER_HOST",
                **base,
            )
        client: Any = None
        try:
            client = self._client_factory(self._host, PROBE_TIMEOUT)
            client.ping()
        except (DockerException, OSError) as exc:
            _close_quietly(client)
            normalized = normalize_docker_error(exc, op="ping")
            return RuntimeEnvironment(
                available=False,
                diagnostic_code=normalized.code.value,
                diagnostic_message=normalized.message,
                **base,
            )
        daemon_version: str | None = None
        try:
            version = client.version()
        except (DockerException, OSError) as exc:
            LOGGER.debug("Docker version query failed: %s", exc)
        else:
            value = version.get("Version") if isinstance(version, dict) else None
            daemon_version = value if isinstance(value, str) else None
        finally:
            _close_quietly(client)
        return RuntimeEnvironment(available=True, daemon_version=daemon_version, **base)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def list_local_images(self, image_repo: str) -> list[LocalImage]:
        """Return one record per ``repo:tag`` reference of *image_repo*."""
        repo = (image_repo or "").strip()
        api = self._api("list_local_images")
        try:
            images = api.images(all=True) or []
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="list_local_images", repo=repo) from exc

        prefix = f"{repo}:"
        results: list[LocalImage] = []
        for image in images:
            repo_tags = image.get("RepoTags") or []
            repo_digests = tuple(d for d in image.get("RepoDigests") or [] if isinstance(d, str))
            created = _as_int(image.get("Created"))
            for ref in repo_tags:
                if not isinstance(ref, str) or not ref.startswith(prefix):
                    continue
                results.append(
                    LocalImage(
                        image_ref=ref,
                        tag=ref[len(prefix) :],
                        image_id=image.get("Id") if isinstance(image.get("Id"), str) else None,
                        size_bytes=_as_int(image.get("Size")),
                        created_at=datetime.fromtimestamp(created, UTC) if created else None,
                        repo_digests=repo_digests,
                    )
                )
        return results

    def remove_local_image(self, image_ref: str) -> None:
        """Force-remove a local image reference."""
        api = self._api("remove_local_image")
        try:
            api.remove_image(image_ref, force=True)
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="remove_local_image", image_ref=image_ref) from exc

    def pull_image(
        self,
        image_ref: str,
        *,
        on_event: PullEventCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> PullResult:
        """Pull *image_ref*, forwarding every decoded progress event to *on_event*.

        Cancellation only stops this client from following the stream; the
        daemon may finish the transfer on its own.
        """
        repo, tag = split_image_ref(image_ref)
        api = self._api("pull_image")
        if is_cancelled(cancel):
            return PullResult(image_ref=image_ref, status=PULL_ABORTED_CLIENT)
        try:
            stream = api.pull(repo, tag=tag or None, stream=True, decode=True)
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="pull_image", image_ref=image_ref) from exc

        try:
            for event in stream:
                if is_cancelled(cancel):
                    return PullResult(image_ref=image_ref, status=PULL_ABORTED_CLIENT)
                if not isinstance(event, dict):
                    continue
                if event.get("error"):
                    message = str(event.get("error"))
                    code = ErrorCode.NOT_FOUND if "not found" in message.lower() else ErrorCode.DOCKER_ERROR
                    raise ContainerRuntimeError(
                        code,
                        message,
                        details={"op": "pull_image", "image_ref": image_ref},
                    )
                if on_event is not None:
                    try:
                        on_event(event)
                    except Exception:  # noqa: BLE001
                        LOGGER.exception("Pull progress callback failed for %s", image_ref)
            if is_cancelled(cancel):
                return PullResult(image_ref=image_ref, status=PULL_ABORTED_CLIENT)
        except (DockerException, OSError) as exc:
            if is_cancelled(cancel):
                return PullResult(image_ref=image_ref, status=PULL_ABORTED_CLIENT)
            raise normalize_docker_error(exc, op="pull_image", image_ref=image_ref) from exc
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()
        return PullResult(image_ref=image_ref, status=PULL_COMPLETED)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    def list_containers(self, image_repo: str) -> list[ContainerInfo]:
        """Return all containers (running or not) created from *image_repo*."""
        repo = (image_repo or "").strip()
        api = self._api("list_containers")
        try:
            containers = api.containers(all=True) or []
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="list_containers", repo=repo) from exc

        prefix = f"{repo}:"
        results: list[ContainerInfo] = []
        for item in containers:
            image = item.get("Image") if isinstance(item.get("Image"), str) else ""
            if not image.startswith(prefix):
                continue
            names = item.get("Names") or []
            name = names[0].lstrip("/") if names and isinstance(names[0], str) else None
            results.append(
                ContainerInfo(
                    container_id=str(item.get("Id") or ""),
                    name=name,
                    image_ref=image,
                    tag=image[len(prefix) :],
                    state=item.get("State") or None,
                    status=item.get("Status") or None,
                )
            )
        return results

    def create_container(self, spec: ContainerSpec) -> str:
        """Create the active instance and return its id."""
        api = self._api("create_container")
        try:
            host_config = api.create_host_config(port_bindings=spec.port_bindings())
            created = api.create_container(
                image=spec.image_ref,
                name=spec.name,
                ports=[CONTAINER_UI_PORT, CONTAINER_SSH_PORT],
                labels=spec.labels(),
                host_config=host_config,
            )
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="create_container", name=spec.name) from exc
        container_id = created.get("Id") if isinstance(created, dict) else None
        if not isinstance(container_id, str) or not container_id:
            raise ContainerRuntimeError(
                ErrorCode.CREATE_FAILED,
                "Docker did not return a container id",
                details={"op": "create_container", "name": spec.name},
            )
        return container_id

    def rename_container(self, container_id: str, new_name: str) -> None:
        """Rename a container."""
        api = self._api("rename_container")
        try:
            api.rename(container_id, new_name)
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(
                exc, op="rename_container", container_id=container_id, name=new_name
            ) from exc

    def inspect_container(self, container_id: str) -> dict[str, Any]:
        """Return the daemon's inspect payload."""
        api = self._api("inspect_container")
        try:
            return dict(api.inspect_container(container_id))
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="inspect_container", container_id=container_id) from exc

    def start_container(self, container_id: str) -> None:
        """Start a container."""
        api = self._api("start_container")
        try:
            api.start(container_id)
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="start_container", container_id=container_id) from exc

    def stop_container(self, container_id: str, *, timeout: int = 10) -> None:
        """Stop a container, waiting up to *timeout* seconds before killing it."""
        api = self._api("stop_container")
        try:
            api.stop(container_id, timeout=timeout)
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="stop_container", container_id=container_id) from exc

    def delete_container(self, container_id: str, *, force: bool = False) -> None:
        """Remove a container."""
        api = self._api("delete_container")
        try:
            api.remove_container(container_id, force=force)
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="delete_container", container_id=container_id) from exc

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------
    def list_volumes(self) -> list[VolumeInfo]:
        """Return all volumes known to the daemon."""
        api = self._api("list_volumes")
        try:
            payload = api.volumes() or {}
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="list_volumes") from exc
        volumes: list[VolumeInfo] = []
        for item in payload.get("Volumes") or []:
            labels = item.get("Labels")
            volumes.append(
                VolumeInfo(
                    name=str(item.get("Name") or ""),
                    driver=str(item.get("Driver") or ""),
                    mountpoint=str(item.get("Mountpoint") or ""),
                    scope=str(item.get("Scope") or ""),
                    created_at=item.get("CreatedAt") if isinstance(item.get("CreatedAt"), str) else None,
                    labels=dict(labels) if isinstance(labels, dict) else {},
                )
            )
        return volumes

    def remove_volume(self, name: str) -> None:
        """Remove a named volume."""
        api = self._api("remove_volume")
        try:
            api.remove_volume(name)
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="remove_volume", volume=name) from exc

    def prune_volumes(self) -> dict[str, Any]:
        """Prune unused volumes and return the daemon's report."""
        api = self._api("prune_volumes")
        try:
            result = api.prune_volumes()
        except (DockerException, OSError) as exc:
            raise normalize_docker_error(exc, op="prune_volumes") from exc
        return dict(result or {})


__all__ = ["DockerRuntime", "normalize_docker_error"]
