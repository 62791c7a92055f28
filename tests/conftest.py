"""Pytest configuration helpers and in-memory collaborators for the test suite."""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import pytest

from backendctl.cancellation import CancellationToken, is_cancelled
from backendctl.config import AppConfig, load_config
from backendctl.errors import ContainerRuntimeError, ErrorCode, RegistryError
from backendctl.orchestrator import ServiceVersionsOrchestrator
from backendctl.providers.registry import LayerSizes, Platform, RemoteDigest
from backendctl.providers.releases import Release, ReleaseCatalog
from backendctl.providers.runtime import (
    PULL_ABORTED_CLIENT,
    PULL_COMPLETED,
    ContainerInfo,
    ContainerSpec,
    LocalImage,
    PullResult,
    RuntimeEnvironment,
    VolumeInfo,
    parse_docker_host,
)
from backendctl.retention import active_container_name, retained_container_name
from backendctl.state import StateRegistry

IMAGE_REPO = "acme/backend"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


# ---------------------------------------------------------------------------
# Fake container runtime
# ---------------------------------------------------------------------------
class FakeRuntime:
    """In-memory container runtime that enforces unique container names."""

    def __init__(self, image_repo: str = IMAGE_REPO) -> None:
        self.image_repo = image_repo
        self.available = True
        self.images: list[LocalImage] = []
        self.containers: dict[str, ContainerInfo] = {}
        self.ports: dict[str, int] = {}
        self.volumes: list[VolumeInfo] = []
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.failures: dict[str, Exception] = {}
        self.pull_events: list[dict[str, Any]] = []
        self.pull_gate: threading.Event | None = None
        self.pull_started = threading.Event()
        self._counter = 0
        self._lock = threading.Lock()

    # Helpers ------------------------------------------------------------
    def _record(self, method: str, *args: object) -> None:
        self.calls.append((method, args))
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def calls_to(self, method: str) -> list[tuple[object, ...]]:
        return [args for name, args in self.calls if name == method]

    def _next_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f"{self._counter:02d}" + "ab" * 31

    def add_image(self, tag: str, *, size: int = 100, digest: str | None = None) -> LocalImage:
        image = LocalImage(
            image_ref=f"{self.image_repo}:{tag}",
            tag=tag,
            image_id=f"sha256:{tag}-id",
            size_bytes=size,
            repo_digests=(f"{self.image_repo}@{digest}",) if digest else (),
        )
        self.images.append(image)
        return image

    def add_container(
        self,
        tag: str,
        *,
        name: str | None = None,
        state: str = "running",
        ui_port: int = 8880,
    ) -> str:
        container_id = self._next_id()
        self.containers[container_id] = ContainerInfo(
            container_id=container_id,
            name=name or active_container_name(self.image_repo),
            image_ref=f"{self.image_repo}:{tag}",
            tag=tag,
            state=state,
        )
        self.ports[container_id] = ui_port
        return container_id

    def add_retained(self, tag: str, retained_at: datetime, *, state: str = "exited") -> str:
        return self.add_container(
            tag,
            name=retained_container_name(self.image_repo, tag, retained_at),
            state=state,
        )

    def by_name(self, name: str) -> ContainerInfo | None:
        for container in self.containers.values():
            if container.name == name:
                return container
        return None

    @property
    def active(self) -> ContainerInfo | None:
        return self.by_name(active_container_name(self.image_repo))

    def _require(self, container_id: str) -> ContainerInfo:
        container = self.containers.get(container_id)
        if container is None:
            raise ContainerRuntimeError(ErrorCode.NOT_FOUND, f"No such container: {container_id}")
        return container

    def _ensure_unique_name(self, name: str, container_id: str | None = None) -> None:
        for other in self.containers.values():
            if other.name == name and other.container_id != container_id:
                raise ContainerRuntimeError(ErrorCode.CONFLICT, f"Conflict. The name {name} is in use")

    # ContainerRuntime ---------------------------------------------------
    def detect_environment(self) -> RuntimeEnvironment:
        self._record("detect_environment")
        if not self.available:
            return RuntimeEnvironment(
                available=False,
                docker_host=parse_docker_host(None),
                diagnostic_code=ErrorCode.DAEMON_UNAVAILABLE.value,
                diagnostic_message="Cannot connect to the Docker daemon",
            )
        return RuntimeEnvironment(available=True, docker_host=parse_docker_host(None))

    def list_local_images(self, image_repo: str) -> list[LocalImage]:
        self._record("list_local_images", image_repo)
        return [image for image in self.images if image.image_ref.startswith(f"{image_repo}:")]

    def remove_local_image(self, image_ref: str) -> None:
        self._record("remove_local_image", image_ref)
        self.images = [image for image in self.images if image.image_ref != image_ref]

    def pull_image(
        self,
        image_ref: str,
        *,
        on_event: Callable[[Mapping[str, Any]], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> PullResult:
        self._record("pull_image", image_ref)
        self.pull_started.set()
        if self.pull_gate is not None:
            while not self.pull_gate.wait(0.01):
                if is_cancelled(cancel):
                    return PullResult(image_ref=image_ref, status=PULL_ABORTED_CLIENT)
        for event in self.pull_events:
            if is_cancelled(cancel):
                return PullResult(image_ref=image_ref, status=PULL_ABORTED_CLIENT)
            if on_event is not None:
                on_event(event)
        if is_cancelled(cancel):
            return PullResult(image_ref=image_ref, status=PULL_ABORTED_CLIENT)
        tag = image_ref.rsplit(":", 1)[1]
        if not any(image.image_ref == image_ref for image in self.images):
            self.add_image(tag)
        return PullResult(image_ref=image_ref, status=PULL_COMPLETED)

    def list_containers(self, image_repo: str) -> list[ContainerInfo]:
        self._record("list_containers", image_repo)
        return [
            container
            for container in self.containers.values()
            if container.image_ref.startswith(f"{image_repo}:")
        ]

    def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec)
        self._ensure_unique_name(spec.name)
        container_id = self._next_id()
        self.containers[container_id] = ContainerInfo(
            container_id=container_id,
            name=spec.name,
            image_ref=spec.image_ref,
            tag=spec.version_tag,
            state="created",
        )
        self.ports[container_id] = spec.ui_port
        return container_id

    def rename_container(self, container_id: str, new_name: str) -> None:
        self._record("rename_container", container_id, new_name)
        container = self._require(container_id)
        self._ensure_unique_name(new_name, container_id)
        self.containers[container_id] = replace(container, name=new_name)

    def inspect_container(self, container_id: str) -> dict[str, Any]:
        self._record("inspect_container", container_id)
        self._require(container_id)
        port = self.ports.get(container_id, 8880)
        return {
            "Id": container_id,
            "NetworkSettings": {
                "Ports": {
                    "80/tcp": [{"HostIp": "127.0.0.1", "HostPort": str(port)}],
                    "22/tcp": [{"HostIp": "127.0.0.1", "HostPort": "55022"}],
                }
            },
        }

    def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        container = self._require(container_id)
        self.containers[container_id] = replace(container, state="running")

    def stop_container(self, container_id: str, *, timeout: int = 10) -> None:
        self._record("stop_container", container_id)
        container = self._require(container_id)
        self.containers[container_id] = replace(container, state="exited")

    def delete_container(self, container_id: str, *, force: bool = False) -> None:
        self._record("delete_container", container_id)
        container = self._require(container_id)
        if container.state == "running" and not force:
            raise ContainerRuntimeError(ErrorCode.CONFLICT, "You cannot remove a running container")
        del self.containers[container_id]

    def list_volumes(self) -> list[VolumeInfo]:
        self._record("list_volumes")
        return list(self.volumes)

    def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        self.volumes = [volume for volume in self.volumes if volume.name != name]

    def prune_volumes(self) -> dict[str, Any]:
        self._record("prune_volumes")
        deleted = [volume.name for volume in self.volumes]
        self.volumes = []
        return {"VolumesDeleted": deleted, "SpaceReclaimed": 0}


# ---------------------------------------------------------------------------
# Fake registry, release catalog, and health poller
# ---------------------------------------------------------------------------
class FakeRegistry:
    """Registry double answering from dictionaries."""

    def __init__(self) -> None:
        self.tags: list[str] | None = None
        self.digests: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.layer_sizes: dict[str, LayerSizes] = {}
        self.calls: list[tuple[str, str]] = []

    def publish(self, *tags: str) -> None:
        for tag in tags:
            self.digests[tag] = f"sha256:{tag.encode().hex():0<64}"[:71]

    def list_tags(self, repo: str, *, cancel: CancellationToken | None = None) -> list[str]:
        self.calls.append(("list_tags", repo))
        if self.tags is None:
            raise RegistryError(ErrorCode.REGISTRY_ERROR, "tags unavailable")
        return list(self.tags)

    def get_digest(
        self,
        repo: str,
        tag: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> RemoteDigest:
        self.calls.append(("get_digest", tag))
        error = self.errors.get(tag)
        if error is not None:
            raise error
        digest = self.digests.get(tag)
        if digest is None:
            return RemoteDigest(exists=False)
        return RemoteDigest(
            exists=True,
            digest=digest,
            content_type="application/vnd.oci.image.index.v1+json",
        )

    def get_layer_sizes(
        self,
        repo: str,
        tag: str,
        platform: Platform | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> LayerSizes:
        self.calls.append(("get_layer_sizes", tag))
        error = self.errors.get(tag)
        if error is not None:
            raise error
        return self.layer_sizes.get(tag, LayerSizes(exists=tag in self.digests))

    def probes(self, method: str = "get_digest") -> list[str]:
        return [tag for name, tag in self.calls if name == method]

    def close(self) -> None:
        return None


class FakeReleases:
    """Release catalog double."""

    def __init__(self, *tags: str) -> None:
        self.releases = tuple(Release(tag=tag, published_at="2026-01-01T00:00:00Z") for tag in tags)
        self.error: Exception | None = None
        self.offline = False
        self.calls: list[bool] = []

    def list_official_releases(self, repo: str, *, force_refresh: bool = False) -> ReleaseCatalog:
        self.calls.append(force_refresh)
        if self.error is not None:
            raise self.error
        return ReleaseCatalog(
            releases=self.releases,
            offline=self.offline,
            last_synced_at="2026-01-01T00:00:00+00:00",
        )

    def close(self) -> None:
        return None


@dataclass
class FakeHealth:
    """Health poller double; ``ready`` decides the outcome of every wait."""

    ready: bool = True
    waits: list[tuple[str, int]] = field(default_factory=list)
    transport: httpx.BaseTransport = field(
        default_factory=lambda: httpx.MockTransport(lambda request: httpx.Response(200))
    )

    def wait_for_http_port(
        self,
        host: str,
        port: int,
        *,
        on_tick: Callable[[int], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> bool:
        self.waits.append((host, port))
        if on_tick is not None:
            on_tick(0)
            on_tick(3)
        return self.ready


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
class FrozenClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def fake_releases() -> FakeReleases:
    return FakeReleases("v1.3.0", "v1.2.0")


@pytest.fixture
def fake_health() -> FakeHealth:
    return FakeHealth()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "image_repo": IMAGE_REPO,
            "release_repo": IMAGE_REPO,
            "state_dir": str(tmp_path / "state"),
        },
    )


@pytest.fixture
def state_registry(app_config: AppConfig) -> StateRegistry:
    registry = StateRegistry(app_config.state_dir)
    registry.ensure_root()
    return registry


@pytest.fixture
def make_orchestrator(
    app_config: AppConfig,
    state_registry: StateRegistry,
    fake_runtime: FakeRuntime,
    fake_registry: FakeRegistry,
    fake_releases: FakeReleases,
    fake_health: FakeHealth,
    clock: FrozenClock,
) -> Iterator[Callable[..., ServiceVersionsOrchestrator]]:
    created: list[ServiceVersionsOrchestrator] = []

    def _make(**kwargs: Any) -> ServiceVersionsOrchestrator:
        options: dict[str, Any] = {
            "runtime": fake_runtime,
            "registry_client": fake_registry,
            "releases": fake_releases,
            "state": state_registry,
            "health": fake_health,
            "clock": clock,
            "warmup": False,
        }
        options.update(kwargs)
        orchestrator = ServiceVersionsOrchestrator(app_config, **options)
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.close()
