"""Docker SDK runtime adapter tests with a fake low-level client."""
from __future__ import annotations

import errno
from types import SimpleNamespace
from typing import Any

import pytest
from docker.errors import APIError, DockerException

from backendctl.cancellation import CancellationToken
from backendctl.errors import ContainerRuntimeError, ErrorCode
from backendctl.providers.docker import DockerRuntime, normalize_docker_error
from backendctl.providers.runtime import ContainerSpec, DockerHostInfo


def _api_error(status: int, message: str = "boom") -> APIError:
    response = SimpleNamespace(status_code=status, url="http://docker/v1", reason=message)
    return APIError(message, response=response)  # type: ignore[arg-type]


class _FakeApi:
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.images_payload: list[dict[str, Any]] = []
        self.containers_payload: list[dict[str, Any]] = []
        self.volumes_payload: dict[str, Any] = {"Volumes": []}
        self.pull_events: list[Any] = []
        self.errors: dict[str, BaseException] = {}
        self.create_result: Any = {"Id": "c0ffee"}

    def _record(self, method: str, /, *args: Any, **kwargs: Any) -> None:
        self.calls.append((method, args, kwargs))
        if method in self.errors:
            raise self.errors[method]

    def images(self, **kwargs: Any) -> list[dict[str, Any]]:
        self._record("images", **kwargs)
        return self.images_payload

    def remove_image(self, ref: str, **kwargs: Any) -> None:
        self._record("remove_image", ref, **kwargs)

    def pull(self, repo: str, **kwargs: Any) -> Any:
        self._record("pull", repo, **kwargs)
        return iter(self.pull_events)

    def containers(self, **kwargs: Any) -> list[dict[str, Any]]:
        self._record("containers", **kwargs)
        return self.containers_payload

    def create_host_config(self, **kwargs: Any) -> dict[str, Any]:
        self._record("create_host_config", **kwargs)
        return {"PortBindings": kwargs.get("port_bindings")}

    def create_container(self, **kwargs: Any) -> Any:
        self._record("create_container", **kwargs)
        return self.create_result

    def rename(self, container_id: str, name: str) -> None:
        self._record("rename", container_id, name)

    def inspect_container(self, container_id: str) -> dict[str, Any]:
        self._record("inspect_container", container_id)
        return {"Id": container_id}

    def start(self, container_id: str) -> None:
        self._record("start", container_id)

    def stop(self, container_id: str, **kwargs: Any) -> None:
        self._record("stop", container_id, **kwargs)

    def remove_container(self, container_id: str, **kwargs: Any) -> None:
        self._record("remove_container", container_id, **kwargs)

    def volumes(self) -> dict[str, Any]:
        self._record("volumes")
        return self.volumes_payload

    def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)

    def prune_volumes(self) -> dict[str, Any]:
        self._record("prune_volumes")
        return {"VolumesDeleted": ["old"], "SpaceReclaimed": 10}


class _FakeClient:
    def __init__(self, api: _FakeApi) -> None:
        self.api = api
        self.closed = False
        self.ping_error: BaseException | None = None
        self.version_payload: Any = {"Version": "27.0.1"}

    def ping(self) -> bool:
        if self.ping_error is not None:
            raise self.ping_error
        return True

    def version(self) -> Any:
        return self.version_payload

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_api() -> _FakeApi:
    return _FakeApi()


@pytest.fixture()
def fake_client(fake_api: _FakeApi) -> _FakeClient:
    return _FakeClient(fake_api)


@pytest.fixture()
def runtime(fake_client: _FakeClient) -> DockerRuntime:
    created: list[tuple[DockerHostInfo, float]] = []

    def _factory(host: DockerHostInfo, timeout: float) -> _FakeClient:
        created.append((host, timeout))
        return fake_client

    return DockerRuntime("unix:///var/run/docker.sock", client_factory=_factory)


def test_detect_environment_reports_daemon_version(runtime: DockerRuntime, fake_client: _FakeClient) -> None:
    """A successful ping yields an available environment and closes the probe client."""
    env = runtime.detect_environment()
    assert env.available
    assert env.daemon_version == "27.0.1"
    assert env.docker_host.kind == "unix"
    assert fake_client.closed


def test_detect_environment_maps_permission_errors(runtime: DockerRuntime, fake_client: _FakeClient) -> None:
    """Socket permission failures become PERMISSION_DENIED without raising."""
    fake_client.ping_error = DockerException(PermissionError(errno.EACCES, "Permission denied"))
    env = runtime.detect_environment()
    assert not env.available
    assert env.diagnostic_code == ErrorCode.PERMISSION_DENIED.value


def test_invalid_docker_host_is_reported() -> None:
    """An invalid DOCKER_HOST is a diagnostic for probes and an error for calls."""
    runtime = DockerRuntime("ssh://box", client_factory=lambda host, timeout: pytest.fail("no client"))
    env = runtime.detect_environment()
    assert env.diagnostic_code == ErrorCode.INVALID_DOCKER_HOST.value

    with pytest.raises(ContainerRuntimeError) as excinfo:
        runtime.list_containers("acme/backend")
    assert excinfo.value.code is ErrorCode.INVALID_DOCKER_HOST


def test_list_local_images_filters_repo(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """Only references of the managed repository are returned, one per tag."""
    fake_api.images_payload = [
        {
            "Id": "sha256:one",
            "RepoTags": ["acme/backend:v1.2.0", "acme/backend:latest", "other/app:v1"],
            "RepoDigests": ["acme/backend@sha256:abc"],
            "Size": 300,
            "Created": 1_700_000_000,
        },
        {"Id": "sha256:two", "RepoTags": None},
    ]
    images = runtime.list_local_images("acme/backend")
    assert [image.tag for image in images] == ["v1.2.0", "latest"]
    assert images[0].size_bytes == 300
    assert images[0].repo_digests == ("acme/backend@sha256:abc",)
    assert images[0].created_at is not None


def test_list_containers_strips_names(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """Containers of other images are skipped and names lose their slash."""
    fake_api.containers_payload = [
        {"Id": "abc", "Names": ["/backend-active"], "Image": "acme/backend:v1.2.0", "State": "running"},
        {"Id": "def", "Names": ["/db"], "Image": "postgres:16"},
    ]
    containers = runtime.list_containers("acme/backend")
    assert len(containers) == 1
    assert containers[0].name == "backend-active"
    assert containers[0].tag == "v1.2.0"
    assert containers[0].state == "running"


def test_create_container_passes_bindings_and_labels(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """The created container exposes both ports on loopback."""
    spec = ContainerSpec("backend-active", "acme/backend:v1.2.0", "v1.2.0", 8880, 2222)
    assert runtime.create_container(spec) == "c0ffee"
    _, _, host_kwargs = fake_api.calls[0]
    assert host_kwargs["port_bindings"] == {80: ("127.0.0.1", 8880), 22: ("127.0.0.1", 2222)}
    method, _, create_kwargs = fake_api.calls[1]
    assert method == "create_container"
    assert create_kwargs["name"] == "backend-active"
    assert create_kwargs["image"] == "acme/backend:v1.2.0"
    assert create_kwargs["ports"] == [80, 22]
    assert create_kwargs["labels"]["backendctl.managed"] == "true"


def test_create_container_without_id_fails(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """A daemon answer without an id is a CREATE_FAILED error."""
    fake_api.create_result = {}
    spec = ContainerSpec("backend-active", "acme/backend:v1.2.0", "v1.2.0", 8880, 2222)
    with pytest.raises(ContainerRuntimeError) as excinfo:
        runtime.create_container(spec)
    assert excinfo.value.code is ErrorCode.CREATE_FAILED


@pytest.mark.parametrize(("status", "code"), [(404, ErrorCode.NOT_FOUND), (409, ErrorCode.CONFLICT), (500, ErrorCode.DOCKER_ERROR)])
def test_api_errors_are_normalised(runtime: DockerRuntime, fake_api: _FakeApi, status: int, code: ErrorCode) -> None:
    """HTTP status codes from the daemon map to error codes."""
    fake_api.errors["rename"] = _api_error(status)
    with pytest.raises(ContainerRuntimeError) as excinfo:
        runtime.rename_container("abc", "new-name")
    assert excinfo.value.code is code
    assert excinfo.value.details["status_code"] == status


def test_normalize_connection_refused() -> None:
    """Transport errors are classified from errno or message text."""
    refused = normalize_docker_error(ConnectionRefusedError(errno.ECONNREFUSED, "refused"), op="ping")
    assert refused.code is ErrorCode.DAEMON_UNAVAILABLE
    missing = normalize_docker_error(DockerException("No such file or directory"), op="ping")
    assert missing.code is ErrorCode.DOCKER_NOT_FOUND
    other = normalize_docker_error(DockerException(""), op="ping")
    assert other.code is ErrorCode.DOCKER_ERROR
    assert other.message == "Docker operation failed"


def test_pull_forwards_events(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """Decoded events reach the callback and the pull completes."""
    fake_api.pull_events = [{"status": "Pulling fs layer", "id": "aaaaaaaaaaaa"}, "noise", {"status": "Done"}]
    seen: list[object] = []
    result = runtime.pull_image("acme/backend:v1.2.0", on_event=seen.append)
    assert result.status == "completed"
    assert len(seen) == 2
    _, args, kwargs = fake_api.calls[0]
    assert args == ("acme/backend",)
    assert kwargs == {"tag": "v1.2.0", "stream": True, "decode": True}


def test_pull_error_event_raises(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """An error line in the stream fails the pull."""
    fake_api.pull_events = [{"error": "manifest for acme/backend:v9 not found"}]
    with pytest.raises(ContainerRuntimeError) as excinfo:
        runtime.pull_image("acme/backend:v9")
    assert excinfo.value.code is ErrorCode.NOT_FOUND


def test_pull_stops_following_when_cancelled(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """A cancelled token aborts the client side of the pull."""
    token = CancellationToken()
    fake_api.pull_events = [{"status": "Downloading", "id": "aaaaaaaaaaaa"}] * 3

    def _cancel(event: object) -> None:
        token.cancel("user")

    result = runtime.pull_image("acme/backend:v1.2.0", on_event=_cancel, cancel=token)
    assert result.aborted


def test_callback_failures_do_not_abort_pull(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """A broken progress callback is logged and ignored."""
    fake_api.pull_events = [{"status": "Downloading"}]

    def _broken(event: object) -> None:
        raise RuntimeError("render bug")

    assert runtime.pull_image("acme/backend:v1.2.0", on_event=_broken).status == "completed"


def test_volume_operations(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """Volumes are listed, removed, and pruned through the low-level API."""
    fake_api.volumes_payload = {
        "Volumes": [{"Name": "data", "Driver": "local", "Labels": None, "CreatedAt": "2026-01-01T00:00:00Z"}]
    }
    volumes = runtime.list_volumes()
    assert volumes[0].name == "data"
    assert volumes[0].labels == {}
    runtime.remove_volume("data")
    assert runtime.prune_volumes()["SpaceReclaimed"] == 10
    assert [call[0] for call in fake_api.calls] == ["volumes", "remove_volume", "prune_volumes"]


def test_stop_and_delete_arguments(runtime: DockerRuntime, fake_api: _FakeApi, fake_client: _FakeClient) -> None:
    """Stop uses a grace timeout and delete forwards force; close releases the client."""
    runtime.stop_container("abc", timeout=5)
    runtime.delete_container("abc", force=True)
    assert fake_api.calls[0] == ("stop", ("abc",), {"timeout": 5})
    assert fake_api.calls[1] == ("remove_container", ("abc",), {"force": True})
    runtime.close()
    assert fake_client.closed


def test_remove_local_image_forces_removal(runtime: DockerRuntime, fake_api: _FakeApi) -> None:
    """Image removal forces the delete and normalises daemon conflicts."""
    runtime.remove_local_image("acme/backend:v1")
    assert fake_api.calls[-1] == ("remove_image", ("acme/backend:v1",), {"force": True})
    fake_api.errors["remove_image"] = _api_error(409)
    with pytest.raises(ContainerRuntimeError) as excinfo:
        runtime.remove_local_image("acme/backend:v1")
    assert excinfo.value.code is ErrorCode.CONFLICT
