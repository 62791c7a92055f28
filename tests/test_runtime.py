"""Runtime record and ``DOCKER_HOST`` parsing tests."""
from __future__ import annotations

import pytest

from backendctl.providers.runtime import (
    MANAGED_LABEL,
    ContainerSpec,
    PullResult,
    parse_docker_host,
    split_image_ref,
)


@pytest.mark.parametrize(
    ("value", "kind", "base_url"),
    [
        (None, "default", None),
        ("  ", "default", None),
        ("/var/run/docker.sock", "unix", "unix:///var/run/docker.sock"),
        ("unix:///run/user/1000/docker.sock", "unix", "unix:///run/user/1000/docker.sock"),
        ("npipe:////./pipe/docker_engine", "npipe", "npipe:////./pipe/docker_engine"),
        ("tcp://10.0.0.5", "tcp", "tcp://10.0.0.5:2375"),
        ("https://docker.internal:2376", "https", "https://docker.internal:2376"),
    ],
)
def test_parse_docker_host_kinds(value: str | None, kind: str, base_url: str | None) -> None:
    """Each supported form is classified and maps to an SDK base URL."""
    info = parse_docker_host(value)
    assert info.kind == kind
    assert info.base_url == base_url
    assert info.error is None


@pytest.mark.parametrize(
    ("value", "message"),
    [
        ("ssh://user@host", "Unsupported DOCKER_HOST protocol: ssh"),
        ("tcp://", "Missing host"),
        ("unix://", "Missing unix socket path"),
        ("docker.sock", "Unsupported DOCKER_HOST protocol: (none)"),
    ],
)
def test_parse_docker_host_rejects_invalid_values(value: str, message: str) -> None:
    """Unsupported or incomplete values are reported as invalid."""
    info = parse_docker_host(value)
    assert info.kind == "invalid"
    assert info.error == message
    assert info.base_url is None
    assert info.to_dict()["raw"] == value


def test_tcp_protocol_is_http() -> None:
    """Plain tcp hosts speak http."""
    info = parse_docker_host("tcp://localhost:2375")
    assert info.protocol == "http"
    assert info.port == 2375


def test_container_spec_labels_and_bindings() -> None:
    """Managed containers are labelled and bound to loopback only."""
    spec = ContainerSpec(
        name="backend-active",
        image_ref="acme/backend:v1.2.0",
        version_tag="v1.2.0",
        ui_port=8880,
        ssh_port=2222,
    )
    labels = spec.labels()
    assert labels[MANAGED_LABEL] == "true"
    assert labels["backendctl.version_tag"] == "v1.2.0"
    assert labels["backendctl.port.ui"] == "8880"
    assert spec.port_bindings() == {80: ("127.0.0.1", 8880), 22: ("127.0.0.1", 2222)}


@pytest.mark.parametrize(
    ("ref", "expected"),
    [
        ("acme/backend:v1.2.0", ("acme/backend", "v1.2.0")),
        ("registry:5000/acme/backend", ("registry:5000/acme/backend", "")),
        ("registry:5000/acme/backend:main", ("registry:5000/acme/backend", "main")),
        ("acme/backend@sha256:abc", ("acme/backend", "")),
    ],
)
def test_split_image_ref(ref: str, expected: tuple[str, str]) -> None:
    """Registry ports are not mistaken for tags."""
    assert split_image_ref(ref) == expected


def test_pull_result_aborted() -> None:
    """Only the client abort status counts as aborted."""
    assert PullResult("acme/backend:v1", "aborted_client").aborted
    assert not PullResult("acme/backend:v1", "completed").aborted
