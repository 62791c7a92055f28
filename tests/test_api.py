"""Request/response boundary tests."""
from __future__ import annotations

from typing import Any

import pytest

from backendctl.api import REQUEST_FIELDS, ServiceVersionsApi
from backendctl.providers.runtime import VolumeInfo


@pytest.fixture()
def api(make_orchestrator: Any) -> ServiceVersionsApi:
    return ServiceVersionsApi(make_orchestrator())


def test_every_request_has_a_method() -> None:
    """Each whitelisted request maps to a public method."""
    for name in REQUEST_FIELDS:
        assert callable(getattr(ServiceVersionsApi, name))


def test_get_state_success_envelope(api: ServiceVersionsApi) -> None:
    """Queries return the versioned state inside an ok envelope."""
    response = api.get_state()
    assert response["ok"] is True
    assert response["data"]["schema_version"] == 1
    assert [row["id"] for row in response["data"]["versions"]][:2] == ["testing", "v1.3.0"]


@pytest.mark.parametrize(
    ("method", "payload"),
    [
        ("get_state", {"verbose": True}),
        ("install", {}),
        ("install", {"tag": 3}),
        ("refresh", {"force_refresh": "yes"}),
        ("set_retention_policy", {"keep_count": True}),
        ("activate_version", {"tag": "v1.2.0"}),
        ("cancel_operation", ["op_1"]),
    ],
)
def test_invalid_payloads_are_rejected(api: ServiceVersionsApi, method: str, payload: Any) -> None:
    """Unknown, missing, or mistyped fields produce INVALID_INPUT."""
    response = getattr(api, method)(payload)
    assert response == {"ok": False, "error": {"message": "Invalid request.", "code": "INVALID_INPUT"}}


def test_install_returns_op_id(api: ServiceVersionsApi, fake_registry: Any) -> None:
    """Operations answer immediately with their op id."""
    fake_registry.publish("v1.3.0")

    response = api.install({"tag": "v1.3.0"})

    assert response["ok"] is True
    op_id = response["data"]["op_id"]
    snapshot = api.orchestrator.wait_for_operation(timeout=10)
    assert snapshot is not None
    assert snapshot.op_id == op_id
    assert snapshot.status.value == "completed"

    current = api.get_operation()
    assert current["data"]["operation"]["op_id"] == op_id


def test_orchestrator_errors_carry_codes(api: ServiceVersionsApi) -> None:
    """Domain errors surface as friendly messages with their code."""
    assert api.install({"tag": "../etc"})["error"]["code"] == "INVALID_TAG"
    assert api.cancel_operation({"op_id": "  "})["error"] == {"message": "Invalid request.", "code": "INVALID_OP_ID"}
    response = api.start_active()
    assert response["ok"] is True
    api.orchestrator.wait_for_operation(timeout=10)
    assert api.get_operation()["data"]["operation"]["error"] == "No active instance is available."


def test_settings_round_trip(api: ServiceVersionsApi) -> None:
    """Settings writes return the stored values."""
    assert api.set_retention_policy({"keep_count": 4})["data"] == {"keep_count": 4}
    assert api.set_port_preferences({"ui": 9000, "ssh": "9022"})["data"] == {"ui": 9000, "ssh": 9022}
    rejected = api.set_port_preferences({"ui": 9000, "ssh": 9000})
    assert rejected["error"]["code"] == "INVALID_PORT_PREFERENCES"


def test_unexpected_failures_are_contained(api: ServiceVersionsApi, fake_runtime: Any) -> None:
    """Exceptions without a code become a generic error payload."""
    fake_runtime.failures["list_local_images"] = RuntimeError("kaboom")
    assert api.get_inventory() == {"ok": False, "error": {"message": "Unexpected error"}}


def test_volume_requests(api: ServiceVersionsApi, fake_runtime: Any) -> None:
    """Volume removal echoes the trimmed name and prune returns the daemon report."""
    fake_runtime.volumes = [VolumeInfo(name="data"), VolumeInfo(name="cache")]
    assert api.remove_volume({"name": " data "}) == {"ok": True, "data": {"removed": "data"}}
    assert api.prune_volumes()["data"]["VolumesDeleted"] == ["cache"]
    assert api.remove_volume({"name": ""})["error"]["code"] == "INVALID_INPUT"


def test_remove_image_request(api: ServiceVersionsApi, fake_runtime: Any) -> None:
    """Image removal returns the reference and refuses tags backing an instance."""
    fake_runtime.add_image("v1.2.0")
    fake_runtime.add_image("v1.1.0")
    fake_runtime.add_container("v1.2.0")
    removed = api.remove_image({"tag": "v1.1.0"})
    assert removed["ok"] is True
    assert removed["data"]["removed"].endswith(":v1.1.0")
    assert api.remove_image({"tag": "v1.2.0"})["error"]["code"] == "IMAGE_IN_USE"
    assert api.remove_image({})["error"]["code"] == "INVALID_INPUT"


def test_subscribe_receives_state_events(api: ServiceVersionsApi) -> None:
    """State listeners are notified on refresh."""
    received: list[dict[str, object]] = []
    unsubscribe = api.subscribe("state", received.append)
    api.refresh({"force_refresh": True})
    unsubscribe()
    assert received
    assert received[-1]["schema_version"] == 1


def test_subscribe_filters_malformed_progress_events(api: ServiceVersionsApi) -> None:
    """Progress listeners only see payloads that match the snapshot schema."""
    received: list[dict[str, object]] = []
    unsubscribe = api.subscribe("progress", received.append)
    events = api.orchestrator.events
    good = {
        "schema_version": 1,
        "op_id": "op_1",
        "type": "install",
        "status": "running",
        "started_at": "2026-03-01T12:00:00+00:00",
        "download_progress": 40,
    }

    events.emit("progress", good)
    events.emit("progress", {**good, "debug": True})
    events.emit("progress", {**good, "download_progress": "40%"})
    unsubscribe()

    assert len(received) == 1
    assert received[0]["op_id"] == "op_1"
    assert received[0]["download_progress"] == 40
    assert received[0]["error"] is None
