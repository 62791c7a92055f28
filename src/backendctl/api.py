"""Request/response boundary over :class:`ServiceVersionsOrchestrator`.

Every method takes an optional request mapping, checks it against a field
whitelist, and returns either a success payload or a ``{"message", "code"}``
error payload. Exceptions never cross this boundary.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from .errors import ServiceVersionsError, ValidationError, to_error_response
from .models import validate_payload
from .operations import Listener, OperationSnapshot
from .orchestrator import ServiceVersionsOrchestrator

LOGGER = logging.getLogger(__name__)

Payload = Mapping[str, object] | None
Response = dict[str, Any]

_NUMBER = (int, float, str)

REQUEST_FIELDS: dict[str, dict[str, type | tuple[type, ...]]] = {
    "get_state": {},
    "refresh": {"force_refresh": bool},
    "install": {"tag": str},
    "start_active": {},
    "stop_active": {},
    "set_retention_policy": {"keep_count": _NUMBER},
    "set_port_preferences": {"ui": _NUMBER, "ssh": _NUMBER},
    "delete_retained_instance": {"container_id": str},
    "update_to_latest": {"ack": str},
    "activate_version": {"tag": str, "ack": str},
    "activate_retained_instance": {"container_id": str, "ack": str},
    "cancel_operation": {"op_id": str},
    "get_operation": {},
    "get_inventory": {},
    "remove_image": {"tag": str},
    "remove_volume": {"name": str},
    "prune_volumes": {},
}

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "install": ("tag",),
    "set_retention_policy": ("keep_count",),
    "set_port_preferences": ("ui", "ssh"),
    "delete_retained_instance": ("container_id",),
    "update_to_latest": ("ack",),
    "activate_version": ("tag", "ack"),
    "activate_retained_instance": ("container_id", "ack"),
    "cancel_operation": ("op_id",),
    "remove_image": ("tag",),
    "remove_volume": ("name",),
}


class ServiceVersionsApi:
    """Error-normalising facade used by the desktop shell and the CLI."""

    def __init__(self, orchestrator: ServiceVersionsOrchestrator) -> None:
        self._orchestrator = orchestrator

    @property
    def orchestrator(self) -> ServiceVersionsOrchestrator:
        return self._orchestrator

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        """Register *listener* on the ``state`` or ``progress`` stream.

        Progress payloads are parsed against the snapshot schema before they
        reach *listener*; malformed ones are logged and dropped.
        """
        if topic != "progress":
            return self._orchestrator.events.subscribe(topic, listener)

        def _validated(payload: dict[str, object]) -> None:
            try:
                snapshot = OperationSnapshot.from_dict(payload)
            except ValidationError as exc:
                LOGGER.warning("Dropping malformed progress event: %s", exc)
                return
            listener(snapshot.to_dict())

        return self._orchestrator.events.subscribe(topic, _validated)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_state(self, payload: Payload = None) -> Response:
        return self._call("get_state", payload, lambda _: self._orchestrator.get_state().to_dict())

    def refresh(self, payload: Payload = None) -> Response:
        return self._call(
            "refresh",
            payload,
            lambda req: self._orchestrator.refresh(bool(req.get("force_refresh", False))).to_dict(),
        )

    def get_operation(self, payload: Payload = None) -> Response:
        """Return ``{"operation": snapshot-or-None}``."""

        def _current(_: dict[str, object]) -> Response:
            snapshot = self._orchestrator.current_operation()
            return {"operation": snapshot.to_dict() if snapshot else None}

        return self._call("get_operation", payload, _current)

    def get_inventory(self, payload: Payload = None) -> Response:
        return self._call("get_inventory", payload, lambda _: self._orchestrator.get_inventory())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def install(self, payload: Payload = None) -> Response:
        return self._call("install", payload, lambda req: _op(self._orchestrator.install(req["tag"])))

    def start_active(self, payload: Payload = None) -> Response:
        return self._call("start_active", payload, lambda _: _op(self._orchestrator.start_active()))

    def stop_active(self, payload: Payload = None) -> Response:
        return self._call("stop_active", payload, lambda _: _op(self._orchestrator.stop_active()))

    def delete_retained_instance(self, payload: Payload = None) -> Response:
        return self._call(
            "delete_retained_instance",
            payload,
            lambda req: _op(self._orchestrator.delete_retained_instance(req["container_id"])),
        )

    def update_to_latest(self, payload: Payload = None) -> Response:
        return self._call(
            "update_to_latest",
            payload,
            lambda req: _op(self._orchestrator.update_to_latest(req["ack"])),
        )

    def activate_version(self, payload: Payload = None) -> Response:
        return self._call(
            "activate_version",
            payload,
            lambda req: _op(self._orchestrator.activate_version(req["tag"], req["ack"])),
        )

    def activate_retained_instance(self, payload: Payload = None) -> Response:
        return self._call(
            "activate_retained_instance",
            payload,
            lambda req: _op(
                self._orchestrator.activate_retained_instance(req["container_id"], req["ack"])
            ),
        )

    def cancel_operation(self, payload: Payload = None) -> Response:
        return self._call(
            "cancel_operation",
            payload,
            lambda req: self._orchestrator.cancel_operation(req["op_id"]),
        )

    # ------------------------------------------------------------------
    # Settings, images and volumes
    # ------------------------------------------------------------------
    def set_retention_policy(self, payload: Payload = None) -> Response:
        return self._call(
            "set_retention_policy",
            payload,
            lambda req: self._orchestrator.set_retention_policy(req["keep_count"]).to_dict(),
        )

    def set_port_preferences(self, payload: Payload = None) -> Response:
        return self._call(
            "set_port_preferences",
            payload,
            lambda req: self._orchestrator.set_port_preferences(req).to_dict(),
        )

    def remove_image(self, payload: Payload = None) -> Response:
        return self._call(
            "remove_image",
            payload,
            lambda req: {"removed": self._orchestrator.remove_image(req["tag"])},
        )

    def remove_volume(self, payload: Payload = None) -> Response:
        def _remove(req: dict[str, object]) -> Response:
            self._orchestrator.remove_volume(req["name"])
            return {"removed": str(req["name"]).strip()}

        return self._call("remove_volume", payload, _remove)

    def prune_volumes(self, payload: Payload = None) -> Response:
        return self._call("prune_volumes", payload, lambda _: dict(self._orchestrator.prune_volumes()))

    # ------------------------------------------------------------------
    def _call(
        self,
        name: str,
        payload: Payload,
        handler: Callable[[dict[str, object]], Response],
    ) -> Response:
        try:
            request = validate_payload(
                payload,
                REQUEST_FIELDS[name],
                required=REQUIRED_FIELDS.get(name, ()),
            )
            return {"ok": True, "data": handler(request)}
        except ServiceVersionsError as exc:
            LOGGER.info("%s rejected (%s): %s", name, exc.code.value, exc.message)
            return {"ok": False, "error": to_error_response(exc)}
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("%s failed unexpectedly", name)
            return {"ok": False, "error": to_error_response(exc)}


def _op(op_id: str) -> Response:
    return {"op_id": op_id}


__all__ = ["REQUEST_FIELDS", "REQUIRED_FIELDS", "ServiceVersionsApi"]
