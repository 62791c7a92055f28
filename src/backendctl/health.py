"""UI readiness checks for the active instance."""
from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from .cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

PREFERRED_CONTAINER_PORTS: tuple[int, ...] = (80, 7860, 3000, 8080, 5000, 9000, 9001, 9002)
SSH_CONTAINER_PORT = 22
LOCAL_HOSTS = {"127.0.0.1", "localhost", "::1"}

TickCallback = Callable[[int], None]


def _valid_port(value: object) -> int | None:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return port if 0 < port <= 65535 else None


def ui_url_from_inspect(inspect: Mapping[str, Any] | None) -> str | None:
    """Return the best-guess local UI URL from a container inspect payload."""
    network = inspect.get("NetworkSettings") if isinstance(inspect, Mapping) else None
    ports = network.get("Ports") if isinstance(network, Mapping) else None
    if not isinstance(ports, Mapping):
        return None

    candidates: list[tuple[int, int]] = []
    for spec, bindings in ports.items():
        container_port = _valid_port(str(spec).split("/")[0])
        if container_port is None or not isinstance(bindings, list):
            continue
        for binding in bindings:
            host_port = _valid_port(binding.get("HostPort")) if isinstance(binding, Mapping) else None
            if host_port is not None:
                candidates.append((container_port, host_port))
    if not candidates:
        return None

    for preferred in PREFERRED_CONTAINER_PORTS:
        for container_port, host_port in candidates:
            if container_port == preferred:
                return f"http://127.0.0.1:{host_port}/"

    candidates.sort(key=lambda item: item[1])
    fallback = next((item for item in candidates if item[0] != SSH_CONTAINER_PORT), candidates[0])
    return f"http://127.0.0.1:{fallback[1]}/"


@dataclass(frozen=True)
class LocalEndpoint:
    host: str
    port: int


def parse_local_url(url: str | None) -> LocalEndpoint | None:
    """Return host and port for loopback ``http(s)`` URLs only."""
    if not url:
        return None
    try:
        parts = urlsplit(str(url))
        port = parts.port
    except ValueError:
        return None
    if parts.scheme not in {"http", "https"}:
        return None
    host = (parts.hostname or "").strip()
    if host not in LOCAL_HOSTS or port is None or not 0 < port <= 65535:
        return None
    return LocalEndpoint(host="127.0.0.1" if host == "localhost" else host, port=port)


def is_http_reachable(
    host: str,
    port: int,
    *,
    timeout: float = 0.35,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """Return ``True`` when ``GET /`` answers with a status below 500."""
    target = "127.0.0.1" if host in {"localhost", "::1"} else host
    if not target or not 0 < port <= 65535:
        return False
    try:
        with httpx.Client(transport=transport, timeout=max(0.08, timeout)) as client:
            response = client.get(
                f"http://{target}:{port}/",
                headers={"User-Agent": "backendctl", "Accept": "*/*"},
            )
    except httpx.HTTPError:
        return False
    return 0 < response.status_code < 500


@dataclass(frozen=True)
class HealthPoller:
    """Cancellable readiness loop with an overall deadline."""

    timeout: float = 60.0
    interval: float = 0.45
    attempt_timeout: float = 0.35
    transport: httpx.BaseTransport | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep

    def wait_for_http_port(
        self,
        host: str,
        port: int,
        *,
        on_tick: TickCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> bool:
        """Poll until reachable, the deadline passes, or *cancel* fires.

        *on_tick* receives the elapsed whole seconds whenever that value
        changes, plus once more when the deadline passes.
        """
        started = self.clock()
        last_tick = -1
        while self.clock() - started < self.timeout:
            if cancel is not None and cancel.cancelled:
                return False
            if is_http_reachable(host, port, timeout=self.attempt_timeout, transport=self.transport):
                return True
            seconds = math.floor(self.clock() - started)
            if on_tick is not None and seconds != last_tick:
                last_tick = seconds
                _safe_tick(on_tick, seconds)
            if cancel is not None:
                if cancel.wait(self.interval):
                    return False
            else:
                self.sleep(self.interval)
        if on_tick is not None:
            _safe_tick(on_tick, math.floor(self.clock() - started))
        return False


def _safe_tick(on_tick: TickCallback, seconds: int) -> None:
    try:
        on_tick(seconds)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Health poll tick callback failed")


__all__ = [
    "HealthPoller",
    "LocalEndpoint",
    "PREFERRED_CONTAINER_PORTS",
    "is_http_reachable",
    "parse_local_url",
    "ui_url_from_inspect",
]
