"""Single-flight operation tracking, event fan-out, and compensating actions.

At most one operation runs at a time. The tracker holds the current
:class:`OperationSnapshot` (immutable; each update replaces it) and hands out
copies, so readers never observe a half-applied change.
"""
from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .cancellation import CancellationToken
from .errors import ErrorCode, OperationAlreadyRunning, ServiceVersionsError, ValidationError

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class OperationType(str, Enum):
    """Kinds of orchestrated work."""

    INSTALL = "install"
    UPDATE = "update"
    ACTIVATE = "activate"
    ROLLBACK = "rollback"
    START = "start"
    STOP = "stop"
    DELETE_INSTANCE = "delete_instance"


class OperationStatus(str, Enum):
    """Lifecycle state of an operation."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


CANCELLABLE_TYPES = frozenset({OperationType.INSTALL, OperationType.UPDATE})

_SNAPSHOT_FIELDS: dict[str, tuple[type, ...]] = {
    "schema_version": (int,),
    "op_id": (str,),
    "type": (str,),
    "status": (str,),
    "started_at": (str,),
    "finished_at": (str, type(None)),
    "target_version_tag": (str, type(None)),
    "progress": (int, type(None)),
    "download_progress": (int, type(None)),
    "extract_progress": (int, type(None)),
    "message": (str, type(None)),
    "error": (str, type(None)),
    "error_code": (str, type(None)),
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_op_id() -> str:
    """Return a fresh operation id."""
    return f"op_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class OperationSnapshot:
    """Immutable view of the current (or last) operation."""

    op_id: str
    type: OperationType
    status: OperationStatus = OperationStatus.RUNNING
    started_at: str = field(default_factory=_now_iso)
    finished_at: str | None = None
    target_version_tag: str | None = None
    progress: int | None = None
    download_progress: int | None = None
    extract_progress: int | None = None
    message: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def running(self) -> bool:
        """Return ``True`` while the operation is in flight."""
        return self.status is OperationStatus.RUNNING

    def to_dict(self) -> dict[str, object]:
        """Return the versioned progress payload."""
        return {
            "schema_version": SCHEMA_VERSION,
            "op_id": self.op_id,
            "type": self.type.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "target_version_tag": self.target_version_tag,
            "progress": self.progress,
            "download_progress": self.download_progress,
            "extract_progress": self.extract_progress,
            "message": self.message,
            "error": self.error,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> OperationSnapshot:
        """Parse a progress payload, rejecting unknown or mistyped fields."""
        unknown = set(payload) - set(_SNAPSHOT_FIELDS)
        if unknown:
            raise ValidationError(
                ErrorCode.INVALID_INPUT,
                "Unknown progress fields",
                details={"fields": sorted(unknown)},
            )
        for name, types in _SNAPSHOT_FIELDS.items():
            if name not in payload:
                if type(None) in types:
                    continue
                raise ValidationError(ErrorCode.INVALID_INPUT, f"Missing progress field: {name}")
            value = payload[name]
            if isinstance(value, bool) or not isinstance(value, types):
                raise ValidationError(ErrorCode.INVALID_INPUT, f"Invalid progress field: {name}")
        if payload["schema_version"] != SCHEMA_VERSION:
            raise ValidationError(ErrorCode.INVALID_INPUT, "Unsupported progress schema version")
        try:
            op_type = OperationType(str(payload["type"]))
            status = OperationStatus(str(payload["status"]))
        except ValueError as exc:
            raise ValidationError(ErrorCode.INVALID_INPUT, str(exc)) from exc
        values: dict[str, Any] = {
            name: payload.get(name)
            for name in _SNAPSHOT_FIELDS
            if name not in {"schema_version", "type", "status"}
        }
        return cls(type=op_type, status=status, **values)


Listener = Callable[[dict[str, object]], None]


class EventBus:
    """Minimal publish/subscribe for ``state`` and ``progress`` events."""

    TOPICS = ("state", "progress")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = {topic: [] for topic in self.TOPICS}

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        """Register *listener* for *topic*; return a function that unsubscribes it."""
        if topic not in self._listeners:
            raise ValueError(f"Unknown event topic: {topic}")
        with self._lock:
            self._listeners[topic].append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[topic]:
                    self._listeners[topic].remove(listener)

        return _unsubscribe

    def emit(self, topic: str, payload: dict[str, object]) -> None:
        """Deliver *payload* to every listener of *topic*."""
        with self._lock:
            listeners = list(self._listeners.get(topic, ()))
        for listener in listeners:
            try:
                listener(dict(payload))
            except Exception:  # noqa: BLE001
                LOGGER.exception("Event listener for %s failed", topic)


class OperationTracker:
    """Owner of the single in-flight operation."""

    def __init__(self, events: EventBus | None = None) -> None:
        self._lock = threading.RLock()
        self._current: OperationSnapshot | None = None
        self._cancel_token: CancellationToken | None = None
        self._cancellable = False
        self.events = events or EventBus()

    def current(self) -> OperationSnapshot | None:
        """Return the current (or last finished) operation snapshot."""
        with self._lock:
            return self._current

    def is_running(self) -> bool:
        """Return ``True`` when an operation is in flight."""
        with self._lock:
            return self._current is not None and self._current.running

    def require_idle(self) -> None:
        """Raise :class:`OperationAlreadyRunning` when an operation is in flight."""
        with self._lock:
            if self._current is not None and self._current.running:
                raise OperationAlreadyRunning(self._current.op_id)

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the tracker lock so a check-then-act sequence cannot interleave."""
        with self._lock:
            yield

    def begin(
        self,
        op_type: OperationType,
        target_version_tag: str | None = None,
        *,
        message: str | None = None,
    ) -> tuple[OperationSnapshot, CancellationToken]:
        """Create and publish a running operation, failing fast if one exists."""
        with self._lock:
            self.require_idle()
            snapshot = OperationSnapshot(
                op_id=new_op_id(),
                type=op_type,
                target_version_tag=target_version_tag,
                message=message,
            )
            token = CancellationToken()
            self._current = snapshot
            self._cancel_token = token
            self._cancellable = False
        self.events.emit("progress", snapshot.to_dict())
        return snapshot, token

    def update(self, op_id: str, **changes: object) -> OperationSnapshot | None:
        """Apply *changes* to the running operation *op_id* and publish it."""
        with self._lock:
            current = self._current
            if current is None or current.op_id != op_id or not current.running:
                return None
            snapshot = replace(current, **changes)
            self._current = snapshot
        self.events.emit("progress", snapshot.to_dict())
        return snapshot

    def set_cancellable(self, op_id: str, cancellable: bool) -> None:
        """Mark whether the running operation is currently in a cancellable phase."""
        with self._lock:
            if self._current is not None and self._current.op_id == op_id:
                self._cancellable = cancellable and self._current.type in CANCELLABLE_TYPES

    def finish(
        self,
        op_id: str,
        status: OperationStatus,
        *,
        message: str | None = None,
        error: str | None = None,
        error_code: str | None = None,
        progress: int | None = None,
    ) -> OperationSnapshot | None:
        """Finalise *op_id* with a terminal *status*."""
        with self._lock:
            current = self._current
            if current is None or current.op_id != op_id or not current.running:
                return None
            changes: dict[str, Any] = {
                "status": status,
                "finished_at": _now_iso(),
                "error": error,
                "error_code": error_code,
            }
            if message is not None:
                changes["message"] = message
            if progress is not None:
                changes["progress"] = progress
            snapshot = replace(current, **changes)
            self._current = snapshot
            self._cancel_token = None
            self._cancellable = False
        self.events.emit("progress", snapshot.to_dict())
        return snapshot

    def cancel(self, op_id: str) -> bool:
        """Request cancellation of *op_id*.

        Returns ``False`` when the operation already finished or is not in a
        cancellable phase. Raises ``OP_NOT_FOUND`` when *op_id* is not the
        current operation.
        """
        with self._lock:
            current = self._current
            if current is None or current.op_id != op_id:
                raise ServiceVersionsError(
                    ErrorCode.OP_NOT_FOUND,
                    "Operation not found",
                    details={"op_id": op_id},
                )
            if not current.running or not self._cancellable or self._cancel_token is None:
                return False
            self._cancel_token.cancel("Canceled by user")
            return True

    def abort(self, reason: str = "Shutting down") -> None:
        """Signal the running operation's token regardless of its phase."""
        with self._lock:
            if self._cancel_token is not None:
                self._cancel_token.cancel(reason)


@dataclass
class _Compensation:
    label: str
    action: Callable[[], None]


class CompensationStack:
    """Compensating actions executed in reverse order when a transition fails."""

    def __init__(self) -> None:
        self._actions: list[_Compensation] = []

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def labels(self) -> list[str]:
        """Return the registered labels in registration order."""
        return [item.label for item in self._actions]

    def push(self, label: str, action: Callable[[], None]) -> None:
        """Register *action* to run if the transition fails."""
        self._actions.append(_Compensation(label, action))

    def discard(self, label: str) -> None:
        """Drop a previously registered action."""
        self._actions = [item for item in self._actions if item.label != label]

    def clear(self) -> None:
        """Forget all actions after a successful transition."""
        self._actions.clear()

    def unwind(self) -> list[str]:
        """Run all actions newest first; return the labels that failed.

        Failures are logged and never raised.
        """
        failed: list[str] = []
        while self._actions:
            item = self._actions.pop()
            try:
                item.action()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Compensating action %r failed", item.label)
                failed.append(item.label)
        return failed


__all__ = [
    "CANCELLABLE_TYPES",
    "CompensationStack",
    "EventBus",
    "OperationSnapshot",
    "OperationStatus",
    "OperationTracker",
    "OperationType",
    "SCHEMA_VERSION",
    "new_op_id",
]
