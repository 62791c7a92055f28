"""Derived state records and request validators."""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import ErrorCode, ValidationError

SCHEMA_VERSION = 1
MAX_CONTAINER_ID_LENGTH = 128

_CONTAINER_ID_RE = re.compile(r"^[a-f0-9]+$", re.IGNORECASE)


class VersionCategory(str, Enum):
    OFFICIAL_RELEASE = "official_release"
    LOCAL_BUILD = "local_build"


class Availability(str, Enum):
    AVAILABLE = "available"
    INSTALLED = "installed"
    UPDATE_AVAILABLE = "update_available"
    INSTALLING = "installing"


class DataLossAck(str, Enum):
    """Acknowledgement required before a version switch."""

    HAS_BACKUP = "has_backup"
    PROCEED_WITHOUT_BACKUP = "proceed_without_backup"


@dataclass(frozen=True)
class VersionRow:
    """One row of the version list."""

    id: str
    display_version: str
    category: VersionCategory
    availability: Availability
    installability: str | None = "unknown"
    is_active: bool = False
    active_state: str | None = None
    published_at: str | None = None
    size_bytes: int | None = None
    channel_badges: tuple[str, ...] = ()
    match_hint: str | None = None
    digest_hint: str | None = None
    differs_from_published: bool | None = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "display_version": self.display_version,
            "category": self.category.value,
            "availability": self.availability.value,
            "installability": self.installability,
            "is_active": self.is_active,
            "active_state": self.active_state,
            "published_at": self.published_at,
            "size_bytes": self.size_bytes,
            "channel_badges": list(self.channel_badges),
            "match_hint": self.match_hint,
            "digest_hint": self.digest_hint,
            "differs_from_published": self.differs_from_published,
        }


@dataclass(frozen=True)
class RetainedInstance:
    """A previous active instance kept for rollback."""

    container_id: str
    container_name: str
    version_tag: str
    retained_at: str
    state: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "version_tag": self.version_tag,
            "retained_at": self.retained_at,
            "state": self.state,
        }


@dataclass(frozen=True)
class StorageSummary:
    """Disk usage figures shown next to the version list."""

    free_bytes: int | None = None
    used_bytes: int | None = None
    estimate_after_update_bytes: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "free_bytes": self.free_bytes,
            "used_bytes": self.used_bytes,
            "estimate_after_update_bytes": self.estimate_after_update_bytes,
        }


@dataclass(frozen=True)
class ServiceState:
    """Full derived snapshot pushed on the ``state`` stream."""

    versions: tuple[VersionRow, ...]
    retained_instances: tuple[RetainedInstance, ...]
    retention_policy: Mapping[str, int]
    port_preferences: Mapping[str, int]
    ui_url: str | None = None
    last_synced_at: str | None = None
    offline: bool = False
    storage: StorageSummary = field(default_factory=StorageSummary)
    active_version_tag: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the versioned state payload."""
        return {
            "schema_version": SCHEMA_VERSION,
            "versions": [row.to_dict() for row in self.versions],
            "retained_instances": [item.to_dict() for item in self.retained_instances],
            "retention_policy": dict(self.retention_policy),
            "port_preferences": dict(self.port_preferences),
            "ui_url": self.ui_url,
            "last_synced_at": self.last_synced_at,
            "offline": self.offline,
            "storage": self.storage.to_dict(),
            "active_version_tag": self.active_version_tag,
        }


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------
def validate_container_id(value: object) -> str:
    """Return a trimmed hexadecimal container id or raise ``INVALID_CONTAINER_ID``."""
    text = value.strip() if isinstance(value, str) else ""
    if not text or len(text) > MAX_CONTAINER_ID_LENGTH or not _CONTAINER_ID_RE.match(text):
        raise ValidationError(
            ErrorCode.INVALID_CONTAINER_ID,
            "Invalid container id",
            details={"container_id": str(value)},
        )
    return text


def validate_data_loss_ack(value: object) -> DataLossAck:
    """Return the acknowledgement or raise ``INVALID_DATA_LOSS_ACK``."""
    try:
        return DataLossAck(value.strip() if isinstance(value, str) else value)
    except ValueError as exc:
        raise ValidationError(
            ErrorCode.INVALID_DATA_LOSS_ACK,
            "Data-loss acknowledgement required",
            details={"ack": str(value)},
        ) from exc


def validate_op_id(value: object) -> str:
    """Return a non-blank operation id or raise ``INVALID_OP_ID``."""
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(ErrorCode.INVALID_OP_ID, "Operation id is required")
    return text


def validate_payload(
    payload: object,
    fields: Mapping[str, type | tuple[type, ...]],
    *,
    required: tuple[str, ...] = (),
) -> dict[str, object]:
    """Check *payload* against a field whitelist.

    Unknown keys, missing required keys, and values of the wrong type raise
    ``INVALID_INPUT``. ``bool`` never satisfies an ``int`` field.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValidationError(ErrorCode.INVALID_INPUT, "Request payload must be a mapping")
    unknown = sorted(str(key) for key in payload if key not in fields)
    if unknown:
        raise ValidationError(
            ErrorCode.INVALID_INPUT,
            "Unknown request fields",
            details={"fields": unknown},
        )
    missing = [name for name in required if name not in payload]
    if missing:
        raise ValidationError(
            ErrorCode.INVALID_INPUT,
            "Missing request fields",
            details={"fields": missing},
        )
    for name, value in payload.items():
        expected = fields[name]
        types = expected if isinstance(expected, tuple) else (expected,)
        if isinstance(value, bool) and bool not in types:
            raise ValidationError(ErrorCode.INVALID_INPUT, f"Invalid request field: {name}")
        if not isinstance(value, types):
            raise ValidationError(ErrorCode.INVALID_INPUT, f"Invalid request field: {name}")
    return dict(payload)


__all__ = [
    "Availability",
    "DataLossAck",
    "RetainedInstance",
    "SCHEMA_VERSION",
    "ServiceState",
    "StorageSummary",
    "VersionCategory",
    "VersionRow",
    "validate_container_id",
    "validate_data_loss_ack",
    "validate_op_id",
    "validate_payload",
]
