"""Instance naming and retention policy.

The active instance for an image repository always carries a deterministic
name. Instances switched away from are renamed to a *retained* name that
embeds the retention timestamp and their version tag, e.g.::

    svc-active__acme-backend
    svc-retained__acme-backend__20260102T030405Z__v1.2.0

Retention enforcement keeps the newest ``max(1, keep_count)`` retained
instances and deletes the rest on a best-effort basis.
"""
from __future__ import annotations

import logging
import math
import re
from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from .errors import ErrorCode, ServiceVersionsError, ValidationError
from .state import StateRegistry

if TYPE_CHECKING:
    from .providers.runtime import ContainerInfo, ContainerRuntime

LOGGER = logging.getLogger(__name__)

NAME_PREFIX = "svc"
ACTIVE_MARKER = f"{NAME_PREFIX}-active__"
RETAINED_MARKER = f"{NAME_PREFIX}-retained__"
MIN_KEEP_COUNT = 0
MAX_KEEP_COUNT = 20
DEFAULT_KEEP_COUNT = 1

_NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7E]")
_INVALID_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]+")
_COMPACT_TS_RE = re.compile(r"^\d{8}T\d{6}Z$")
_COMPACT_TS_FORMAT = "%Y%m%dT%H%M%SZ"


def sanitize_name_part(value: str | None) -> str:
    """Reduce *value* to characters allowed in container names."""
    text = (value or "").strip()
    cleaned = _NON_PRINTABLE_RE.sub("", text)
    cleaned = _INVALID_NAME_CHARS_RE.sub("-", cleaned).strip("-")
    return cleaned or "unknown"


def repo_slug(image_repo: str) -> str:
    """Return the name-safe slug for *image_repo*."""
    return sanitize_name_part((image_repo or "").replace("/", "-"))


def active_container_name(image_repo: str) -> str:
    """Return the deterministic active instance name for *image_repo*."""
    return f"{ACTIVE_MARKER}{repo_slug(image_repo)}"


def retained_container_name(image_repo: str, tag: str | None, retained_at: datetime) -> str:
    """Return the retained instance name for *tag* demoted at *retained_at*."""
    stamp = retained_at.astimezone(UTC).strftime(_COMPACT_TS_FORMAT)
    return f"{RETAINED_MARKER}{repo_slug(image_repo)}__{stamp}__{sanitize_name_part(tag)}"


def unused_retained_container_name(
    image_repo: str,
    tag: str | None,
    retained_at: datetime,
    taken: Collection[str],
) -> str:
    """Return a retained name that is not in *taken*.

    Stamps have one-second resolution, so a clash moves the stamp forward a
    second at a time.
    """
    stamp = retained_at
    name = retained_container_name(image_repo, tag, stamp)
    while name in taken:
        stamp += timedelta(seconds=1)
        name = retained_container_name(image_repo, tag, stamp)
    return name


@dataclass(frozen=True, slots=True)
class RetainedName:
    """Version tag and retention timestamp parsed from a retained name."""

    tag: str
    retained_at: datetime


def parse_retained_container_name(name: str | None) -> RetainedName | None:
    """Parse a retained instance name, returning ``None`` for other names."""
    text = (name or "").strip()
    if not text.startswith(RETAINED_MARKER):
        return None
    parts = text.split("__")
    if len(parts) < 4:
        return None
    stamp = parts[2]
    if not _COMPACT_TS_RE.match(stamp):
        return None
    try:
        retained_at = datetime.strptime(stamp, _COMPACT_TS_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None
    tag = "__".join(parts[3:])
    if not tag:
        return None
    return RetainedName(tag=tag, retained_at=retained_at)


def is_managed_container_name(name: str | None) -> bool:
    """Return ``True`` for active or retained instance names."""
    text = (name or "").strip()
    return text.startswith(ACTIVE_MARKER) or text.startswith(RETAINED_MARKER)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """How many retained instances survive a successful switch."""

    keep_count: int = DEFAULT_KEEP_COUNT

    @property
    def effective_keep_count(self) -> int:
        """Return the keep count with the rollback floor of one applied."""
        return max(1, min(MAX_KEEP_COUNT, self.keep_count))

    def to_dict(self) -> dict[str, int]:
        """Return a serialisable representation."""
        return {"keep_count": self.keep_count}


def clamp_keep_count(value: object) -> int | None:
    """Return *value* floored and clamped to 0-20, or ``None`` when not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(numeric):
        return None
    return max(MIN_KEEP_COUNT, min(MAX_KEEP_COUNT, math.floor(numeric)))


def validate_keep_count(value: object) -> int:
    """Validate a requested keep count, raising ``INVALID_RETENTION_POLICY``."""
    keep_count = clamp_keep_count(value)
    if keep_count is None:
        raise ValidationError(
            ErrorCode.INVALID_RETENTION_POLICY,
            "Invalid retention policy",
            details={"keep_count": repr(value)},
        )
    return keep_count


@dataclass(slots=True)
class RetentionPolicyStore:
    """Read and write the retention policy stored in ``state.yml``."""

    registry: StateRegistry

    def read(self) -> RetentionPolicy:
        """Return the stored policy (default keep count of one)."""
        state = self.registry.read_state()
        raw = state.get("retention_policy")
        stored = raw.get("keep_count") if isinstance(raw, Mapping) else None
        keep_count = clamp_keep_count(stored)
        return RetentionPolicy(DEFAULT_KEEP_COUNT if keep_count is None else keep_count)

    def write(self, keep_count: object) -> RetentionPolicy:
        """Validate and persist a new keep count."""
        policy = RetentionPolicy(validate_keep_count(keep_count))
        self.registry.update_state({"retention_policy": policy.to_dict()})
        return policy


# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RetainedContainer:
    """A retained instance discovered in the runtime."""

    container_id: str
    container_name: str
    version_tag: str
    retained_at: datetime


def collect_retained(containers: Iterable[ContainerInfo]) -> list[RetainedContainer]:
    """Return retained instances among *containers*, newest first."""
    retained: list[RetainedContainer] = []
    for container in containers:
        parsed = parse_retained_container_name(container.name)
        if parsed is None or not container.container_id:
            continue
        retained.append(
            RetainedContainer(
                container_id=container.container_id,
                container_name=container.name or "",
                version_tag=parsed.tag,
                retained_at=parsed.retained_at,
            )
        )
    retained.sort(key=lambda item: item.retained_at, reverse=True)
    return retained


def select_for_pruning(
    retained: Iterable[RetainedContainer],
    policy: RetentionPolicy,
) -> list[RetainedContainer]:
    """Return the retained instances beyond the policy's effective keep count."""
    ordered = sorted(retained, key=lambda item: item.retained_at, reverse=True)
    return ordered[policy.effective_keep_count :]


def enforce_retention(
    runtime: ContainerRuntime,
    image_repo: str,
    policy: RetentionPolicy,
) -> list[str]:
    """Delete retained instances beyond the policy; return the deleted ids.

    Failures are logged and never raised.
    """
    try:
        containers = runtime.list_containers(image_repo)
    except ServiceVersionsError as exc:
        LOGGER.warning("Skipping retention enforcement; cannot list containers: %s", exc)
        return []

    deleted: list[str] = []
    for victim in select_for_pruning(collect_retained(containers), policy):
        try:
            runtime.delete_container(victim.container_id, force=True)
        except ServiceVersionsError as exc:
            LOGGER.warning(
                "Failed to prune retained instance %s (%s): %s",
                victim.container_name,
                victim.container_id,
                exc,
            )
            continue
        deleted.append(victim.container_id)
    return deleted


__all__ = [
    "ACTIVE_MARKER",
    "DEFAULT_KEEP_COUNT",
    "MAX_KEEP_COUNT",
    "RETAINED_MARKER",
    "RetainedContainer",
    "RetainedName",
    "RetentionPolicy",
    "RetentionPolicyStore",
    "active_container_name",
    "clamp_keep_count",
    "collect_retained",
    "enforce_retention",
    "is_managed_container_name",
    "parse_retained_container_name",
    "repo_slug",
    "retained_container_name",
    "sanitize_name_part",
    "select_for_pruning",
    "unused_retained_container_name",
    "validate_keep_count",
]
