"""Per-tag installability verdicts cached in the state directory.

A verdict records whether the registry currently publishes a tag. Positive
verdicts are trusted for 24 hours; negative verdicts are not re-probed until
their ``recheck_after`` time has passed (15 minutes by default).
"""
from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .state import StateRegistry

INSTALLABLE_TTL = timedelta(hours=24)
NOT_YET_AVAILABLE_RECHECK = timedelta(minutes=15)


class Installability(str, Enum):
    """Registry availability of a tag."""

    UNKNOWN = "unknown"
    INSTALLABLE = "installable"
    NOT_YET_AVAILABLE = "not_yet_available"


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _format_timestamp(value: datetime | None) -> str | None:
    return value.astimezone(UTC).isoformat() if value is not None else None


@dataclass(frozen=True)
class InstallabilityEntry:
    """Cached registry verdict for one tag."""

    status: Installability
    checked_at: datetime
    recheck_after: datetime | None = None
    digest: str | None = None
    content_type: str | None = None

    @classmethod
    def installable(
        cls,
        now: datetime,
        *,
        digest: str | None = None,
        content_type: str | None = None,
    ) -> InstallabilityEntry:
        """Return a positive verdict checked at *now*."""
        return cls(
            status=Installability.INSTALLABLE,
            checked_at=now,
            digest=digest,
            content_type=content_type,
        )

    @classmethod
    def not_yet_available(
        cls,
        now: datetime,
        *,
        recheck: timedelta = NOT_YET_AVAILABLE_RECHECK,
    ) -> InstallabilityEntry:
        """Return a negative verdict that may be re-probed after *recheck*."""
        return cls(
            status=Installability.NOT_YET_AVAILABLE,
            checked_at=now,
            recheck_after=now + recheck,
        )

    @classmethod
    def from_mapping(cls, data: object) -> InstallabilityEntry | None:
        """Parse a stored entry, returning ``None`` when it is malformed."""
        if not isinstance(data, Mapping):
            return None
        try:
            status = Installability(str(data.get("status")))
        except ValueError:
            return None
        checked_at = _parse_timestamp(data.get("checked_at"))
        if checked_at is None:
            return None
        digest = data.get("digest")
        content_type = data.get("content_type")
        return cls(
            status=status,
            checked_at=checked_at,
            recheck_after=_parse_timestamp(data.get("recheck_after")),
            digest=digest if isinstance(digest, str) and digest else None,
            content_type=content_type if isinstance(content_type, str) and content_type else None,
        )

    def is_fresh(self, now: datetime) -> bool:
        """Return ``True`` when the verdict may be used without re-probing."""
        if self.status is Installability.NOT_YET_AVAILABLE:
            return self.recheck_after is not None and now < self.recheck_after
        if self.status is Installability.INSTALLABLE:
            return now - self.checked_at < INSTALLABLE_TTL
        return False

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "checked_at": _format_timestamp(self.checked_at),
            "recheck_after": _format_timestamp(self.recheck_after),
            "digest": self.digest,
            "content_type": self.content_type,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InstallabilityCache:
    """Read-modify-write access to ``cache/installability.yml``."""

    def __init__(
        self,
        registry: StateRegistry,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._clock = clock
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Return the cache's notion of the current time."""
        return self._clock()

    def load(self) -> dict[str, InstallabilityEntry]:
        """Return all well-formed entries keyed by tag."""
        raw = self._registry.read_installability()["entries"]
        entries: dict[str, InstallabilityEntry] = {}
        for tag, value in raw.items():
            entry = InstallabilityEntry.from_mapping(value)
            if entry is not None:
                entries[str(tag)] = entry
        return entries

    def save(self, entries: Mapping[str, InstallabilityEntry]) -> None:
        """Persist *entries*, replacing the cache contents."""
        self._registry.write_installability(
            {tag: entry.to_dict() for tag, entry in entries.items()}
        )

    def get(self, tag: str) -> InstallabilityEntry | None:
        """Return the entry for *tag*, if any."""
        return self.load().get(tag)

    def fresh_entry(self, tag: str) -> InstallabilityEntry | None:
        """Return the entry for *tag* only while it is still fresh."""
        entry = self.get(tag)
        if entry is not None and entry.is_fresh(self.now()):
            return entry
        return None

    def record(self, tag: str, entry: InstallabilityEntry) -> None:
        """Write a single verdict back to the cache."""
        self.merge({tag: entry})

    def merge(self, updates: Mapping[str, InstallabilityEntry]) -> dict[str, InstallabilityEntry]:
        """Fold *updates* into the stored entries and return the result.

        The cache is re-read under the lock so verdicts written since the
        caller's last ``load`` survive.
        """
        with self._lock:
            entries = self.load()
            entries.update(updates)
            self.save(entries)
        return entries

    def stale_tags(self, tags: Iterable[str], *, force: bool = False) -> list[str]:
        """Return the tags in *tags* that need a registry probe."""
        entries = self.load()
        now = self.now()
        pending: list[str] = []
        for tag in dict.fromkeys(tags):
            entry = entries.get(tag)
            if force or entry is None or not entry.is_fresh(now):
                pending.append(tag)
        return pending


def status_of(entry: InstallabilityEntry | None) -> Installability:
    """Return the verdict carried by *entry* (``unknown`` when missing)."""
    return entry.status if entry is not None else Installability.UNKNOWN


__all__ = [
    "INSTALLABLE_TTL",
    "Installability",
    "InstallabilityCache",
    "InstallabilityEntry",
    "NOT_YET_AVAILABLE_RECHECK",
    "status_of",
]
