"""Official release catalog fetched from the source-control hosting API.

Only published, non-draft, non-prerelease releases whose tag is a
``v``-prefixed semantic version are kept. The normalised list is cached in
``cache/releases.yml`` together with the source repository and fetch time; a
fresh cache (24 hours by default) is served without a network call, and a
failed fetch falls back to the cached list marked ``offline``.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from .. import DEFAULT_USER_AGENT
from ..config import ReleasesConfig
from ..errors import ErrorCode, RegistryError
from ..state import StateRegistry, StateRegistryError
from ..tags import is_semver_release_tag, semver_sort_key
from .registry import parse_link_next

LOGGER = logging.getLogger(__name__)

GITHUB_ACCEPT = "application/vnd.github.v3+json"


@dataclass(frozen=True)
class Release:
    """One official release."""

    tag: str
    published_at: str | None = None
    release_url: str | None = None
    is_prerelease: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "tag": self.tag,
            "published_at": self.published_at,
            "is_prerelease": self.is_prerelease,
            "release_url": self.release_url,
        }

    @classmethod
    def from_mapping(cls, data: object) -> Release | None:
        """Parse a cached release entry."""
        if not isinstance(data, Mapping):
            return None
        tag = data.get("tag")
        if not isinstance(tag, str) or not is_semver_release_tag(tag):
            return None
        published = data.get("published_at")
        url = data.get("release_url")
        return cls(
            tag=tag,
            published_at=published if isinstance(published, str) else None,
            release_url=url if isinstance(url, str) else None,
        )


@dataclass(frozen=True)
class ReleaseCatalog:
    """Releases sorted newest first, plus freshness metadata."""

    releases: tuple[Release, ...]
    offline: bool = False
    last_synced_at: str | None = None

    @property
    def latest(self) -> Release | None:
        """Return the newest release, if any."""
        return self.releases[0] if self.releases else None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "releases": [release.to_dict() for release in self.releases],
            "offline": self.offline,
            "last_synced_at": self.last_synced_at,
        }


def normalize_releases(raw: list[Any]) -> list[Release]:
    """Filter raw API entries down to official releases, newest first."""
    releases: list[Release] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        if item.get("draft") or item.get("prerelease"):
            continue
        tag = item.get("tag_name")
        tag = tag.strip() if isinstance(tag, str) else ""
        if not is_semver_release_tag(tag):
            continue
        published = item.get("published_at")
        url = item.get("html_url")
        releases.append(
            Release(
                tag=tag,
                published_at=published if isinstance(published, str) else None,
                release_url=url if isinstance(url, str) else None,
            )
        )
    releases.sort(key=lambda release: semver_sort_key(release.tag), reverse=True)
    return releases


def _parse_iso(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReleaseCatalogClient:
    """Fetch and cache official releases for a ``owner/name`` repository."""

    def __init__(
        self,
        registry: StateRegistry,
        config: ReleasesConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 15.0,
    ) -> None:
        self._registry = registry
        self._config = config or ReleasesConfig()
        self._clock = clock
        self._http = httpx.Client(
            transport=transport,
            timeout=timeout,
            headers={"Accept": GITHUB_ACCEPT, "User-Agent": user_agent},
            follow_redirects=True,
        )

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()

    def fetch_all(self, repo: str) -> list[Any]:
        """Return every raw release entry, following ``Link`` pagination."""
        url: str | None = f"{self._config.api_url}/repos/{repo}/releases?per_page=100&page=1"
        raw: list[Any] = []
        pages = 0
        while url:
            if pages >= self._config.max_pages:
                raise RegistryError(
                    ErrorCode.RELEASES_PAGINATION_ERROR,
                    "Aborting release pagination after excessive pages",
                    details={"pages": pages},
                )
            pages += 1
            try:
                response = self._http.get(url)
            except httpx.HTTPError as exc:
                raise RegistryError(
                    ErrorCode.RELEASES_API_ERROR,
                    f"Release catalog request failed: {exc}",
                ) from exc
            if not response.is_success:
                raise RegistryError(
                    ErrorCode.RELEASES_API_ERROR,
                    f"Release catalog error: {response.status_code} {response.reason_phrase}",
                    status=response.status_code,
                )
            try:
                payload = response.json()
            except ValueError as exc:
                raise RegistryError(
                    ErrorCode.RELEASES_API_ERROR,
                    "Release catalog returned invalid JSON",
                ) from exc
            if isinstance(payload, list):
                raw.extend(payload)
            url = parse_link_next(response.headers)
        return raw

    def list_official_releases(self, repo: str, *, force_refresh: bool = False) -> ReleaseCatalog:
        """Return the release catalog, from cache when fresh.

        Raises :class:`~backendctl.errors.RegistryError` only when the fetch
        fails and no cached list for *repo* exists.
        """
        repo = repo.strip()
        cached = self._read_cache()
        cached_repo = cached.get("source_repo") if cached else None
        cached_fetched_at = cached.get("fetched_at") if cached else None
        cached_list = cached.get("releases") if cached else None
        usable_cache = (
            cached_repo == repo
            and isinstance(cached_list, list)
            and _parse_iso(cached_fetched_at) is not None
        )

        if usable_cache and not force_refresh:
            fetched = _parse_iso(cached_fetched_at)
            ttl = timedelta(hours=self._config.cache_ttl_hours)
            if fetched is not None and self._clock() - fetched < ttl:
                return ReleaseCatalog(
                    releases=self._parse_cached(cached_list),
                    last_synced_at=str(cached_fetched_at),
                )

        try:
            releases = normalize_releases(self.fetch_all(repo))
        except RegistryError as exc:
            if usable_cache:
                LOGGER.warning("Release catalog fetch failed; using cached list: %s", exc)
                return ReleaseCatalog(
                    releases=self._parse_cached(cached_list),
                    offline=True,
                    last_synced_at=str(cached_fetched_at),
                )
            raise

        fetched_at = self._clock().isoformat()
        try:
            self._registry.write_releases_cache(
                {
                    "source_repo": repo,
                    "fetched_at": fetched_at,
                    "releases": [release.to_dict() for release in releases],
                }
            )
        except StateRegistryError as exc:
            LOGGER.warning("Failed to persist release catalog cache: %s", exc)
        return ReleaseCatalog(releases=tuple(releases), last_synced_at=fetched_at)

    def _read_cache(self) -> dict[str, Any] | None:
        try:
            return self._registry.read_releases_cache()
        except StateRegistryError as exc:
            LOGGER.warning("Ignoring unreadable release catalog cache: %s", exc)
            return None

    @staticmethod
    def _parse_cached(entries: object) -> tuple[Release, ...]:
        parsed = [Release.from_mapping(item) for item in entries or []] if isinstance(entries, list) else []
        releases = [release for release in parsed if release is not None]
        releases.sort(key=lambda release: semver_sort_key(release.tag), reverse=True)
        return tuple(releases)


__all__ = [
    "Release",
    "ReleaseCatalog",
    "ReleaseCatalogClient",
    "normalize_releases",
]
