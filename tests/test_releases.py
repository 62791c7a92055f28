"""Release catalog client tests."""
from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from backendctl.config import ReleasesConfig
from backendctl.errors import ErrorCode, RegistryError
from backendctl.providers.releases import Release, ReleaseCatalogClient, normalize_releases
from backendctl.state import StateRegistry

REPO = "acme/backend"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _Api:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.pages: list[list[dict[str, object]]] = [
            [
                {"tag_name": "v1.2.0", "published_at": "2026-02-01T00:00:00Z", "html_url": "https://x/v1.2.0"},
                {"tag_name": "v1.3.0-rc.1", "prerelease": True},
                {"tag_name": "v1.10.0", "draft": True},
            ],
            [
                {"tag_name": "v1.3.0", "published_at": "2026-02-20T00:00:00Z"},
                {"tag_name": "nightly"},
            ],
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status)
        page = int(request.url.params.get("page", "1"))
        headers = {}
        if page < len(self.pages):
            headers["Link"] = f'<https://api.github.com/repos/{REPO}/releases?per_page=100&page={page + 1}>; rel="next"'
        return httpx.Response(200, json=self.pages[page - 1], headers=headers)


class _Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def api() -> _Api:
    return _Api()


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


@pytest.fixture()
def registry(tmp_path: Path) -> StateRegistry:
    return StateRegistry(tmp_path / "state")


@pytest.fixture()
def catalog(api: _Api, clock: _Clock, registry: StateRegistry) -> Iterator[ReleaseCatalogClient]:
    client = ReleaseCatalogClient(registry, transport=httpx.MockTransport(api), clock=clock)
    yield client
    client.close()


def test_normalize_releases_filters_and_sorts() -> None:
    """Drafts, prereleases, and non-semver tags are dropped; newest first."""
    releases = normalize_releases(
        [
            {"tag_name": "v1.9.0"},
            {"tag_name": " v1.10.0 "},
            {"tag_name": "v2.0.0", "draft": True},
            {"tag_name": "latest"},
            "garbage",
        ]
    )
    assert [release.tag for release in releases] == ["v1.10.0", "v1.9.0"]


def test_fetch_follows_pages_and_writes_cache(api: _Api, catalog: ReleaseCatalogClient, registry: StateRegistry) -> None:
    """Every page is fetched once and the normalised list is cached."""
    result = catalog.list_official_releases(REPO)

    assert [release.tag for release in result.releases] == ["v1.3.0", "v1.2.0"]
    assert result.latest == Release("v1.3.0", published_at="2026-02-20T00:00:00Z")
    assert not result.offline
    assert len(api.requests) == 2
    assert api.requests[0].headers["accept"] == "application/vnd.github.v3+json"

    cached = registry.read_releases_cache()
    assert cached is not None
    assert cached["source_repo"] == REPO
    assert [entry["tag"] for entry in cached["releases"]] == ["v1.3.0", "v1.2.0"]


def test_fresh_cache_skips_network(api: _Api, catalog: ReleaseCatalogClient, clock: _Clock) -> None:
    """A cache younger than the TTL is served as-is."""
    catalog.list_official_releases(REPO)
    clock.now = NOW + timedelta(hours=23)

    result = catalog.list_official_releases(REPO)

    assert [release.tag for release in result.releases] == ["v1.3.0", "v1.2.0"]
    assert result.last_synced_at == NOW.isoformat()
    assert len(api.requests) == 2


def test_force_refresh_and_expired_cache_refetch(api: _Api, catalog: ReleaseCatalogClient, clock: _Clock) -> None:
    """Forced or expired lookups go back to the API."""
    catalog.list_official_releases(REPO)
    catalog.list_official_releases(REPO, force_refresh=True)
    assert len(api.requests) == 4

    clock.now = NOW + timedelta(hours=25)
    catalog.list_official_releases(REPO)
    assert len(api.requests) == 6


def test_cache_for_other_repo_is_ignored(api: _Api, catalog: ReleaseCatalogClient) -> None:
    """A cache written for a different repository is not reused."""
    catalog.list_official_releases("acme/other")
    catalog.list_official_releases(REPO)
    assert len(api.requests) == 4


def test_failure_falls_back_to_cache_offline(api: _Api, catalog: ReleaseCatalogClient) -> None:
    """A failed refresh serves the cached list marked offline."""
    catalog.list_official_releases(REPO)
    api.status = 503

    result = catalog.list_official_releases(REPO, force_refresh=True)

    assert result.offline
    assert [release.tag for release in result.releases] == ["v1.3.0", "v1.2.0"]


def test_failure_without_cache_raises(api: _Api, catalog: ReleaseCatalogClient) -> None:
    """Without a cache the API error propagates."""
    api.status = 403
    with pytest.raises(RegistryError) as excinfo:
        catalog.list_official_releases(REPO)
    assert excinfo.value.code is ErrorCode.RELEASES_API_ERROR
    assert excinfo.value.status == 403


def test_pagination_is_bounded(api: _Api, registry: StateRegistry, clock: _Clock) -> None:
    """Runaway pagination is aborted."""
    client = ReleaseCatalogClient(
        registry, ReleasesConfig(max_pages=1), transport=httpx.MockTransport(api), clock=clock
    )
    with pytest.raises(RegistryError) as excinfo:
        client.fetch_all(REPO)
    client.close()
    assert excinfo.value.code is ErrorCode.RELEASES_PAGINATION_ERROR


def test_cached_entries_are_validated(registry: StateRegistry, api: _Api, catalog: ReleaseCatalogClient) -> None:
    """Malformed cached entries are skipped."""
    registry.write_releases_cache(
        {
            "source_repo": REPO,
            "fetched_at": NOW.isoformat(),
            "releases": [{"tag": "v1.0.0"}, {"tag": "nightly"}, "junk"],
        }
    )
    result = catalog.list_official_releases(REPO)
    assert [release.tag for release in result.releases] == ["v1.0.0"]
    assert api.requests == []
