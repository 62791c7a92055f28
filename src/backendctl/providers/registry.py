"""Container registry client (Docker Registry HTTP API v2).

The client answers three questions for the orchestrator:

* which tags a repository publishes (:meth:`RegistryClient.list_tags`);
* whether a tag exists and what its digest is (:meth:`RegistryClient.get_digest`);
* how large each layer of a platform-specific image is
  (:meth:`RegistryClient.get_layer_sizes`), used to stabilise pull progress.

Bearer tokens are cached per repository and refreshed once on ``401``.
``404`` is a normal "does not exist" answer, ``429`` raises
:class:`~backendctl.errors.RegistryRateLimitError`, and everything else raises
:class:`~backendctl.errors.RegistryError`.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import platform as platform_mod
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from ..cancellation import CancellationToken
from ..config import RegistryConfig
from ..errors import ErrorCode, RateLimitInfo, RegistryError, RegistryRateLimitError

LOGGER = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
    ]
)
LEAF_MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
    ]
)

TOKEN_EXPIRY_SKEW = 10.0
DEFAULT_TOKEN_TTL = 60.0
LAYER_SIZES_TTL = 30 * 60.0
MAX_TAG_PAGES = 2000

DOCKER_HUB_AUTH_KEYS = (
    "https://index.docker.io/v1/",
    "https://registry-1.docker.io",
    "registry-1.docker.io",
    "index.docker.io",
)

_LINK_NEXT_RE = re.compile(r'^<([^>]+)>\s*;\s*rel\s*=\s*"?next"?', re.IGNORECASE)
_ARCH_ALIASES = {"x64": "amd64", "x86_64": "amd64", "aarch64": "arm64"}


@dataclass(frozen=True)
class RemoteDigest:
    """Result of a manifest existence probe."""

    exists: bool
    digest: str | None = None
    content_type: str | None = None
    rate_limit: RateLimitInfo | None = None


@dataclass(frozen=True)
class Platform:
    """Desired image platform for manifest list resolution."""

    os: str = "linux"
    arch: str | None = None
    variant: str | None = None

    def resolved(self) -> Platform:
        """Return a copy with the architecture defaulted and normalised."""
        arch = (self.arch or platform_mod.machine() or "").strip().lower()
        return Platform(
            os=(self.os or "linux").strip() or "linux",
            arch=_ARCH_ALIASES.get(arch, arch),
            variant=(self.variant or "").strip() or None,
        )

    def cache_key(self) -> str:
        """Return the cache key fragment for this platform."""
        return f"{self.os}|{self.arch or ''}|{self.variant or ''}"


@dataclass(frozen=True)
class LayerSizes:
    """Per-layer compressed sizes for one platform-specific image."""

    exists: bool
    layers: Mapping[str, int] = field(default_factory=dict)
    total_bytes: int = 0
    digest: str | None = None
    content_type: str | None = None
    rate_limit: RateLimitInfo | None = None


@dataclass
class _CachedToken:
    token: str
    expires_at: float


def extract_rate_limit(headers: httpx.Headers) -> RateLimitInfo | None:
    """Return rate-limit metadata from response *headers*, if any."""
    limit = headers.get("ratelimit-limit") or None
    remaining = headers.get("ratelimit-remaining") or None
    reset = headers.get("ratelimit-reset") or None
    retry_after = headers.get("retry-after") or None
    if not (limit or remaining or reset or retry_after):
        return None
    return RateLimitInfo(limit=limit, remaining=remaining, reset=reset, retry_after=retry_after)


def parse_link_next(headers: httpx.Headers) -> str | None:
    """Return the ``rel="next"`` target of a ``Link`` header."""
    link = headers.get("link")
    if not link:
        return None
    for part in link.split(","):
        match = _LINK_NEXT_RE.match(part.strip())
        if match:
            return match.group(1)
    return None


def read_docker_basic_auth(env: Mapping[str, str] | None = None) -> str | None:
    """Return a ``Basic`` header for Docker Hub from the docker CLI config.

    Credential helpers are not invoked.
    """
    environ = os.environ if env is None else env
    config_dir = (environ.get("DOCKER_CONFIG") or "").strip()
    path = Path(config_dir).expanduser() if config_dir else Path.home() / ".docker"
    try:
        data = json.loads((path / "config.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    auths = data.get("auths") if isinstance(data, dict) else None
    if not isinstance(auths, dict):
        return None
    for key in DOCKER_HUB_AUTH_KEYS:
        entry = auths.get(key)
        auth = entry.get("auth") if isinstance(entry, dict) else None
        if not isinstance(auth, str) or not auth:
            continue
        try:
            decoded = base64.b64decode(auth, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            continue
        if ":" in decoded:
            return f"Basic {auth}"
    return None


class RegistryClient:
    """Synchronous registry client built on :mod:`httpx`."""

    def __init__(
        self,
        config: RegistryConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._config = config or RegistryConfig()
        self._clock = clock
        self._env = env
        self._http = httpx.Client(
            transport=transport,
            timeout=self._config.request_timeout,
            headers={"User-Agent": self._config.user_agent},
            follow_redirects=True,
        )
        self._lock = threading.Lock()
        self._tokens: dict[str, _CachedToken] = {}
        self._layer_cache: dict[str, tuple[float, LayerSizes]] = {}
        self._basic_auth: str | None = None
        self._basic_auth_loaded = False

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------
    def _tags_url(self, repo: str) -> str:
        return f"{self._config.base_url}/v2/{repo}/tags/list?n={self._config.page_size}"

    def _manifest_url(self, repo: str, reference: str) -> str:
        return f"{self._config.base_url}/v2/{repo}/manifests/{quote(reference, safe=':')}"

    def _resolve_link(self, link: str) -> str:
        return str(httpx.URL(f"{self._config.base_url}/").join(link))

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def _docker_basic_auth(self) -> str | None:
        if not self._basic_auth_loaded:
            self._basic_auth = read_docker_basic_auth(self._env)
            self._basic_auth_loaded = True
        return self._basic_auth

    def _token(self, repo: str, *, force_refresh: bool = False) -> str:
        now = self._clock()
        with self._lock:
            cached = self._tokens.get(repo)
            if (
                not force_refresh
                and cached is not None
                and cached.expires_at > now + TOKEN_EXPIRY_SKEW
            ):
                return cached.token

        headers = {"Accept": "application/json"}
        basic = self._docker_basic_auth()
        if basic:
            headers["Authorization"] = basic
        params = {"service": self._config.service, "scope": f"repository:{repo}:pull"}
        try:
            response = self._http.get(self._config.auth_url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise RegistryError(
                ErrorCode.REGISTRY_AUTH_FAILED,
                f"Failed to obtain registry token: {exc}",
            ) from exc

        rate_limit = extract_rate_limit(response.headers)
        if response.status_code == 429:
            raise RegistryRateLimitError(status=429, rate_limit=rate_limit)
        if not response.is_success:
            raise RegistryError(
                ErrorCode.REGISTRY_AUTH_FAILED,
                "Failed to obtain registry token",
                status=response.status_code,
                rate_limit=rate_limit,
                details={"body": response.text[:500]},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistryError(
                ErrorCode.REGISTRY_AUTH_FAILED,
                "Token response is not valid JSON",
                rate_limit=rate_limit,
            ) from exc
        token = payload.get("token") or payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise RegistryError(
                ErrorCode.REGISTRY_AUTH_FAILED,
                "Token response missing token field",
                rate_limit=rate_limit,
            )
        expires_in = payload.get("expires_in")
        ttl = float(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else DEFAULT_TOKEN_TTL
        with self._lock:
            self._tokens[repo] = _CachedToken(token=token, expires_at=now + ttl)
        return token

    def _authorized(
        self,
        method: str,
        url: str,
        *,
        repo: str,
        accept: str,
        cancel: CancellationToken | None,
    ) -> httpx.Response:
        """Send a request with a bearer token, retrying once on ``401``."""
        if cancel is not None:
            cancel.raise_if_cancelled()
        response = self._send(method, url, accept=accept, token=self._token(repo))
        if response.status_code == 401:
            if cancel is not None:
                cancel.raise_if_cancelled()
            fresh = self._token(repo, force_refresh=True)
            response = self._send(method, url, accept=accept, token=fresh)
        return response

    def _send(self, method: str, url: str, *, accept: str, token: str) -> httpx.Response:
        headers = {"Accept": accept, "Authorization": f"Bearer {token}"}
        try:
            return self._http.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            raise RegistryError(
                ErrorCode.REGISTRY_ERROR,
                f"Registry request failed: {exc}",
                details={"url": url},
            ) from exc

    @staticmethod
    def _raise_for_failure(response: httpx.Response, message: str) -> None:
        rate_limit = extract_rate_limit(response.headers)
        if response.status_code == 429:
            raise RegistryRateLimitError(status=429, rate_limit=rate_limit)
        body = "" if response.request.method == "HEAD" else response.text[:500]
        raise RegistryError(
            ErrorCode.REGISTRY_ERROR,
            message,
            status=response.status_code,
            rate_limit=rate_limit,
            details={"body": body} if body else None,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def list_tags(self, repo: str, *, cancel: CancellationToken | None = None) -> list[str]:
        """Return every tag published for *repo*, de-duplicated and sorted."""
        repo = repo.strip()
        tags: set[str] = set()
        url = self._tags_url(repo)
        page = 0
        while True:
            if page > MAX_TAG_PAGES:
                raise RegistryError(
                    ErrorCode.REGISTRY_PAGINATION_ERROR,
                    "Aborting tag pagination after excessive pages",
                    details={"pages": page},
                )
            response = self._authorized("GET", url, repo=repo, accept="application/json", cancel=cancel)
            if not response.is_success:
                self._raise_for_failure(response, "Failed to list tags")
            try:
                payload = response.json()
            except ValueError as exc:
                raise RegistryError(ErrorCode.REGISTRY_ERROR, "Tag list is not valid JSON") from exc
            page_tags = payload.get("tags") if isinstance(payload, dict) else None
            tags.update(tag for tag in page_tags or [] if isinstance(tag, str))

            link = parse_link_next(response.headers)
            if not link:
                break
            next_url = self._resolve_link(link)
            if next_url == str(httpx.URL(url)):
                raise RegistryError(
                    ErrorCode.REGISTRY_PAGINATION_ERROR,
                    "Registry pagination did not advance",
                    details={"url": url},
                )
            url = next_url
            page += 1
        return sorted(tags)

    def get_digest(
        self,
        repo: str,
        tag: str,
        *,
        cancel: CancellationToken | None = None,
    ) -> RemoteDigest:
        """Probe *repo:tag* with a ``HEAD`` manifest request."""
        repo = repo.strip()
        url = self._manifest_url(repo, tag.strip())
        response = self._authorized("HEAD", url, repo=repo, accept=MANIFEST_ACCEPT, cancel=cancel)
        rate_limit = extract_rate_limit(response.headers)
        if response.status_code == 404:
            return RemoteDigest(exists=False, rate_limit=rate_limit)
        if not response.is_success:
            self._raise_for_failure(response, "Failed to fetch manifest digest")
        digest = response.headers.get("docker-content-digest") or None
        content_type = response.headers.get("content-type") or None
        if not digest:
            raise RegistryError(
                ErrorCode.REGISTRY_NO_DIGEST,
                "Registry response missing Docker-Content-Digest header",
                rate_limit=rate_limit,
                details={"content_type": content_type},
            )
        return RemoteDigest(exists=True, digest=digest, content_type=content_type, rate_limit=rate_limit)

    def get_layer_sizes(
        self,
        repo: str,
        tag: str,
        platform: Platform | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> LayerSizes:
        """Return layer sizes for the image matching *platform*.

        Results (including "does not exist") are cached for 30 minutes.
        """
        repo = repo.strip()
        tag = tag.strip()
        desired = (platform or Platform()).resolved()
        cache_key = f"{repo}|{tag}|{desired.cache_key()}"
        now = self._clock()
        with self._lock:
            cached = self._layer_cache.get(cache_key)
            if cached is not None and cached[0] > now:
                return cached[1]

        top = self._fetch_manifest(repo, tag, MANIFEST_ACCEPT, cancel)
        if top is None:
            result = LayerSizes(exists=False)
            self._store_layer_sizes(cache_key, now, result)
            return result

        manifest, digest, content_type, rate_limit = top
        entries = manifest.get("manifests")
        if isinstance(entries, list) and entries:
            selected = select_platform_manifest(entries, desired)
            if selected is not None:
                leaf = self._fetch_manifest(repo, selected, LEAF_MANIFEST_ACCEPT, cancel)
                if leaf is not None:
                    manifest = leaf[0]
                    digest = leaf[1] or digest
                    content_type = leaf[2] or content_type
                    rate_limit = leaf[3] or rate_limit

        layers: dict[str, int] = {}
        total = 0
        for layer in manifest.get("layers") or []:
            if not isinstance(layer, dict):
                continue
            layer_digest = layer.get("digest")
            size = layer.get("size")
            if not isinstance(layer_digest, str) or ":" not in layer_digest:
                continue
            if isinstance(size, bool) or not isinstance(size, (int, float)) or size <= 0:
                continue
            layer_id = layer_digest.removeprefix("sha256:")[:12]
            if not layer_id:
                continue
            layers[layer_id] = int(size)
            total += int(size)

        result = LayerSizes(
            exists=True,
            layers=layers,
            total_bytes=total,
            digest=digest,
            content_type=content_type,
            rate_limit=rate_limit,
        )
        self._store_layer_sizes(cache_key, now, result)
        return result

    def _store_layer_sizes(self, key: str, now: float, value: LayerSizes) -> None:
        with self._lock:
            self._layer_cache[key] = (now + LAYER_SIZES_TTL, value)

    def _fetch_manifest(
        self,
        repo: str,
        reference: str,
        accept: str,
        cancel: CancellationToken | None,
    ) -> tuple[dict[str, Any], str | None, str | None, RateLimitInfo | None] | None:
        url = self._manifest_url(repo, reference)
        response = self._authorized("GET", url, repo=repo, accept=accept, cancel=cancel)
        if response.status_code == 404:
            return None
        if not response.is_success:
            self._raise_for_failure(response, "Failed to fetch manifest")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistryError(ErrorCode.REGISTRY_ERROR, "Manifest is not valid JSON") from exc
        return (
            payload if isinstance(payload, dict) else {},
            response.headers.get("docker-content-digest") or None,
            response.headers.get("content-type") or None,
            extract_rate_limit(response.headers),
        )


def select_platform_manifest(entries: list[Any], desired: Platform) -> str | None:
    """Pick the manifest digest matching *desired* from a manifest list.

    Preference order: exact os/arch (and variant when requested), then the
    first entry with a matching OS, then the first entry with a digest.
    """
    candidates = [
        entry
        for entry in entries
        if isinstance(entry, dict) and isinstance(entry.get("digest"), str) and entry.get("digest")
    ]

    def _platform(entry: dict[str, Any]) -> dict[str, Any]:
        value = entry.get("platform")
        return value if isinstance(value, dict) else {}

    for entry in candidates:
        plat = _platform(entry)
        if plat.get("os") != desired.os or plat.get("architecture") != desired.arch:
            continue
        if desired.variant and plat.get("variant") != desired.variant:
            continue
        return str(entry["digest"])
    for entry in candidates:
        if _platform(entry).get("os") == desired.os:
            return str(entry["digest"])
    return str(candidates[0]["digest"]) if candidates else None


__all__ = [
    "LayerSizes",
    "MANIFEST_ACCEPT",
    "Platform",
    "RegistryClient",
    "RemoteDigest",
    "extract_rate_limit",
    "parse_link_next",
    "read_docker_basic_auth",
    "select_platform_manifest",
]
