"""Pure helpers that turn runtime, registry, and catalog inputs into version rows."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace

from .installability import Installability, InstallabilityEntry
from .models import Availability, VersionCategory, VersionRow
from .providers.releases import Release
from .providers.runtime import LocalImage
from .retention import RetainedContainer
from .tags import (
    CANONICAL_LOCAL_TAGS,
    LATEST_TAG,
    PREVIEW_TAG,
    display_version,
    is_canonical_local_tag,
    is_preview_tag,
    is_semver_release_tag,
)

DEAD_RELEASE_STREAK = 2
SHORT_DIGEST_LENGTH = 12
_DIGEST_PREFIX = "sha256:"


# ---------------------------------------------------------------------------
# Releases and local images
# ---------------------------------------------------------------------------
def trim_dead_releases(
    releases: Sequence[Release],
    remote_tags: Iterable[str] | None,
) -> list[Release]:
    """Drop releases missing from the registry.

    Gaps are tolerated, but after two consecutive misses the remaining (older)
    releases are assumed to be gone as well. An unknown or empty tag list
    leaves *releases* untouched.
    """
    known = set(remote_tags or ())
    if not known:
        return list(releases)
    trimmed: list[Release] = []
    missing = 0
    for release in releases:
        if release.tag in known:
            trimmed.append(release)
            missing = 0
            continue
        missing += 1
        if missing >= DEAD_RELEASE_STREAK:
            break
    return trimmed


def index_local_images(images: Iterable[LocalImage]) -> dict[str, LocalImage]:
    """Return the first local image seen for each tag."""
    by_tag: dict[str, LocalImage] = {}
    for image in images:
        tag = (image.tag or "").strip()
        if tag and tag not in by_tag:
            by_tag[tag] = image
    return by_tag


def probe_candidates(
    *,
    latest_release: str | None,
    active_tag: str | None,
    retained: Iterable[RetainedContainer],
    local_tags: Iterable[str],
) -> list[str]:
    """Return the tags whose installability is worth probing, in probe order."""
    candidates: dict[str, None] = {PREVIEW_TAG: None, LATEST_TAG: None}
    if latest_release:
        candidates[latest_release] = None
    if active_tag and (is_preview_tag(active_tag) or is_semver_release_tag(active_tag)):
        candidates[active_tag] = None
    for item in retained:
        if is_preview_tag(item.version_tag) or is_semver_release_tag(item.version_tag):
            candidates[item.version_tag] = None
    local = list(local_tags)
    for tag in local:
        if is_semver_release_tag(tag):
            candidates[tag] = None
    for tag in CANONICAL_LOCAL_TAGS:
        if tag in local:
            candidates[tag] = None
    return list(candidates)


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------
def extract_local_digest(repo_digests: Iterable[str]) -> str | None:
    """Return the ``sha256:`` digest from the first ``repo@digest`` entry."""
    for entry in repo_digests:
        if not isinstance(entry, str) or "@" not in entry:
            continue
        digest = entry.split("@", 1)[1].strip()
        if digest.startswith(_DIGEST_PREFIX) and len(digest) > 15:
            return digest
    return None


def short_digest(digest: str | None) -> str:
    """Return the first 12 hex characters of a ``sha256:`` digest."""
    if not digest:
        return ""
    value = digest.removeprefix(_DIGEST_PREFIX)
    return value[:SHORT_DIGEST_LENGTH]


def build_digest_hint(published: str | None, local: str | None) -> str | None:
    """Return ``Published: <short> / Local: <short>`` when both digests are known."""
    if not published or not local:
        return None
    return f"Published: {short_digest(published)} / Local: {short_digest(local)}"


def _published_digest(entry: InstallabilityEntry | None) -> str | None:
    return entry.digest if entry is not None and entry.digest else None


def _installability_value(entry: InstallabilityEntry | None) -> str:
    if entry is None:
        return Installability.UNKNOWN.value
    return entry.status.value


# ---------------------------------------------------------------------------
# Version rows
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class VersionInputs:
    """Everything :func:`build_version_rows` needs."""

    releases: Sequence[Release]
    local_by_tag: Mapping[str, LocalImage]
    entries: Mapping[str, InstallabilityEntry]
    active_tag: str | None = None
    active_state: str | None = None
    installing_tag: str | None = None


def build_version_rows(inputs: VersionInputs) -> list[VersionRow]:
    """Return the preview row, official release rows, then local build rows."""
    latest = inputs.releases[0].tag if inputs.releases else None
    rows = [_preview_row(inputs)]
    rows.extend(_release_rows(inputs, latest))
    rows.extend(_local_build_rows(inputs, latest))
    if inputs.installing_tag:
        rows = [
            _with_availability(row, Availability.INSTALLING) if row.id == inputs.installing_tag else row
            for row in rows
        ]
    return rows


def _with_availability(row: VersionRow, availability: Availability) -> VersionRow:
    return replace(row, availability=availability)


def _active_fields(inputs: VersionInputs, tag: str) -> tuple[bool, str | None]:
    is_active = inputs.active_tag == tag
    return is_active, (inputs.active_state if is_active else None)


def _preview_row(inputs: VersionInputs) -> VersionRow:
    tag = PREVIEW_TAG
    image = inputs.local_by_tag.get(tag)
    entry = inputs.entries.get(tag)
    local_digest = extract_local_digest(image.repo_digests) if image else None
    published = _published_digest(entry)
    differs = bool(local_digest and published and local_digest != published)
    is_active, active_state = _active_fields(inputs, tag)
    return VersionRow(
        id=tag,
        display_version=display_version(tag),
        category=VersionCategory.OFFICIAL_RELEASE,
        availability=Availability.INSTALLED if image else Availability.AVAILABLE,
        installability=_installability_value(entry),
        is_active=is_active,
        active_state=active_state,
        size_bytes=image.size_bytes if image else None,
        channel_badges=("testing",),
        match_hint="Differs from published preview" if differs else None,
        digest_hint=build_digest_hint(published, local_digest) if differs else None,
        differs_from_published=differs,
    )


def _release_rows(inputs: VersionInputs, latest: str | None) -> list[VersionRow]:
    rows: list[VersionRow] = []
    for release in inputs.releases:
        tag = release.tag.strip()
        if not is_semver_release_tag(tag):
            continue
        image = inputs.local_by_tag.get(tag)
        entry = inputs.entries.get(tag)
        local_digest = extract_local_digest(image.repo_digests) if image else None
        published = _published_digest(entry)
        differs = bool(local_digest and published and local_digest != published)
        is_active, active_state = _active_fields(inputs, tag)

        availability = Availability.INSTALLED if image else Availability.AVAILABLE
        if is_active and latest and tag != latest:
            availability = Availability.UPDATE_AVAILABLE

        rows.append(
            VersionRow(
                id=tag,
                display_version=display_version(tag),
                category=VersionCategory.OFFICIAL_RELEASE,
                availability=availability,
                installability=_installability_value(entry),
                is_active=is_active,
                active_state=active_state,
                published_at=release.published_at,
                size_bytes=image.size_bytes if image else None,
                channel_badges=("latest",) if tag == latest else (),
                match_hint="Differs from published version" if differs else None,
                digest_hint=build_digest_hint(published, local_digest) if differs else None,
                differs_from_published=differs,
            )
        )
    return rows


def _local_build_sort_key(tag: str) -> tuple[int, int, str]:
    if is_canonical_local_tag(tag):
        return (0, CANONICAL_LOCAL_TAGS.index(tag), "")
    return (1, 0, tag)


def _fallback_match_hint(
    local_digest: str,
    entries: Mapping[str, InstallabilityEntry],
    latest: str | None,
) -> str | None:
    for tag, entry in entries.items():
        if entry.status is not Installability.INSTALLABLE or entry.digest != local_digest:
            continue
        if is_semver_release_tag(tag):
            return f"Matches published version {display_version(tag)}"
        if tag == LATEST_TAG and latest:
            return f"Matches latest release {display_version(latest)}"
        if tag == PREVIEW_TAG:
            return "Matches published preview"
        return None
    return None


def _local_build_rows(inputs: VersionInputs, latest: str | None) -> list[VersionRow]:
    official = {PREVIEW_TAG}
    official.update(release.tag for release in inputs.releases if is_semver_release_tag(release.tag))
    tags = sorted((tag for tag in inputs.local_by_tag if tag not in official), key=_local_build_sort_key)

    rows: list[VersionRow] = []
    for tag in tags:
        image = inputs.local_by_tag[tag]
        entry = inputs.entries.get(tag)
        local_digest = extract_local_digest(image.repo_digests)
        is_active, active_state = _active_fields(inputs, tag)

        installability: str | None = None
        match_hint: str | None = None
        digest_hint: str | None = None
        differs: bool | None = None
        if is_canonical_local_tag(tag):
            installability = _installability_value(entry)
            published = _published_digest(entry)
            if entry is not None and entry.status is Installability.INSTALLABLE and local_digest and published:
                if local_digest == published:
                    match_hint = "Matches published version"
                    differs = False
                else:
                    match_hint = "Differs from published version"
                    differs = True
                    digest_hint = build_digest_hint(published, local_digest)
        if match_hint is None and local_digest:
            match_hint = _fallback_match_hint(local_digest, inputs.entries, latest)

        rows.append(
            VersionRow(
                id=tag,
                display_version=tag,
                category=VersionCategory.LOCAL_BUILD,
                availability=Availability.INSTALLED,
                installability=installability,
                is_active=is_active,
                active_state=active_state,
                size_bytes=image.size_bytes,
                match_hint=match_hint,
                digest_hint=digest_hint,
                differs_from_published=differs,
            )
        )
    return rows


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ImageStats:
    used_bytes: int | None
    max_image_bytes: int | None


def image_stats(images: Iterable[LocalImage]) -> ImageStats:
    """Sum the largest reported size of each unique image id."""
    by_id: dict[str, int] = {}
    for image in images:
        size = image.size_bytes
        if not image.image_id or size is None or size <= 0:
            continue
        by_id[image.image_id] = max(by_id.get(image.image_id, 0), size)
    if not by_id:
        return ImageStats(used_bytes=None, max_image_bytes=None)
    return ImageStats(used_bytes=sum(by_id.values()), max_image_bytes=max(by_id.values()))


def estimate_after_update(
    free_bytes: int | None,
    latest_release: str | None,
    local_by_tag: Mapping[str, LocalImage],
    stats: ImageStats,
) -> int | None:
    """Estimate free space after pulling the latest release."""
    if free_bytes is None or not latest_release:
        return None
    if latest_release in local_by_tag:
        return max(0, free_bytes)
    if stats.max_image_bytes is None:
        return None
    return max(0, free_bytes - stats.max_image_bytes)


__all__ = [
    "ImageStats",
    "VersionInputs",
    "build_digest_hint",
    "build_version_rows",
    "estimate_after_update",
    "extract_local_digest",
    "image_stats",
    "index_local_images",
    "probe_candidates",
    "short_digest",
    "trim_dead_releases",
]
