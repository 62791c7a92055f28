"""Image tag classification and allow-list checks."""
from __future__ import annotations

import re

from packaging.version import Version

from .errors import ErrorCode, ValidationError

PREVIEW_TAG = "testing"
LATEST_TAG = "latest"
CANONICAL_LOCAL_TAGS: tuple[str, ...] = ("local", "development", "main")
MAX_TAG_LENGTH = 128

_SAFE_TAG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
# Semantic Versioning 2.0.0, without the leading "v".
_SEMVER_RE = re.compile(
    r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*))*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


def is_safe_tag(tag: str | None) -> bool:
    """Return ``True`` when *tag* cannot form a repository reference or a path."""
    value = (tag or "").strip()
    if not value or len(value) > MAX_TAG_LENGTH:
        return False
    if ":" in value or "/" in value or any(ch.isspace() for ch in value):
        return False
    return bool(_SAFE_TAG_RE.match(value))


def is_semver_release_tag(tag: str | None) -> bool:
    """Return ``True`` for ``v``-prefixed semantic versions such as ``v1.2.3``."""
    value = (tag or "").strip()
    if not value.startswith("v"):
        return False
    return bool(_SEMVER_RE.match(value[1:]))


def is_preview_tag(tag: str | None) -> bool:
    """Return ``True`` for the preview channel tag."""
    return (tag or "").strip() == PREVIEW_TAG


def is_canonical_local_tag(tag: str | None) -> bool:
    """Return ``True`` for tags reserved for local builds."""
    return (tag or "").strip() in CANONICAL_LOCAL_TAGS


def semver_sort_key(tag: str) -> tuple[Version, int, str]:
    """Return an ordering key for a ``v``-prefixed semantic version tag.

    Releases sort by their core version first; a pre-release sorts below the
    matching final release.
    """
    match = _SEMVER_RE.match(tag.strip().removeprefix("v"))
    if match is None:
        raise ValueError(f"Not a semantic version tag: {tag!r}")
    core = Version(f"{match['major']}.{match['minor']}.{match['patch']}")
    prerelease = match["prerelease"] or ""
    return (core, 0 if prerelease else 1, prerelease)


def display_version(tag: str) -> str:
    """Return the human label for *tag*."""
    if is_preview_tag(tag):
        return "Testing"
    if is_semver_release_tag(tag):
        return tag[1:]
    return tag


def assert_tag_allowed_for_install(tag: object) -> str:
    """Validate *tag* for installation and return it stripped."""
    value = tag.strip() if isinstance(tag, str) else ""
    if not is_safe_tag(value):
        raise ValidationError(ErrorCode.INVALID_TAG, "Invalid tag", details={"tag": str(tag)})
    if not (is_preview_tag(value) or is_semver_release_tag(value) or is_canonical_local_tag(value)):
        raise ValidationError(
            ErrorCode.TAG_NOT_ALLOWED,
            "Tag not allowed for install",
            details={"tag": value},
        )
    return value


def assert_tag_allowed_for_activate(tag: object) -> str:
    """Validate *tag* for activation; installed custom local builds are allowed."""
    value = tag.strip() if isinstance(tag, str) else ""
    if not is_safe_tag(value):
        raise ValidationError(ErrorCode.INVALID_TAG, "Invalid tag", details={"tag": str(tag)})
    return value


def image_ref(image_repo: str, tag: str) -> str:
    """Return ``repo:tag``."""
    return f"{image_repo}:{tag}"


__all__ = [
    "CANONICAL_LOCAL_TAGS",
    "LATEST_TAG",
    "PREVIEW_TAG",
    "assert_tag_allowed_for_activate",
    "assert_tag_allowed_for_install",
    "display_version",
    "image_ref",
    "is_canonical_local_tag",
    "is_preview_tag",
    "is_safe_tag",
    "is_semver_release_tag",
    "semver_sort_key",
]
