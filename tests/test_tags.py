"""Tag classification and allow-list tests."""
from __future__ import annotations

import pytest

from backendctl.errors import ErrorCode, ValidationError
from backendctl.tags import (
    assert_tag_allowed_for_activate,
    assert_tag_allowed_for_install,
    display_version,
    image_ref,
    is_safe_tag,
    is_semver_release_tag,
    semver_sort_key,
)


@pytest.mark.parametrize(
    ("tag", "expected"),
    [
        ("v1.2.3", True),
        ("v0.9.0-rc.1", True),
        ("v1.2.3+build.5", True),
        ("1.2.3", False),
        ("v1.2", False),
        ("v01.2.3", False),
        ("testing", False),
        (None, False),
    ],
)
def test_is_semver_release_tag(tag: str | None, expected: bool) -> None:
    """Only v-prefixed semantic versions count as releases."""
    assert is_semver_release_tag(tag) is expected


@pytest.mark.parametrize("tag", ["../etc", "a:b", "a/b", "has space", "-leading", "", "x" * 129])
def test_is_safe_tag_rejects_dangerous_values(tag: str) -> None:
    """Tags that could escape a reference or a path are unsafe."""
    assert is_safe_tag(tag) is False


def test_display_version() -> None:
    """Preview and release tags get friendly labels."""
    assert display_version("testing") == "Testing"
    assert display_version("v1.2.3") == "1.2.3"
    assert display_version("local") == "local"


def test_install_allow_list() -> None:
    """Install accepts preview, release, and canonical local tags only."""
    for tag in ("testing", "v1.2.3", "local", "development", "main", " v2.0.0 "):
        assert assert_tag_allowed_for_install(tag) == tag.strip()
    with pytest.raises(ValidationError) as excinfo:
        assert_tag_allowed_for_install("feature-x")
    assert excinfo.value.code is ErrorCode.TAG_NOT_ALLOWED
    with pytest.raises(ValidationError) as invalid:
        assert_tag_allowed_for_install(42)
    assert invalid.value.code is ErrorCode.INVALID_TAG


def test_activate_accepts_custom_local_tags() -> None:
    """Activation only requires a safe tag."""
    assert assert_tag_allowed_for_activate("feature-x") == "feature-x"
    with pytest.raises(ValidationError):
        assert_tag_allowed_for_activate("a:b")


def test_semver_sort_key_orders_prereleases_first() -> None:
    """Pre-releases sort below the matching release."""
    tags = ["v1.10.0", "v1.2.0", "v1.10.0-rc.1", "v2.0.0"]
    assert sorted(tags, key=semver_sort_key) == ["v1.2.0", "v1.10.0-rc.1", "v1.10.0", "v2.0.0"]
    with pytest.raises(ValueError):
        semver_sort_key("latest")


def test_image_ref() -> None:
    """image_ref joins repository and tag."""
    assert image_ref("acme/backend", "v1.0.0") == "acme/backend:v1.0.0"
