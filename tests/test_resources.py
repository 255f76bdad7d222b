"""Tests for resource id validation and handles."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from amiize.errors import LaunchFailure, ValidationFailure
from amiize.resources import (
    ResourceHandle,
    ResourceKind,
    require_resource_id,
    valid_resource_id,
)


class TestValidResourceId:
    """Tests for valid_resource_id()."""

    @pytest.mark.parametrize("kind,resource_id", [
        (ResourceKind.INSTANCE, "i-0a1b2c3d"),
        (ResourceKind.INSTANCE, "i-0123456789abcdef0"),
        (ResourceKind.VOLUME, "vol-0a1b2c3d"),
        (ResourceKind.VOLUME, "vol-0123456789abcdef0"),
        (ResourceKind.SNAPSHOT, "snap-deadbeef"),
        (ResourceKind.IMAGE, "ami-0f2176987ee50226e"),
    ])
    def test_accepts_well_formed_ids(self, kind, resource_id):
        assert valid_resource_id(kind, resource_id) is True

    @pytest.mark.parametrize("resource_id", [
        "i-XYZ",
        "",
        None,
        "i-0A1B2C3D",
        "i-0a1b2c3",
        "i-0a1b2c3d4",
        "i-0123456789abcdef",
        "i0a1b2c3d",
        " i-0a1b2c3d",
        "i-0a1b2c3d\n",
    ])
    def test_rejects_malformed_instance_ids(self, resource_id):
        assert valid_resource_id(ResourceKind.INSTANCE, resource_id) is False

    def test_prefix_must_match_kind(self):
        assert valid_resource_id(ResourceKind.INSTANCE, "vol-0a1b2c3d") is False
        assert valid_resource_id(ResourceKind.VOLUME, "i-0a1b2c3d") is False
        assert valid_resource_id(ResourceKind.SNAPSHOT, "ami-0a1b2c3d") is False

    def test_image_prefix_does_not_match_longer_prefix(self):
        assert valid_resource_id(ResourceKind.IMAGE, "amix-0a1b2c3d") is False


class TestResourceHandle:
    """Tests for ResourceHandle."""

    def test_str_is_id(self):
        h = ResourceHandle(kind=ResourceKind.SNAPSHOT, id="snap-0a1b2c3d")
        assert str(h) == "snap-0a1b2c3d"

    def test_rejects_malformed_id(self):
        with pytest.raises(ValidationError):
            ResourceHandle(kind=ResourceKind.INSTANCE, id="i-XYZ")

    def test_handles_compare_by_value(self):
        a = ResourceHandle(kind=ResourceKind.VOLUME, id="vol-0a1b2c3d")
        b = ResourceHandle(kind=ResourceKind.VOLUME, id="vol-0a1b2c3d")
        assert a == b


class TestRequireResourceId:
    """Tests for require_resource_id()."""

    def test_returns_handle(self):
        h = require_resource_id(ResourceKind.INSTANCE, "i-0a1b2c3d")
        assert h.kind is ResourceKind.INSTANCE
        assert h.id == "i-0a1b2c3d"

    def test_default_error_is_validation_failure(self):
        with pytest.raises(ValidationFailure):
            require_resource_id(ResourceKind.INSTANCE, "")

    def test_custom_error_and_message(self):
        with pytest.raises(LaunchFailure, match="No instance launched"):
            require_resource_id(
                ResourceKind.INSTANCE, None, LaunchFailure, "No instance launched",
            )
