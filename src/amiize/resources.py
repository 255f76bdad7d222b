"""
Typed provider resource identifiers.

EC2 ids are a kind prefix, a dash, and either an 8- or a 17-character
lowercase hex suffix (``i-0a1b2c3d``, ``vol-0123456789abcdef0``).
Every id returned by a creation call is checked against that shape
before it is stored or acted on; a malformed or empty id means the
creation failed.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional, Type

from pydantic import BaseModel, model_validator

from .errors import AmiizeError, ValidationFailure


class ResourceKind(str, Enum):
    """Kinds of provider resources, valued by their id prefix."""

    INSTANCE = "i"
    VOLUME = "vol"
    SNAPSHOT = "snap"
    IMAGE = "ami"

    @property
    def pattern(self) -> re.Pattern:
        """Compiled full-match pattern for ids of this kind."""
        return re.compile(rf"{self.value}-([a-f0-9]{{8}}|[a-f0-9]{{17}})")


def valid_resource_id(kind: ResourceKind, resource_id: Optional[str]) -> bool:
    """Whether ``resource_id`` has the provider's id shape for ``kind``.

    Args:
        kind: Expected resource kind.
        resource_id: Candidate id. ``None`` and ``""`` are never valid.

    Returns:
        True if the id matches the prefix and hex-length rules.
    """
    if not resource_id:
        return False
    return kind.pattern.fullmatch(resource_id) is not None


def require_resource_id(
    kind: ResourceKind,
    resource_id: Optional[str],
    error: Type[AmiizeError] = ValidationFailure,
    message: str = "",
) -> "ResourceHandle":
    """Validate an id and wrap it in a handle, raising ``error`` otherwise.

    Args:
        kind: Expected resource kind.
        resource_id: Id returned by the provider.
        error: Exception class raised for a malformed id.
        message: Context for the error message.

    Returns:
        ResourceHandle for the id.
    """
    if not valid_resource_id(kind, resource_id):
        prefix = f"{message}: " if message else ""
        raise error(f"{prefix}invalid {kind.name.lower()} id {resource_id!r}")
    return ResourceHandle(kind=kind, id=resource_id)


class ResourceHandle(BaseModel):
    """A validated provider identifier tagged with its kind."""

    kind: ResourceKind
    id: str

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_shape(self) -> "ResourceHandle":
        if not valid_resource_id(self.kind, self.id):
            raise ValueError(
                f"{self.id!r} is not a valid {self.kind.name.lower()} id"
            )
        return self

    def __str__(self) -> str:
        return self.id
