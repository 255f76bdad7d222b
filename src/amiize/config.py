"""
Run configuration: CLI inputs, tool constants, and persistent defaults.

Defaults may live in ``~/.amiize/config.yaml`` (or under ``AMIIZE_HOME``)
so frequently repeated options like the region, worker AMI or key pair
don't have to be typed every time. Explicit options always win.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from . import AMIIZE_HOME
from .errors import ValidationFailure
from .models import ImageSpec
from .resources import ResourceKind, valid_resource_id

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
CONFIG_FILENAME = "config.yaml"


def image_size_gib(path: Path) -> int:
    """Apparent size of an image file in GiB, rounded up.

    Raises:
        ValidationFailure: If the file is missing or empty.
    """
    try:
        size = Path(path).stat().st_size
    except OSError as exc:
        raise ValidationFailure(f"cannot read {path}: {exc}") from exc
    gib = math.ceil(size / GIB)
    if gib <= 0:
        raise ValidationFailure(f"Couldn't find the size of the image {path}!")
    return gib


def default_config_path() -> Path:
    """Location of the persistent defaults file."""
    return Path(AMIIZE_HOME).expanduser() / CONFIG_FILENAME


def load_defaults(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load persistent option defaults from YAML.

    A missing file yields no defaults; an unreadable or malformed one is
    logged and ignored.

    Args:
        path: Defaults file. Falls back to ``default_config_path()``.

    Returns:
        Mapping of RegistrationConfig field names to values.
    """
    config_file = Path(path).expanduser() if path else default_config_path()
    if not config_file.exists():
        return {}
    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s, ignoring it: %s", config_file, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: expected a mapping", config_file)
        return {}
    data.pop("image", None)
    unknown = set(data) - set(RegistrationConfig.model_fields)
    for key in sorted(unknown):
        logger.warning("Ignoring unknown option %r in %s", key, config_file)
        data.pop(key)
    return data


class RegistrationConfig(BaseModel):
    """Everything a registration run needs to know."""

    # Required
    image: Path
    region: str
    worker_ami: str
    ssh_keypair: str
    instance_type: str
    name: str
    arch: str

    # Optional
    description: Optional[str] = None
    subnet_id: Optional[str] = None
    user_data: Optional[str] = None
    volume_size: Optional[int] = Field(default=None, gt=0)
    security_group: str = "default"
    ssh_identity: Optional[Path] = None
    ssh_user: str = "ec2-user"
    max_attempts: int = Field(default=2, gt=0)

    # Where to find the volume attached to the worker instance
    device_name: str = "/dev/sdf"
    # Where to store the image on the worker instance
    storage_dir: str = "/dev/shm"
    # Root device name of the registered image
    root_device_name: str = "/dev/xvda"

    virtualization_type: str = "hvm"
    volume_type: str = "gp2"
    sriov_net_support: Optional[str] = "simple"
    ena_support: bool = True

    # Filled in from the image file
    image_size: Optional[int] = None

    @field_validator("region", "ssh_keypair", "instance_type", "name", "arch")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("is required")
        return value

    @field_validator("image")
    @classmethod
    def _readable(cls, value: Path) -> Path:
        value = Path(value).expanduser()
        if not value.is_file() or not os.access(value, os.R_OK):
            raise ValueError(f"cannot read {value}")
        return value

    @field_validator("worker_ami")
    @classmethod
    def _ami_id(cls, value: str) -> str:
        if not valid_resource_id(ResourceKind.IMAGE, value):
            raise ValueError(f"{value!r} is not an AMI id")
        return value

    @field_validator("user_data")
    @classmethod
    def _base64(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("must be base64 with no line wrapping")
        return value

    @model_validator(mode="after")
    def _fill_defaults(self) -> "RegistrationConfig":
        if not self.description:
            self.description = self.name
        if self.image_size is None:
            self.image_size = image_size_gib(self.image)
        if self.volume_size is None:
            self.volume_size = self.image_size
        return self

    @classmethod
    def build(cls, defaults: Optional[Dict[str, Any]] = None, **options: Any) -> "RegistrationConfig":
        """Merge defaults with explicit options and validate.

        Options that are ``None`` don't override defaults.

        Raises:
            ValidationFailure: On any invalid or missing value.
        """
        merged: Dict[str, Any] = dict(defaults or {})
        merged.update({k: v for k, v in options.items() if v is not None})
        try:
            return cls(**merged)
        except ValidationError as exc:
            raise ValidationFailure(_describe_errors(exc)) from exc

    def image_spec(self) -> ImageSpec:
        """The registration parameters for the final image."""
        return ImageSpec(
            name=self.name,
            description=self.description or self.name,
            architecture=self.arch,
            root_device_name=self.root_device_name,
            volume_size_gib=self.volume_size,
            virtualization_type=self.virtualization_type,
            volume_type=self.volume_type,
            sriov_net_support=self.sriov_net_support,
            ena_support=self.ena_support,
        )


def _describe_errors(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"]).replace("_", "-")
        problems.append(f"--{field}: {err['msg']}" if field else err["msg"])
    return "; ".join(problems)
