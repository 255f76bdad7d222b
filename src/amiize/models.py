"""
Pydantic models for the resources and outcomes of a registration run.

Nothing here is persisted; the provider-side resources are the only
state that outlives a run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .resources import ResourceHandle


class InstanceState(str, Enum):
    """EC2 instance lifecycle states we care about."""

    PENDING = "pending"
    RUNNING = "running"
    TERMINATED = "terminated"


class VolumeState(str, Enum):
    """EBS volume lifecycle states."""

    CREATING = "creating"
    IN_USE = "in-use"
    AVAILABLE = "available"
    DELETED = "deleted"


class SnapshotState(str, Enum):
    """EBS snapshot lifecycle states."""

    PENDING = "pending"
    COMPLETED = "completed"


class WorkerInstance(BaseModel):
    """The short-lived instance that writes the image onto its spare volume."""

    instance: ResourceHandle
    public_address: Optional[str] = None
    volume: Optional[ResourceHandle] = None
    state: InstanceState = InstanceState.PENDING


class Snapshot(BaseModel):
    """Point-in-time copy of the working volume."""

    snapshot: ResourceHandle
    volume: ResourceHandle
    description: str = ""
    state: SnapshotState = SnapshotState.PENDING


class ImageSpec(BaseModel):
    """Everything needed to register an image from a snapshot."""

    name: str
    description: str
    architecture: str
    root_device_name: str = "/dev/xvda"
    volume_size_gib: int = Field(gt=0)
    virtualization_type: str = "hvm"
    volume_type: str = "gp2"
    sriov_net_support: Optional[str] = "simple"
    ena_support: bool = True


class RegisteredImage(BaseModel):
    """The final artifact of a successful run."""

    image: ResourceHandle
    name: str
    description: str
    architecture: str
    root_device_name: str
    snapshot: ResourceHandle
    volume_size_gib: int
    virtualization_type: str
    volume_type: str
    sriov_net_support: Optional[str] = None
    ena_support: bool = True
    visible: bool = False


class AttemptOutcome(str, Enum):
    """How a single pass through the workflow ended."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable-failure"
    FATAL_FAILURE = "fatal-failure"


class Attempt(BaseModel):
    """One pass through provision, transfer, reclaim and register."""

    index: int
    outcome: Optional[AttemptOutcome] = None
    phase: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: Optional[datetime] = None


class RegistrationResult(BaseModel):
    """Summary of a completed run."""

    image: RegisteredImage
    region: str
    attempts: List[Attempt] = Field(default_factory=list)
    leaked: List[ResourceHandle] = Field(default_factory=list)
