"""
Working volume lifecycle: detach, wait, snapshot, delete.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from ..errors import DeleteFailure, DetachFailure, SnapshotCreateFailure
from ..models import Snapshot, SnapshotState, VolumeState
from ..resources import ResourceHandle, ResourceKind, require_resource_id
from ..waiter import SNAPSHOT_COMPLETED, VOLUME_AVAILABLE, PollSchedule, wait_until
from .ec2 import EC2Session, dig

logger = logging.getLogger(__name__)


class StorageLifecycle:
    """Turns the working volume into a snapshot and disposes of it.

    Args:
        session: EC2 session for the target region.
        sleep: Sleep function used while polling.
    """

    def __init__(
        self,
        session: EC2Session,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._sleep = sleep

    def detach(self, volume: ResourceHandle) -> None:
        """Detach the volume from whatever it is attached to."""
        logger.info("Detaching volume %s so we can snapshot it", volume)
        self._session.call("detach_volume", error=DetachFailure, VolumeId=volume.id)

    def volume_state(self, volume: ResourceHandle) -> str:
        """Current state name of a volume."""
        result = self._session.call("describe_volumes", VolumeIds=[volume.id])
        return dig(result, "Volumes", 0, "State", operation="describe-volumes")

    def await_available(
        self,
        volume: ResourceHandle,
        schedule: PollSchedule = VOLUME_AVAILABLE,
    ) -> str:
        """Block until the volume reports 'available'."""
        logger.info("Waiting for volume %s to be 'available'", volume)
        return wait_until(
            lambda: self.volume_state(volume),
            VolumeState.AVAILABLE.value,
            schedule,
            what=f"volume {volume}",
            sleep=self._sleep,
        )

    def snapshot(self, volume: ResourceHandle, description: str) -> Snapshot:
        """Start a snapshot of the volume.

        Raises:
            SnapshotCreateFailure: If the call fails or the returned id
                is not a valid snapshot id.
        """
        logger.info("Snapshotting volume %s", volume)
        result = self._session.call(
            "create_snapshot",
            error=SnapshotCreateFailure,
            VolumeId=volume.id,
            Description=description,
        )
        handle = require_resource_id(
            ResourceKind.SNAPSHOT, result.get("SnapshotId"), SnapshotCreateFailure,
            "Creating snapshot of volume failed",
        )
        logger.info("Started snapshot %s", handle)
        return Snapshot(snapshot=handle, volume=volume, description=description)

    def snapshot_state(self, snapshot: ResourceHandle) -> str:
        """Current state name of a snapshot."""
        result = self._session.call("describe_snapshots", SnapshotIds=[snapshot.id])
        return dig(result, "Snapshots", 0, "State", operation="describe-snapshots")

    def await_completed(
        self,
        snapshot: Snapshot,
        schedule: PollSchedule = SNAPSHOT_COMPLETED,
    ) -> Snapshot:
        """Block until the snapshot reports 'completed'."""
        logger.info("Waiting for snapshot %s to complete", snapshot.snapshot)
        wait_until(
            lambda: self.snapshot_state(snapshot.snapshot),
            SnapshotState.COMPLETED.value,
            schedule,
            what=f"snapshot {snapshot.snapshot}",
            sleep=self._sleep,
        )
        return snapshot.model_copy(update={"state": SnapshotState.COMPLETED})

    def delete(self, volume: ResourceHandle) -> None:
        """Delete a volume.

        Raises:
            DeleteFailure: If the request fails.
        """
        logger.info("Deleting volume %s", volume)
        self._session.call("delete_volume", error=DeleteFailure, VolumeId=volume.id)
