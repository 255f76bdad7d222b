"""
Compensating cleanup for the ephemeral resources of a run.

The guard is the single owner of record for the worker instance and the
working volume. The orchestrator tells it when ownership starts
(``acquire_*``) and ends (``release_*``); on any abnormal exit it calls
``compensate()``, which tears down whatever is still tracked:

- a tracked instance is terminated
- otherwise a tracked volume is deleted

The working volume is launched with DeleteOnTermination off, so it never
goes away with the instance. When an instance is terminated, a volume
noted as attached to it (``note_attached_volume``) or tracked as
detached is reported in ``leaked`` instead of being deleted.

There is an accepted window between a provider call succeeding and the
guard being told about it; an interrupt exactly there can leak.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .errors import BestEffortFailure
from .providers.compute import ComputeProvisioner
from .providers.storage import StorageLifecycle
from .resources import ResourceHandle, ResourceKind

logger = logging.getLogger(__name__)


class CleanupGuard:
    """Tracks at most one live instance and one live volume.

    Args:
        compute: Used to terminate a tracked instance.
        storage: Used to delete a tracked volume.
    """

    def __init__(self, compute: ComputeProvisioner, storage: StorageLifecycle) -> None:
        self._compute = compute
        self._storage = storage
        self._instance: Optional[ResourceHandle] = None
        self._volume: Optional[ResourceHandle] = None
        self._attached: Optional[ResourceHandle] = None
        self.leaked: List[ResourceHandle] = []

    @property
    def instance(self) -> Optional[ResourceHandle]:
        """The tracked instance, if any."""
        return self._instance

    @property
    def volume(self) -> Optional[ResourceHandle]:
        """The tracked detached volume, if any."""
        return self._volume

    @property
    def attached_volume(self) -> Optional[ResourceHandle]:
        """The volume still attached to the tracked instance, if known."""
        return self._attached

    @property
    def empty(self) -> bool:
        """Whether nothing is tracked."""
        return self._instance is None and self._volume is None

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def acquire_instance(self, instance: ResourceHandle) -> None:
        """Take ownership of a freshly launched instance."""
        _expect_kind(instance, ResourceKind.INSTANCE)
        if self._instance is not None and self._instance != instance:
            raise RuntimeError(
                f"Already tracking instance {self._instance}; "
                f"cannot also track {instance}"
            )
        logger.debug("Tracking instance %s", instance)
        self._instance = instance

    def release_instance(self, instance: ResourceHandle) -> None:
        """Drop ownership after the instance was terminated explicitly."""
        if self._instance == instance:
            logger.debug("Released instance %s", instance)
            self._instance = None
            self._attached = None

    def note_attached_volume(self, volume: ResourceHandle) -> None:
        """Record the volume attached to the tracked instance.

        It survives termination of the instance, so compensation reports it.
        """
        _expect_kind(volume, ResourceKind.VOLUME)
        if self._instance is None:
            raise RuntimeError(f"No instance tracked for attached volume {volume}")
        logger.debug("Volume %s is attached to %s", volume, self._instance)
        self._attached = volume

    def acquire_volume(self, volume: ResourceHandle) -> None:
        """Take ownership of a volume that is no longer attached."""
        _expect_kind(volume, ResourceKind.VOLUME)
        if self._volume is not None and self._volume != volume:
            raise RuntimeError(
                f"Already tracking volume {self._volume}; cannot also track {volume}"
            )
        logger.debug("Tracking volume %s", volume)
        self._volume = volume
        if self._attached == volume:
            self._attached = None

    def release_volume(self, volume: ResourceHandle) -> None:
        """Drop ownership after the volume was deleted explicitly."""
        if self._volume == volume:
            logger.debug("Released volume %s", volume)
            self._volume = None

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    def compensate(self) -> List[ResourceHandle]:
        """Release everything still tracked.

        Every tracked reference is cleared afterwards. Handles that could
        not be released are appended to ``leaked``.

        Returns:
            Handles that were successfully torn down.
        """
        cleaned: List[ResourceHandle] = []
        instance, volume, attached = self._instance, self._volume, self._attached
        self._instance = None
        self._volume = None
        self._attached = None

        if instance is not None:
            logger.warning("Cleaning up worker instance %s", instance)
            try:
                self._compute.terminate(instance)
                cleaned.append(instance)
            except BestEffortFailure as exc:
                logger.error("Could not terminate instance %s: %s", instance, exc)
                self.leaked.append(instance)
            if attached is not None:
                logger.warning(
                    "Volume %s is not deleted on termination of %s", attached, instance,
                )
                self.leaked.append(attached)
            if volume is not None:
                logger.warning(
                    "Volume %s was detached from %s and is not deleted with it",
                    volume, instance,
                )
                self.leaked.append(volume)
        elif volume is not None:
            logger.warning("Cleaning up working volume %s", volume)
            try:
                self._storage.delete(volume)
                cleaned.append(volume)
            except BestEffortFailure as exc:
                logger.error("Could not delete volume %s: %s", volume, exc)
                self.leaked.append(volume)

        return cleaned


def _expect_kind(handle: ResourceHandle, kind: ResourceKind) -> None:
    if handle.kind is not kind:
        raise ValueError(f"{handle} is a {handle.kind.name.lower()}, not a {kind.name.lower()}")
