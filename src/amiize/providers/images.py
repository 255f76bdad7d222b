"""
Image registration and lookup by name.

The image name is unique per owner, so ``find_by_name`` doubles as the
idempotency check before a run and the visibility check after one.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import ProviderQueryFailure, RegistrationFailure, WaitTimeout
from ..models import ImageSpec, RegisteredImage, Snapshot
from ..resources import ResourceHandle, ResourceKind, require_resource_id, valid_resource_id
from ..waiter import IMAGE_VISIBLE, PollSchedule, wait_until
from .ec2 import EC2Session

logger = logging.getLogger(__name__)


def block_device_mappings(spec: ImageSpec, snapshot: ResourceHandle) -> List[Dict[str, Any]]:
    """Root device mapping for an image backed by ``snapshot``."""
    return [
        {
            "DeviceName": spec.root_device_name,
            "Ebs": {
                "SnapshotId": snapshot.id,
                "VolumeType": spec.volume_type,
                "VolumeSize": spec.volume_size_gib,
                "DeleteOnTermination": True,
            },
        }
    ]


class ImageRegistrar:
    """Registers images and finds them by name.

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

    def find_by_name(self, name: str) -> Optional[ResourceHandle]:
        """Look up one of our own images by name.

        Returns:
            Handle of the image, or None if no image has that name.

        Raises:
            ProviderQueryFailure: If the lookup itself fails.
        """
        result = self._session.call(
            "describe_images",
            Owners=["self"],
            Filters=[{"Name": "name", "Values": [name]}],
        )
        images = result.get("Images")
        if images is None:
            raise ProviderQueryFailure("Couldn't find Images in describe-images output")
        for image in images:
            image_id = image.get("ImageId")
            if valid_resource_id(ResourceKind.IMAGE, image_id):
                return ResourceHandle(kind=ResourceKind.IMAGE, id=image_id)
        logger.debug("No image named %s in %s", name, self._session.region)
        return None

    def register(self, spec: ImageSpec, snapshot: Snapshot) -> RegisteredImage:
        """Register an image from a completed snapshot.

        Raises:
            RegistrationFailure: If the call fails or returns no valid image id.
        """
        register_kwargs: Dict[str, Any] = {
            "Name": spec.name,
            "Description": spec.description,
            "Architecture": spec.architecture,
            "RootDeviceName": spec.root_device_name,
            "VirtualizationType": spec.virtualization_type,
            "BlockDeviceMappings": block_device_mappings(spec, snapshot.snapshot),
            "EnaSupport": spec.ena_support,
        }
        if spec.sriov_net_support:
            register_kwargs["SriovNetSupport"] = spec.sriov_net_support

        logger.info("Registering image %s from %s", spec.name, snapshot.snapshot)
        result = self._session.call(
            "register_image", error=RegistrationFailure, **register_kwargs,
        )
        handle = require_resource_id(
            ResourceKind.IMAGE, result.get("ImageId"), RegistrationFailure,
            "Image registration failed",
        )
        logger.info("Registered %s", handle)
        return RegisteredImage(
            image=handle,
            name=spec.name,
            description=spec.description,
            architecture=spec.architecture,
            root_device_name=spec.root_device_name,
            snapshot=snapshot.snapshot,
            volume_size_gib=spec.volume_size_gib,
            virtualization_type=spec.virtualization_type,
            volume_type=spec.volume_type,
            sriov_net_support=spec.sriov_net_support,
            ena_support=spec.ena_support,
        )

    def await_visible(
        self,
        name: str,
        schedule: PollSchedule = IMAGE_VISIBLE,
    ) -> bool:
        """Wait for a freshly registered image to show up in a lookup.

        Not finding it is not an error: registration already succeeded,
        the describe API is just eventually consistent.

        Returns:
            True if the image was found within the schedule.
        """
        logger.info("Waiting for image %s to appear in a describe query", name)
        if self._lookup(name) is not None:
            return True
        remaining = PollSchedule(
            max_polls=max(schedule.max_polls - 1, 0),
            poll_delay=schedule.poll_delay,
            initial_delay=schedule.initial_delay,
        )
        try:
            wait_until(
                lambda: self._lookup(name),
                lambda handle: handle is not None,
                remaining,
                what=f"image {name}",
                sleep=self._sleep,
            )
        except WaitTimeout as exc:
            logger.warning("Image %s not visible yet: %s", name, exc)
            return False
        return True

    def _lookup(self, name: str) -> Optional[ResourceHandle]:
        try:
            return self.find_by_name(name)
        except ProviderQueryFailure as exc:
            logger.debug("Lookup of %s failed: %s", name, exc)
            return None
