"""
Worker instance lifecycle: launch, wait for running, describe, terminate.

The worker gets one extra EBS volume at ``device_name`` that is not
deleted on termination, so it survives the worker and can be
snapshotted.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import LaunchFailure, ProviderQueryFailure, TerminationFailure
from ..models import InstanceState, WorkerInstance
from ..resources import ResourceHandle, ResourceKind, require_resource_id
from ..waiter import INSTANCE_RUNNING, PollSchedule, wait_until
from .ec2 import EC2Session, dig

logger = logging.getLogger(__name__)


class ComputeProvisioner:
    """Launches and tears down the worker instance.

    Args:
        session: EC2 session for the target region.
        device_name: Device name of the extra volume on the worker.
        sleep: Sleep function used while polling.
    """

    def __init__(
        self,
        session: EC2Session,
        device_name: str = "/dev/sdf",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._device_name = device_name
        self._sleep = sleep

    def launch(
        self,
        image_id: str,
        instance_type: str,
        keypair: str,
        security_group: str,
        volume_size_gib: int,
        subnet_id: Optional[str] = None,
        user_data: Optional[str] = None,
        name: str = "amiize-worker",
    ) -> WorkerInstance:
        """Launch a worker with one extra, non-delete-on-termination volume.

        Args:
            image_id: AMI the worker boots from.
            instance_type: EC2 instance type.
            keypair: Name of the EC2 key pair for SSH.
            security_group: Security group name allowing SSH.
            volume_size_gib: Size of the extra volume.
            subnet_id: Subnet to launch into, if there is no default VPC.
            user_data: Base64 user data, no line wrapping.
            name: Name tag for the instance and its volumes.

        Returns:
            WorkerInstance in the pending state.

        Raises:
            LaunchFailure: If the call fails or returns no valid instance id.
        """
        block_device_mappings: List[Dict[str, Any]] = [
            {
                "DeviceName": self._device_name,
                "Ebs": {
                    "VolumeSize": volume_size_gib,
                    "DeleteOnTermination": False,
                },
            }
        ]
        run_kwargs: Dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": keypair,
            "SecurityGroups": [security_group],
            "BlockDeviceMappings": block_device_mappings,
            "TagSpecifications": [
                EC2Session.tags("instance", name),
                EC2Session.tags("volume", name),
            ],
        }
        if subnet_id:
            run_kwargs["SubnetId"] = subnet_id
        if user_data:
            # boto3 base64-encodes UserData itself
            run_kwargs["UserData"] = base64.b64decode(user_data)

        logger.info(
            "Launching worker instance (type=%s ami=%s region=%s)",
            instance_type, image_id, self._session.region,
        )
        result = self._session.call("run_instances", error=LaunchFailure, **run_kwargs)
        instance_id = None
        instances = result.get("Instances") or []
        if instances:
            instance_id = instances[0].get("InstanceId")
        handle = require_resource_id(
            ResourceKind.INSTANCE, instance_id, LaunchFailure, "No instance launched",
        )
        logger.info("Launched worker instance %s", handle)
        return WorkerInstance(instance=handle)

    def state(self, instance: ResourceHandle) -> str:
        """Current lifecycle state name of an instance."""
        result = self._session.call("describe_instances", InstanceIds=[instance.id])
        return dig(
            result, "Reservations", 0, "Instances", 0, "State", "Name",
            operation="describe-instances",
        )

    def await_running(
        self,
        worker: WorkerInstance,
        schedule: PollSchedule = INSTANCE_RUNNING,
    ) -> WorkerInstance:
        """Block until the worker reports 'running'.

        Raises:
            WaitTimeout: If it never does within the schedule.
            ProviderQueryFailure: If the state cannot be read.
        """
        logger.info("Waiting for the worker instance to be running")
        wait_until(
            lambda: self.state(worker.instance),
            InstanceState.RUNNING.value,
            schedule,
            what=f"instance {worker.instance}",
            sleep=self._sleep,
        )
        return worker.model_copy(update={"state": InstanceState.RUNNING})

    def describe(self, worker: WorkerInstance) -> WorkerInstance:
        """Fill in the worker's public address and extra volume id.

        Raises:
            ProviderQueryFailure: If either field is missing.
        """
        logger.info("Querying host IP and volume of %s", worker.instance)
        result = self._session.call(
            "describe_instances", InstanceIds=[worker.instance.id],
        )
        operation = "describe-instances"
        instance = dig(result, "Reservations", 0, "Instances", 0, operation=operation)
        host = dig(instance, "PublicIpAddress", operation=operation)

        volume_id = None
        for mapping in instance.get("BlockDeviceMappings") or []:
            if mapping.get("DeviceName") == self._device_name:
                volume_id = (mapping.get("Ebs") or {}).get("VolumeId")
                break
        volume = require_resource_id(
            ResourceKind.VOLUME, volume_id, ProviderQueryFailure,
            f"Couldn't find EBS volume for {self._device_name} in {operation} output",
        )
        logger.info("Found IP '%s' and volume '%s'", host, volume)
        return worker.model_copy(update={"public_address": host, "volume": volume})

    def terminate(self, instance: ResourceHandle) -> None:
        """Request termination of an instance.

        Raises:
            TerminationFailure: If the request fails.
        """
        logger.info("Terminating instance %s", instance)
        self._session.call(
            "terminate_instances", error=TerminationFailure, InstanceIds=[instance.id],
        )
