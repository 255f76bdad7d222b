"""
Getting the image bytes onto the worker's block device.

The workflow only depends on the ``ImageTransferAgent`` interface.
``SSHTransferAgent`` implements it with the local ``ssh`` and ``rsync``
binaries, authenticating with the ssh agent (or an explicit identity
file) against the key pair the worker was launched with.
"""

from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import TransferFailure, WriteFailure
from .models import WorkerInstance
from .waiter import DEVICE_READY, PollSchedule, wait_until

logger = logging.getLogger(__name__)

SSH_CONNECT_TIMEOUT = 10
DEVICE_PROBE_TIMEOUT = 30

# The worker is brand new; we can't know its host key in advance.
# BatchMode makes a missing key fail instead of prompting for a password.
SSH_OPTS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "BatchMode=yes",
    "-o", f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
]

DD_BLOCK_SIZE = "256K"

Runner = Callable[..., subprocess.CompletedProcess]


class ImageTransferAgent:
    """Abstract base for moving an image onto the worker's device."""

    def wait_for_device(
        self,
        worker: WorkerInstance,
        device: str,
        schedule: PollSchedule = DEVICE_READY,
    ) -> None:
        """Block until ``device`` exists on the worker and is reachable.

        Raises:
            WaitTimeout: If the device never becomes reachable.
        """
        raise NotImplementedError

    def upload(self, worker: WorkerInstance, image_path: Path) -> str:
        """Copy the local image to the worker.

        Returns:
            Path of the uploaded file on the worker.

        Raises:
            TransferFailure: If the copy fails.
        """
        raise NotImplementedError

    def write_to_device(self, worker: WorkerInstance, remote_path: str, device: str) -> None:
        """Write the uploaded image onto the raw device, as root.

        Raises:
            WriteFailure: If the write fails. The device contents are then
                unknown and the attempt must not be resumed.
        """
        raise NotImplementedError


class SSHTransferAgent(ImageTransferAgent):
    """Transfer agent built on ssh, rsync and dd.

    Args:
        user: Login user on the worker.
        identity_file: Private key for ssh; the ssh agent is used if unset.
        storage_dir: Directory on the worker that receives the upload.
        runner: subprocess.run-compatible callable (injectable for tests).
        sleep: Sleep function used while polling.
    """

    def __init__(
        self,
        user: str = "ec2-user",
        identity_file: Optional[Path] = None,
        storage_dir: str = "/dev/shm",
        runner: Runner = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._user = user
        self._identity_file = identity_file
        self._storage_dir = storage_dir.rstrip("/") or "/"
        self._run = runner
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Command builders
    # ------------------------------------------------------------------

    def _ssh_base(self) -> List[str]:
        cmd = ["ssh", *SSH_OPTS]
        if self._identity_file:
            cmd += ["-i", str(Path(self._identity_file).expanduser())]
        return cmd

    def _target(self, worker: WorkerInstance) -> str:
        if not worker.public_address:
            raise TransferFailure(f"Worker {worker.instance} has no public address")
        return f"{self._user}@{worker.public_address}"

    def ssh_command(self, worker: WorkerInstance, remote: str, tty: bool = False) -> List[str]:
        """Full ssh argv running ``remote`` on the worker."""
        cmd = self._ssh_base()
        if tty:
            # sudo on the worker needs a terminal
            cmd.append("-tt")
        return cmd + [self._target(worker), remote]

    def rsync_command(self, worker: WorkerInstance, image_path: Path) -> List[str]:
        """Full rsync argv uploading ``image_path`` into the storage dir."""
        return [
            "rsync", "--compress", "--sparse",
            f"--rsh={' '.join(self._ssh_base())}",
            str(image_path),
            f"{self._target(worker)}:{self._storage_dir}/",
        ]

    def dd_command(self, remote_path: str, device: str) -> str:
        """Remote shell command writing ``remote_path`` onto ``device``."""
        return (
            f"sudo -n dd conv=sparse conv=fsync bs={DD_BLOCK_SIZE} "
            f"if={remote_path} of={device}"
        )

    def _execute(self, argv: Sequence[str], error: type, message: str) -> None:
        logger.debug("Running %s", " ".join(argv))
        try:
            self._run(list(argv), check=True)
        except subprocess.CalledProcessError as exc:
            raise error(f"{message} (exit {exc.returncode})") from exc
        except OSError as exc:
            raise error(f"{message}: {exc}") from exc

    # ------------------------------------------------------------------
    # ImageTransferAgent
    # ------------------------------------------------------------------

    def device_ready(self, worker: WorkerInstance, device: str) -> bool:
        """Whether ``device`` is a block device on the worker right now."""
        argv = self.ssh_command(worker, f"test -b {device}")
        try:
            result = self._run(argv, capture_output=True, timeout=DEVICE_PROBE_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.debug("ssh to %s timed out", worker.public_address)
            return False
        except OSError as exc:
            logger.debug("ssh to %s failed: %s", worker.public_address, exc)
            return False
        return result.returncode == 0

    def wait_for_device(
        self,
        worker: WorkerInstance,
        device: str,
        schedule: PollSchedule = DEVICE_READY,
    ) -> None:
        logger.info("Waiting for SSH and %s to be accessible on %s",
                    device, worker.public_address)
        wait_until(
            lambda: self.device_ready(worker, device),
            True,
            schedule,
            what=f"{device} on {worker.public_address}",
            sleep=self._sleep,
        )

    def upload(self, worker: WorkerInstance, image_path: Path) -> str:
        image_path = Path(image_path)
        logger.info("Uploading %s to %s", image_path.name, worker.public_address)
        self._execute(
            self.rsync_command(worker, image_path),
            TransferFailure,
            "rsync of image to worker failed",
        )
        return f"{self._storage_dir}/{image_path.name}"

    def write_to_device(self, worker: WorkerInstance, remote_path: str, device: str) -> None:
        logger.info("Writing %s to %s on the worker", remote_path, device)
        self._execute(
            self.ssh_command(worker, self.dd_command(remote_path, device), tty=True),
            WriteFailure,
            "Writing image to disk failed",
        )
