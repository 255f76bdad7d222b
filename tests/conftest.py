"""Shared test fixtures and fake collaborators for amiize."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest

from amiize.config import GIB, RegistrationConfig
from amiize.models import ImageSpec, RegisteredImage, Snapshot, WorkerInstance
from amiize.orchestrator import RegistrationOrchestrator
from amiize.resources import ResourceHandle, ResourceKind

WORKER_AMI = "ami-0f2176987ee50226e"
IMAGE_ID = "ami-0123456789abcdef0"


def handle(kind: ResourceKind, n: int) -> ResourceHandle:
    """Build a valid 8-hex-digit handle numbered ``n``."""
    return ResourceHandle(kind=kind, id=f"{kind.value}-{n:08x}")


class Recorder:
    """Records calls and raises scripted failures.

    ``fail`` maps a method name to an exception, or to a list of
    exceptions (``None`` entries mean "succeed") consumed one per call.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail: Dict[str, Any] = {}

    def _hit(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        failure = self.fail.get(name)
        if isinstance(failure, list):
            failure = failure.pop(0) if failure else None
        if failure is not None:
            raise failure

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def names(self) -> List[str]:
        return [call for call, _ in self.calls]


class FakeCompute(Recorder):
    """Stands in for ComputeProvisioner."""

    def __init__(self) -> None:
        super().__init__()
        self.launched = 0
        self.launch_kwargs: List[Dict[str, Any]] = []

    def launch(self, **kwargs: Any) -> WorkerInstance:
        self.launch_kwargs.append(kwargs)
        self._hit("launch")
        self.launched += 1
        return WorkerInstance(instance=handle(ResourceKind.INSTANCE, self.launched))

    def await_running(self, worker: WorkerInstance) -> WorkerInstance:
        self._hit("await_running", worker.instance)
        return worker

    def describe(self, worker: WorkerInstance) -> WorkerInstance:
        self._hit("describe", worker.instance)
        n = int(worker.instance.id.split("-")[1], 16)
        return worker.model_copy(update={
            "public_address": f"198.51.100.{n}",
            "volume": handle(ResourceKind.VOLUME, n),
        })

    def terminate(self, instance: ResourceHandle) -> None:
        self._hit("terminate", instance)


class FakeStorage(Recorder):
    """Stands in for StorageLifecycle."""

    def detach(self, volume: ResourceHandle) -> None:
        self._hit("detach", volume)

    def await_available(self, volume: ResourceHandle) -> str:
        self._hit("await_available", volume)
        return "available"

    def snapshot(self, volume: ResourceHandle, description: str) -> Snapshot:
        self._hit("snapshot", volume, description)
        n = int(volume.id.split("-")[1], 16)
        return Snapshot(
            snapshot=handle(ResourceKind.SNAPSHOT, n), volume=volume, description=description,
        )

    def await_completed(self, snapshot: Snapshot) -> Snapshot:
        self._hit("await_completed", snapshot.snapshot)
        return snapshot

    def delete(self, volume: ResourceHandle) -> None:
        self._hit("delete", volume)


class FakeRegistrar(Recorder):
    """Stands in for ImageRegistrar."""

    def __init__(self) -> None:
        super().__init__()
        self.existing: Optional[ResourceHandle] = None
        self.visible = True
        self.specs: List[ImageSpec] = []

    def find_by_name(self, name: str) -> Optional[ResourceHandle]:
        self._hit("find_by_name", name)
        return self.existing

    def register(self, spec: ImageSpec, snapshot: Snapshot) -> RegisteredImage:
        self._hit("register", spec.name, snapshot.snapshot)
        self.specs.append(spec)
        return RegisteredImage(
            image=ResourceHandle(kind=ResourceKind.IMAGE, id=IMAGE_ID),
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

    def await_visible(self, name: str) -> bool:
        self._hit("await_visible", name)
        return self.visible


class FakeTransfer(Recorder):
    """Stands in for the ssh transfer agent."""

    def wait_for_device(self, worker: WorkerInstance, device: str) -> None:
        self._hit("wait_for_device", worker.instance, device)

    def upload(self, worker: WorkerInstance, image_path: Path) -> str:
        self._hit("upload", worker.instance, image_path)
        return f"/dev/shm/{Path(image_path).name}"

    def write_to_device(self, worker: WorkerInstance, remote_path: str, device: str) -> None:
        self._hit("write_to_device", worker.instance, remote_path, device)


def make_image(path: Path, size: int) -> Path:
    """Create a sparse file of ``size`` bytes."""
    with open(path, "wb") as fh:
        fh.truncate(size)
    return path


@pytest.fixture
def image_file(tmp_path: Path) -> Path:
    """A sparse 8 GiB disk image."""
    return make_image(tmp_path / "os-x86_64.img", 8 * GIB - 4096)


@pytest.fixture
def config_options(image_file: Path) -> Dict[str, Any]:
    """The required options of a registration run."""
    return {
        "image": image_file,
        "region": "us-west-2",
        "worker_ami": WORKER_AMI,
        "ssh_keypair": "builder",
        "instance_type": "m5.xlarge",
        "name": "os-20190718-01",
        "arch": "x86_64",
    }


@pytest.fixture
def config(config_options: Dict[str, Any]) -> RegistrationConfig:
    return RegistrationConfig.build(**config_options)


@pytest.fixture
def fakes() -> SimpleNamespace:
    return SimpleNamespace(
        compute=FakeCompute(),
        storage=FakeStorage(),
        registrar=FakeRegistrar(),
        transfer=FakeTransfer(),
    )


@pytest.fixture
def make_orchestrator(fakes: SimpleNamespace):
    """Factory building an orchestrator over the fakes."""

    def _make(cfg: RegistrationConfig, **kwargs: Any) -> RegistrationOrchestrator:
        return RegistrationOrchestrator(
            cfg,
            compute=fakes.compute,
            storage=fakes.storage,
            registrar=fakes.registrar,
            transfer=fakes.transfer,
            **kwargs,
        )

    return _make
