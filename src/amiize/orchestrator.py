"""
Registration workflow: the phase state machine and attempt loop.

Phases per run:

  PREFLIGHT_CHECK -> PROVISIONING -> TRANSFERRING -> RECLAIMING
                  -> REGISTERING -> DONE

Any attempt phase may go to RETRY_ATTEMPT, which cleans up and loops
back to PROVISIONING with a fresh worker, or to FATAL_ABORT once the
attempt budget is spent. PREFLIGHT_CHECK only ever goes forward or to
FATAL_ABORT: an existing image, or a failed lookup, ends the run.

Resources are handed to the CleanupGuard the moment they exist and
taken back only after they were explicitly disposed of, so an error or
interrupt anywhere leaves nothing billable behind (see cleanup.py for
the one documented exception).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from .cleanup import CleanupGuard
from .config import RegistrationConfig
from .errors import (
    AttemptsExhausted,
    DeleteFailure,
    FatalAbort,
    ImageAlreadyExists,
    PreflightFailure,
    ProviderQueryFailure,
    RetryableFailure,
    TerminationFailure,
    WaitTimeout,
)
from .models import (
    Attempt,
    AttemptOutcome,
    RegisteredImage,
    RegistrationResult,
    Snapshot,
    WorkerInstance,
)
from .providers.compute import ComputeProvisioner
from .providers.images import ImageRegistrar
from .providers.storage import StorageLifecycle
from .transfer import ImageTransferAgent

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """States of the registration workflow."""

    PREFLIGHT_CHECK = "preflight-check"
    PROVISIONING = "provisioning"
    TRANSFERRING = "transferring"
    RECLAIMING = "reclaiming"
    REGISTERING = "registering"
    DONE = "done"
    RETRY_ATTEMPT = "retry-attempt"
    FATAL_ABORT = "fatal-abort"


ATTEMPT_PHASES = (
    Phase.PROVISIONING,
    Phase.TRANSFERRING,
    Phase.RECLAIMING,
    Phase.REGISTERING,
)

PHASE_TITLES = {
    Phase.PREFLIGHT_CHECK: "Check that the image name is free",
    Phase.PROVISIONING: "Phase 1: launch a worker instance",
    Phase.TRANSFERRING: "Phase 2: send and write the image",
    Phase.RECLAIMING: "Phase 3: snapshot the volume",
    Phase.REGISTERING: "Phase 4: register the image",
}

PhaseListener = Callable[[Phase, Optional[Attempt]], None]


@dataclass
class _AttemptState:
    """Handles that only live as long as one attempt."""

    worker: Optional[WorkerInstance] = None
    remote_path: Optional[str] = None
    snapshot: Optional[Snapshot] = None


class RegistrationOrchestrator:
    """Drives one image through the four phases, retrying whole attempts.

    Args:
        config: Validated run configuration.
        compute: Worker instance lifecycle.
        storage: Working volume lifecycle.
        registrar: Image registration and lookup.
        transfer: Moves the image onto the worker's device.
        guard: Compensating-cleanup registry. Built from ``compute`` and
            ``storage`` if not given.
        listener: Called with each phase as it is entered.
    """

    def __init__(
        self,
        config: RegistrationConfig,
        compute: ComputeProvisioner,
        storage: StorageLifecycle,
        registrar: ImageRegistrar,
        transfer: ImageTransferAgent,
        guard: Optional[CleanupGuard] = None,
        listener: Optional[PhaseListener] = None,
    ) -> None:
        self._config = config
        self._compute = compute
        self._storage = storage
        self._registrar = registrar
        self._transfer = transfer
        self.guard = guard or CleanupGuard(compute, storage)
        self._listener = listener

        self.attempts: List[Attempt] = []
        self._state = _AttemptState()
        self._image: Optional[RegisteredImage] = None
        self._abort: Optional[FatalAbort] = None

        self._handlers: Dict[Phase, Callable[[], Phase]] = {
            Phase.PREFLIGHT_CHECK: self._preflight_check,
            Phase.PROVISIONING: self._provision,
            Phase.TRANSFERRING: self._transfer_image,
            Phase.RECLAIMING: self._reclaim,
            Phase.REGISTERING: self._register,
            Phase.RETRY_ATTEMPT: self._retry_attempt,
            Phase.FATAL_ABORT: self._fatal_abort,
        }

    @property
    def current_attempt(self) -> Optional[Attempt]:
        """The attempt in progress, if any."""
        return self.attempts[-1] if self.attempts else None

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def run(self) -> RegistrationResult:
        """Run the workflow to completion.

        Returns:
            RegistrationResult describing the registered image.

        Raises:
            ImageAlreadyExists: If the name is taken.
            PreflightFailure: If the name check could not be done.
            AttemptsExhausted: If every attempt failed.
        """
        phase = Phase.PREFLIGHT_CHECK
        try:
            while phase is not Phase.DONE:
                phase = self._step(phase)
            if self._image is None:
                raise FatalAbort("Registration finished without an image")
        except BaseException as exc:
            attempt = self.current_attempt
            if attempt is not None and attempt.outcome is None:
                self._finish_attempt(AttemptOutcome.FATAL_FAILURE, exc)
            if not self.guard.empty:
                logger.warning("Run aborted (%s); cleaning up", type(exc).__name__)
                self.guard.compensate()
            raise

        leftovers = [h for h in (self.guard.instance, self.guard.volume) if h is not None]
        return RegistrationResult(
            image=self._image,
            region=self._config.region,
            attempts=list(self.attempts),
            leaked=self.guard.leaked + leftovers,
        )

    def _step(self, phase: Phase) -> Phase:
        self._announce(phase)
        handler = self._handlers[phase]
        if phase not in ATTEMPT_PHASES:
            return handler()
        try:
            return handler()
        except RetryableFailure as exc:
            logger.warning(
                "Attempt %d failed during %s: %s",
                self.current_attempt.index, phase.value, exc,
            )
            self.current_attempt.phase = phase.value
            self._finish_attempt(AttemptOutcome.RETRYABLE_FAILURE, exc)
            return Phase.RETRY_ATTEMPT

    def _announce(self, phase: Phase) -> None:
        title = PHASE_TITLES.get(phase)
        if title:
            logger.info("* %s", title)
        if self._listener is not None:
            self._listener(phase, self.current_attempt)

    # ------------------------------------------------------------------
    # Attempt bookkeeping
    # ------------------------------------------------------------------

    def _begin_attempt(self) -> None:
        attempt = Attempt(index=len(self.attempts) + 1)
        self.attempts.append(attempt)
        self._state = _AttemptState()
        logger.info("Starting attempt %d of %d", attempt.index, self._config.max_attempts)

    def _finish_attempt(self, outcome: AttemptOutcome, exc: Optional[BaseException] = None) -> None:
        attempt = self.current_attempt
        attempt.outcome = outcome
        attempt.finished_at = datetime.now(timezone.utc)
        if exc is not None:
            attempt.error = str(exc) or type(exc).__name__

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _preflight_check(self) -> Phase:
        name = self._config.name
        logger.info("Checking if an image already exists with name '%s'", name)
        try:
            existing = self._registrar.find_by_name(name)
        except RetryableFailure as exc:
            self._abort = PreflightFailure(f"Couldn't check for image {name!r}: {exc}")
            return Phase.FATAL_ABORT
        if existing is not None:
            self._abort = ImageAlreadyExists(name, existing.id, self._config.region)
            return Phase.FATAL_ABORT
        self._begin_attempt()
        return Phase.PROVISIONING

    def _provision(self) -> Phase:
        cfg = self._config
        worker = self._compute.launch(
            image_id=cfg.worker_ami,
            instance_type=cfg.instance_type,
            keypair=cfg.ssh_keypair,
            security_group=cfg.security_group,
            volume_size_gib=cfg.image_size,
            subnet_id=cfg.subnet_id,
            user_data=cfg.user_data,
            name=f"amiize-worker-{cfg.name}",
        )
        self.guard.acquire_instance(worker.instance)
        self._state.worker = worker

        try:
            worker = self._compute.await_running(worker)
        except WaitTimeout:
            logger.warning("Instance %s didn't start running in allotted time", worker.instance)
            self._terminate(worker)
            raise

        worker = self._compute.describe(worker)
        self._state.worker = worker
        self.guard.note_attached_volume(worker.volume)
        self._transfer.wait_for_device(worker, cfg.device_name)
        return Phase.TRANSFERRING

    def _transfer_image(self) -> Phase:
        worker = self._state.worker
        self._state.remote_path = self._transfer.upload(worker, self._config.image)
        self._transfer.write_to_device(
            worker, self._state.remote_path, self._config.device_name,
        )
        return Phase.RECLAIMING

    def _reclaim(self) -> Phase:
        worker = self._state.worker
        volume = worker.volume
        if volume is None:
            raise ProviderQueryFailure(f"No working volume known for {worker.instance}")

        self._storage.detach(volume)
        self.guard.acquire_volume(volume)
        self._terminate(worker)

        self._storage.await_available(volume)
        snapshot = self._storage.snapshot(volume, description=self._config.name)
        self._state.snapshot = snapshot
        self._state.snapshot = self._storage.await_completed(snapshot)

        try:
            self._storage.delete(volume)
        except DeleteFailure as exc:
            logger.warning("Could not delete volume %s: %s", volume, exc)
        else:
            self.guard.release_volume(volume)
        return Phase.REGISTERING

    def _register(self) -> Phase:
        snapshot = self._state.snapshot
        try:
            image = self._registrar.register(self._config.image_spec(), snapshot)
        except BaseException:
            logger.warning(
                "Snapshot %s is left behind by the failed registration",
                snapshot.snapshot,
            )
            self.guard.leaked.append(snapshot.snapshot)
            raise

        visible = self._registrar.await_visible(image.name)
        if visible:
            logger.info("Found image %s: %s in %s", image.name, image.image, self._config.region)
        else:
            logger.warning(
                "%s doesn't show up in a describe yet; check the EC2 console "
                "for further status", image.image,
            )
        self._image = image.model_copy(update={"visible": visible})
        self._finish_attempt(AttemptOutcome.SUCCESS)
        return Phase.DONE

    def _retry_attempt(self) -> Phase:
        if not self.guard.empty:
            logger.info("Cleaning up resources of attempt %d", self.current_attempt.index)
            self.guard.compensate()
        if len(self.attempts) >= self._config.max_attempts:
            logger.error("Retry limit (%d) reached!", self._config.max_attempts)
            self._abort = AttemptsExhausted(self._config.max_attempts, list(self.attempts))
            return Phase.FATAL_ABORT
        self._begin_attempt()
        return Phase.PROVISIONING

    def _fatal_abort(self) -> Phase:
        abort = self._abort or FatalAbort("Registration aborted")
        logger.error("%s", abort)
        raise abort

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _terminate(self, worker: WorkerInstance) -> None:
        """Terminate the worker; the guard keeps it if that fails."""
        try:
            self._compute.terminate(worker.instance)
        except TerminationFailure as exc:
            logger.warning("Could not terminate instance %s: %s", worker.instance, exc)
            return
        self.guard.release_instance(worker.instance)
