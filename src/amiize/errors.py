"""
Failure taxonomy for image registration.

The classes encode what the attempt loop should do with a failure:
- RetryableFailure: discard the attempt and start over from Provisioning
- BestEffortFailure: log a warning and keep going
- FatalAbort / ValidationFailure: stop the run, no retry

Provider SDK errors never escape the provider layer; they are re-raised
as one of these so the orchestrator only reasons about this hierarchy.
"""

from __future__ import annotations

from typing import Any, List, Optional


class AmiizeError(Exception):
    """Base exception for amiize."""


class ValidationFailure(AmiizeError):
    """Bad arguments, unreadable image file, or malformed resource id."""


# ---------------------------------------------------------------------------
# Retryable at the attempt level
# ---------------------------------------------------------------------------


class RetryableFailure(AmiizeError):
    """Failure that invalidates the current attempt but not the run."""


class ProviderQueryFailure(RetryableFailure):
    """A provider call errored or its response lacked the expected field."""


class WaitTimeout(RetryableFailure):
    """A polled state never reached its target within the poll budget.

    Args:
        what: Short description of the thing being waited on.
        target: The state that was expected.
        last_state: The last state observed before giving up.
        polls: How many polls were performed.
    """

    def __init__(
        self,
        what: str,
        target: Any,
        last_state: Any = None,
        polls: int = 0,
    ) -> None:
        self.what = what
        self.target = target
        self.last_state = last_state
        self.polls = polls
        super().__init__(
            f"{what} did not reach {target!r} after {polls} polls "
            f"(last state: {last_state!r})"
        )


class LaunchFailure(RetryableFailure):
    """The worker instance could not be launched."""


class TransferFailure(RetryableFailure):
    """The image could not be uploaded to the worker."""


class WriteFailure(RetryableFailure):
    """The image could not be written onto the target block device."""


class DetachFailure(RetryableFailure):
    """The working volume could not be detached."""


class SnapshotCreateFailure(RetryableFailure):
    """A snapshot of the working volume could not be created."""


class RegistrationFailure(RetryableFailure):
    """The image could not be registered from the snapshot."""


# ---------------------------------------------------------------------------
# Best effort
# ---------------------------------------------------------------------------


class BestEffortFailure(AmiizeError):
    """Failure that is logged as a warning and never aborts a run."""


class TerminationFailure(BestEffortFailure):
    """The worker instance could not be terminated."""


class DeleteFailure(BestEffortFailure):
    """The working volume could not be deleted."""


# ---------------------------------------------------------------------------
# Fatal
# ---------------------------------------------------------------------------


class FatalAbort(AmiizeError):
    """Run-terminating outcome; the attempt loop is not re-entered."""


class PreflightFailure(FatalAbort):
    """The image-name uniqueness check could not be completed."""


class ImageAlreadyExists(FatalAbort):
    """An image with the target name is already registered.

    Args:
        name: The image name.
        image_id: Id of the existing image.
        region: Region that was searched.
    """

    def __init__(self, name: str, image_id: str, region: Optional[str] = None) -> None:
        self.name = name
        self.image_id = image_id
        self.region = region
        where = f" in {region}" if region else ""
        super().__init__(f"{image_id} {name} already exists{where}!")


class AttemptsExhausted(FatalAbort):
    """Every attempt failed and the retry budget is spent."""

    def __init__(self, max_attempts: int, attempts: Optional[List[Any]] = None) -> None:
        self.max_attempts = max_attempts
        self.attempts = attempts or []
        super().__init__(
            f"No attempts succeeded (retry limit {max_attempts} reached)"
        )
