"""
Bounded polling for asynchronous provider state transitions.

Every wait in the workflow (instance running, volume available,
snapshot completed, device reachable, image visible) goes through
``wait_until`` with its own ``PollSchedule``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Union

from .errors import AmiizeError, ProviderQueryFailure, WaitTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollSchedule:
    """How long and how often to poll.

    Attributes:
        max_polls: Number of fetches before giving up.
        poll_delay: Seconds slept before each fetch.
        initial_delay: Seconds slept once before the first poll.
    """

    max_polls: int
    poll_delay: float
    initial_delay: float = 0.0


INSTANCE_RUNNING = PollSchedule(max_polls=10, poll_delay=6, initial_delay=20)
DEVICE_READY = PollSchedule(max_polls=10, poll_delay=6, initial_delay=30)
VOLUME_AVAILABLE = PollSchedule(max_polls=20, poll_delay=6, initial_delay=20)
SNAPSHOT_COMPLETED = PollSchedule(max_polls=75, poll_delay=10, initial_delay=20)
IMAGE_VISIBLE = PollSchedule(max_polls=20, poll_delay=10)


def _matches(target: Union[Any, Callable[[Any], bool]], state: Any) -> bool:
    if callable(target):
        return bool(target(state))
    return state == target


def wait_until(
    fetch: Callable[[], Any],
    target: Union[Any, Callable[[Any], bool]],
    schedule: PollSchedule,
    what: str = "resource",
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Poll ``fetch`` until it reports ``target`` or the budget runs out.

    Sleeps ``initial_delay`` once, then for each poll sleeps
    ``poll_delay`` and calls ``fetch``. Returns as soon as the fetched
    state matches; no further polls are made.

    Args:
        fetch: Zero-argument callable returning the current state.
        target: Expected state, or a predicate over the state.
        schedule: Poll budget and delays.
        what: Description used in logs and errors.
        sleep: Sleep function (injectable for tests).

    Returns:
        The first state that matched ``target``.

    Raises:
        WaitTimeout: If ``max_polls`` fetches never matched.
        ProviderQueryFailure: If ``fetch`` itself errors.
    """
    if schedule.initial_delay:
        sleep(schedule.initial_delay)

    state: Any = None
    for poll in range(1, schedule.max_polls + 1):
        sleep(schedule.poll_delay)
        try:
            state = fetch()
        except ProviderQueryFailure:
            raise
        except AmiizeError as exc:
            raise ProviderQueryFailure(f"Querying {what} failed: {exc}") from exc

        logger.info("Current status of %s: %s (poll %d/%d)",
                    what, state, poll, schedule.max_polls)
        if _matches(target, state):
            return state

    raise WaitTimeout(
        what,
        getattr(target, "__name__", target),
        last_state=state,
        polls=schedule.max_polls,
    )
