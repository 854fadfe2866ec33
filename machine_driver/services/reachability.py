import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable


logger = logging.getLogger(__name__)


class PollOutcome(str, Enum):
    REACHED = "REACHED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


@dataclass
class PollSchedule:
    initial_delay: float
    interval: float
    settle: float
    deadline: float
    max_attempts: int | None = None


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    elapsed: float

    @property
    def reached(self) -> bool:
        return self.outcome == PollOutcome.REACHED


# A sleeper blocks for the given seconds and returns True when cancelled,
# the same contract as threading.Event.wait.
Sleeper = Callable[[float], bool]


def event_sleeper(cancel: threading.Event) -> Sleeper:
    return cancel.wait


def _probe_once(probe: Callable[[], bool]) -> bool:
    try:
        return bool(probe())
    except Exception as exc:  # noqa: BLE001
        logger.debug("guest probe failed: %s", exc)
        return False


def wait_until_reachable(
    probe: Callable[[], bool],
    schedule: PollSchedule,
    sleeper: Sleeper | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """Block until ``probe`` succeeds, the deadline passes or the wait is cancelled.

    Sleeps ``initial_delay`` first, then probes every ``interval``. At least one
    probe is made after the grace period. After the
    first successful probe it sleeps ``settle`` before reporting REACHED, since
    the guest agent answers before sshd is listening.
    """
    if sleeper is None:
        sleeper = event_sleeper(threading.Event())
    started = clock()
    attempts = 0

    def elapsed() -> float:
        return clock() - started

    def result(outcome: PollOutcome) -> PollResult:
        return PollResult(outcome=outcome, attempts=attempts, elapsed=elapsed())

    if sleeper(min(schedule.initial_delay, schedule.deadline)):
        return result(PollOutcome.CANCELLED)

    while True:
        # the first probe always runs, even when the grace period used up the deadline
        if attempts and elapsed() >= schedule.deadline:
            return result(PollOutcome.TIMED_OUT)
        attempts += 1
        if _probe_once(probe):
            logger.debug("guest answered after %s probes, settling", attempts)
            if sleeper(schedule.settle):
                return result(PollOutcome.CANCELLED)
            return result(PollOutcome.REACHED)
        if schedule.max_attempts is not None and attempts >= schedule.max_attempts:
            return result(PollOutcome.TIMED_OUT)
        logger.debug("waiting for guest attempt=%s elapsed=%.1fs", attempts, elapsed())
        remaining = schedule.deadline - elapsed()
        if remaining <= 0:
            return result(PollOutcome.TIMED_OUT)
        if sleeper(min(schedule.interval, remaining)):
            return result(PollOutcome.CANCELLED)
