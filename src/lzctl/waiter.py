"""Propagation waiting.

The Azure control plane is eventually consistent: a freshly created identity
cannot take role assignments for a few seconds, a deleted NIC still blocks its
subnet until the deletion propagates, and a storage account is created by an
asynchronous job. All of that waiting goes through PropagationWaiter, which
sleeps on an injectable Clock so tests never sleep for real.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)

SUCCEEDED_STATES = frozenset({"succeeded"})
FAILED_STATES = frozenset({"failed", "canceled", "cancelled"})


class WaitOutcome(str, Enum):
    READY = "Ready"
    TIMED_OUT = "TimedOut"


class JobStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


class Clock(ABC):
    """Monotonic time source with a sleep primitive."""

    @abstractmethod
    def now(self) -> float:
        """Seconds on a monotonic scale."""

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Block for ``seconds`` (may return early when cancelled)."""


class SystemClock(Clock):
    """Wall clock whose sleeps can be interrupted with :meth:`cancel`."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._cancelled.wait(seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class PropagationWaiter:
    """Blocking sleep-and-repoll helpers over a Clock."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        logger.info(f"Waiting {seconds:g}s for propagation...")
        self._clock.sleep(seconds)

    def wait_until(
        self,
        predicate: Callable[[], bool],
        interval: float,
        timeout: float,
        description: str = "condition",
    ) -> WaitOutcome:
        """Poll ``predicate`` every ``interval`` seconds until true or timeout.

        The predicate is always evaluated at least once, and once more at
        the deadline.
        """
        deadline = self._clock.now() + timeout
        attempts = 0
        while True:
            attempts += 1
            if predicate():
                logger.debug(
                    f"{description} ready", extra={"attempts": attempts}
                )
                return WaitOutcome.READY
            remaining = deadline - self._clock.now()
            if remaining <= 0:
                logger.warning(
                    f"Timed out after {timeout:g}s waiting for {description}",
                    extra={"attempts": attempts},
                )
                return WaitOutcome.TIMED_OUT
            self._clock.sleep(min(interval, remaining))

    def wait_for_terminal_status(
        self,
        fetch_status: Callable[[], str | None],
        interval: float,
        timeout: float,
        description: str = "job",
    ) -> JobStatus:
        """Poll a provisioning status until it reaches a terminal state."""
        result: list[JobStatus] = []

        def _terminal() -> bool:
            status = (fetch_status() or "").lower()
            if status in SUCCEEDED_STATES:
                result.append(JobStatus.SUCCEEDED)
                return True
            if status in FAILED_STATES:
                result.append(JobStatus.FAILED)
                return True
            logger.debug(f"{description} status: {status or 'unknown'}")
            return False

        if self.wait_until(_terminal, interval, timeout, description) == WaitOutcome.TIMED_OUT:
            return JobStatus.TIMED_OUT
        return result[-1]
