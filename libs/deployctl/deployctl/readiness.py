"""Readiness gate for resources that dependents must wait on."""

import logging
import threading
import time
from typing import Callable, Optional

from .exceptions import TransientError
from .models import ReadinessResult, Resource
from .state import StateReader

logger = logging.getLogger(__name__)


def cancellable_sleep(cancel: Optional[threading.Event]) -> Callable[[float], None]:
    """Return a sleep function that wakes up early when ``cancel`` is set."""

    def sleep(seconds: float) -> None:
        if cancel is None:
            time.sleep(seconds)
        else:
            cancel.wait(seconds)

    return sleep


class ReadinessGate:
    """Polls the cluster until a resource reports ready or a timeout elapses."""

    def __init__(
        self,
        reader: StateReader,
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize readiness gate.

        Args:
            reader: State reader used for polling
            poll_interval: Seconds between polls
            clock: Monotonic clock, injectable for tests
            sleep: Sleep function, injectable for tests. Defaults to a
                sleep that the cancellation signal interrupts
        """
        self.reader = reader
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def await_ready(
        self,
        resource: Resource,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> ReadinessResult:
        """
        Wait for a resource to become ready.

        Transient observation failures count as "not ready yet"; any other
        error propagates to the caller.

        Args:
            resource: Resource to wait on
            timeout: Maximum time to wait in seconds
            cancel: Checked before every poll

        Returns:
            ReadinessResult.READY as soon as the resource is ready,
            ReadinessResult.CANCELLED once ``cancel`` is set, or
            ReadinessResult.TIMED_OUT once the timeout has elapsed
        """
        sleep = self._sleep or cancellable_sleep(cancel)
        deadline = self._clock() + timeout
        last_message: Optional[str] = None

        logger.info(f"Waiting up to {timeout:.0f}s for {resource.id} to become ready")
        while True:
            if cancel is not None and cancel.is_set():
                logger.warning(f"Stopped waiting for {resource.id}: cancelled")
                return ReadinessResult.CANCELLED

            try:
                observed = self.reader.observe(resource)
                if observed.ready:
                    logger.info(f"{resource.id} is ready")
                    return ReadinessResult.READY
                last_message = observed.message
            except TransientError as e:
                last_message = str(e)
                logger.warning(f"Readiness poll for {resource.id} failed: {e}")

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(
                    f"{resource.id} not ready after {timeout:.0f}s"
                    + (f": {last_message}" if last_message else "")
                )
                return ReadinessResult.TIMED_OUT

            logger.debug(f"{resource.id} not ready yet: {last_message}")
            sleep(min(self.poll_interval, remaining))
