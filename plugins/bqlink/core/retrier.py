"""
Retry loop driven by a classifier and a pluggable backoff schedule.
"""

import logging
import random
import threading
import time
from typing import Any, Callable, List, Optional, Sequence

from bqlink.core.classifier import BigQueryClassifier, RetryAction
from bqlink.core.exceptions import OperationCancelledError, RetriesExhaustedError

logger = logging.getLogger(__name__)


def constant_backoff(retries: int, delay: float) -> List[float]:
    """Backoff schedule waiting the same delay before each of `retries` retries."""
    return [delay] * retries


def exponential_backoff(
    retries: int, initial: float, cap: float = 60.0, jitter: bool = True
) -> List[float]:
    """
    Backoff schedule doubling the delay before each retry.

    Args:
        retries: Number of retries (the schedule length)
        initial: Delay before the first retry in seconds
        cap: Upper bound for any single delay
        jitter: Add uniform random jitter in [0, 1) seconds

    Returns:
        List of delays in seconds
    """
    delays = []
    for attempt in range(retries):
        delay = initial * 2**attempt
        if jitter:
            delay += random.uniform(0, 1)
        delays.append(min(delay, cap))
    return delays


class Retrier:
    """
    Runs an operation until the classifier says SUCCEED or FAIL.

    RETRY re-attempts after the next delay of the backoff schedule; once the
    schedule (or the optional deadline) is spent the loop gives up with
    RetriesExhaustedError. The classifier itself never decides to stop.
    """

    def __init__(
        self,
        backoff: Sequence[float],
        classifier: Optional[BigQueryClassifier] = None,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            backoff: Delays in seconds; its length is the number of retries
            classifier: Classifier deciding on each outcome
            deadline: Overall time budget in seconds for one run
            cancel_event: Event that cancels the run when set
            sleep: Sleep function, used when no cancel_event is given
            clock: Monotonic clock used for the deadline
        """
        self.backoff = list(backoff)
        self.classifier = classifier if classifier is not None else BigQueryClassifier()
        self.deadline = deadline
        self.cancel_event = cancel_event
        self._sleep = sleep
        self._clock = clock

    def run(self, operation: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Call `operation(*args, **kwargs)` under the retry policy.

        Returns:
            Whatever the operation returned on its successful attempt

        Raises:
            Exception: The failure itself when it is classified FAIL
            RetriesExhaustedError: When the retry budget ran out
        """
        start = self._clock()
        attempts = 0

        while True:
            attempts += 1
            result = None
            failure: Optional[BaseException] = None
            if self._cancelled():
                failure = OperationCancelledError(f"cancelled before attempt {attempts}")
            else:
                try:
                    result = operation(*args, **kwargs)
                except Exception as e:
                    failure = e

            action = self.classifier.classify(failure)
            if action is RetryAction.SUCCEED:
                if attempts > 1:
                    logger.info(f"Succeeded after {attempts} attempts")
                return result
            if action is RetryAction.FAIL:
                raise failure

            if attempts > len(self.backoff):
                logger.error(f"All {len(self.backoff)} retries failed: {failure}")
                raise RetriesExhaustedError(failure, attempts) from failure

            delay = self.backoff[attempts - 1]
            if self.deadline is not None and self._clock() - start + delay > self.deadline:
                logger.error(f"Deadline of {self.deadline}s reached after {attempts} attempts: {failure}")
                raise RetriesExhaustedError(failure, attempts) from failure

            logger.info(f"Attempt {attempts} failed ({failure}), retrying in {delay:.2f} seconds...")
            self._wait(delay)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _wait(self, delay: float) -> None:
        if self.cancel_event is not None:
            # returns early when the event is set; the next attempt sees it
            self.cancel_event.wait(delay)
        else:
            self._sleep(delay)
