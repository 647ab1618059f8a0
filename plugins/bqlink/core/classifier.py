"""
Error classifier deciding whether a failed BigQuery call should be retried.
"""

import asyncio
import concurrent.futures
import logging
from enum import Enum
from typing import Iterable, Optional

import requests

from bqlink.core.api_client import api_error_from_response
from bqlink.core.exceptions import APIError, OperationCancelledError, RetryableError
from bqlink.core.failure_cell import SharedFailureCell

logger = logging.getLogger(__name__)

# Service-side, caller-independent conditions that are safe to re-send.
RETRIABLE_CODES = frozenset({429, 500, 502, 503, 504})
RETRIABLE_REASONS = frozenset({"internalError", "backendError", "rateLimitExceeded"})

CANCELLATION_ERRORS = (
    OperationCancelledError,
    asyncio.CancelledError,
    concurrent.futures.CancelledError,
)


class RetryAction(Enum):
    """Verdict of a classification, obeyed by the retry loop."""

    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL = "fail"


class BigQueryClassifier:
    """
    Maps the outcome of a BigQuery call to a RetryAction.

    Every non-None failure is published to the classifier's failure cell,
    whatever the resulting action, so monitoring code can read the last
    error seen across all retry loops sharing this classifier.
    """

    def __init__(
        self,
        failure_cell: Optional[SharedFailureCell] = None,
        retry_on_cancel: bool = False,
        retriable_codes: Iterable[int] = RETRIABLE_CODES,
        retriable_reasons: Iterable[str] = RETRIABLE_REASONS,
    ):
        """
        Args:
            failure_cell: Cell to publish failures to (a new one by default)
            retry_on_cancel: Retry cancelled/deadline-exceeded calls instead of failing
            retriable_codes: HTTP status codes treated as transient
            retriable_reasons: API reason tokens treated as transient
        """
        self.failure_cell = failure_cell if failure_cell is not None else SharedFailureCell()
        self.retry_on_cancel = retry_on_cancel
        self.retriable_codes = frozenset(retriable_codes)
        self.retriable_reasons = frozenset(retriable_reasons)

    @property
    def last_failure(self) -> Optional[BaseException]:
        """Most recently published failure, or None before the first one."""
        return self.failure_cell.load()

    def classify(self, failure: Optional[BaseException]) -> RetryAction:
        """
        Decide what the retry loop should do after a call.

        A non-None failure is published to the failure cell before deciding,
        regardless of the resulting action.

        Args:
            failure: Exception raised by the call, or None if it succeeded

        Returns:
            SUCCEED for None, RETRY for transient failures, FAIL otherwise
        """
        if failure is None:
            return RetryAction.SUCCEED

        self.failure_cell.publish(failure)

        if isinstance(failure, CANCELLATION_ERRORS):
            action = RetryAction.RETRY if self.retry_on_cancel else RetryAction.FAIL
            logger.debug(f"Cancelled call classified as {action.name}: {failure!r}")
            return action

        if isinstance(failure, RetryableError):
            logger.debug(f"Retryable failure, retrying: {failure!r}")
            return RetryAction.RETRY

        api_error = as_api_error(failure)
        if api_error is None:
            logger.debug(f"Unstructured failure classified as FAIL: {failure!r}")
            return RetryAction.FAIL

        if self.is_retriable(api_error):
            logger.debug(
                f"Transient API error {api_error.code} ({api_error.reason}), retrying"
            )
            return RetryAction.RETRY

        logger.warning(
            f"Permanent API error {api_error.code} ({api_error.reason}): {api_error.message}"
        )
        return RetryAction.FAIL

    def is_retriable(self, api_error: APIError) -> bool:
        """True if either the status code or a reason token is in the retriable sets."""
        if api_error.code in self.retriable_codes:
            return True
        return any(r in self.retriable_reasons for r in _reasons(api_error))


def as_api_error(failure: BaseException) -> Optional[APIError]:
    """Return the structured form of a failure, or None if it has none."""
    if isinstance(failure, APIError):
        return failure
    if isinstance(failure, requests.exceptions.HTTPError) and failure.response is not None:
        return api_error_from_response(failure.response)
    return None


def _reasons(api_error: APIError) -> Iterable[str]:
    if api_error.reason:
        yield api_error.reason
    for detail in api_error.errors:
        reason = detail.get("reason")
        if reason:
            yield reason
    # The reason token is sometimes only present as the bare message.
    message = (api_error.message or "").strip()
    if message and " " not in message:
        yield message
