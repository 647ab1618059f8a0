"""
Unit tests for the retry loop.
"""

import threading
from unittest.mock import MagicMock

import pytest

from bqlink.core.classifier import BigQueryClassifier
from bqlink.core.exceptions import (
    APIError,
    OperationCancelledError,
    RetryableError,
    RetriesExhaustedError,
)
from bqlink.core.retrier import Retrier, constant_backoff, exponential_backoff


def backend_error():
    return APIError(503, reason="backendError")


def test_constant_backoff():
    assert constant_backoff(3, 0.5) == [0.5, 0.5, 0.5]
    assert constant_backoff(0, 1.0) == []


def test_exponential_backoff_without_jitter():
    assert exponential_backoff(5, 1.0, cap=10.0, jitter=False) == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_exponential_backoff_jitter_bounds():
    delays = exponential_backoff(4, 0.5)
    for attempt, delay in enumerate(delays):
        assert 0.5 * 2**attempt <= delay < 0.5 * 2**attempt + 1


def test_success_on_first_attempt(no_sleep):
    delays, sleep = no_sleep
    operation = MagicMock(return_value="ok")

    result = Retrier([1.0, 1.0], sleep=sleep).run(operation, "a", key="b")

    assert result == "ok"
    operation.assert_called_once_with("a", key="b")
    assert delays == []


def test_retries_transient_errors_then_succeeds(no_sleep):
    delays, sleep = no_sleep
    operation = MagicMock(side_effect=[backend_error(), backend_error(), "ok"])

    result = Retrier([0.1, 0.2, 0.3], sleep=sleep).run(operation)

    assert result == "ok"
    assert operation.call_count == 3
    assert delays == [0.1, 0.2]


def test_permanent_error_fails_immediately(no_sleep):
    delays, sleep = no_sleep
    error = APIError(403, reason="billingNotEnabled")
    operation = MagicMock(side_effect=error)

    with pytest.raises(APIError) as exc_info:
        Retrier([0.1, 0.1], sleep=sleep).run(operation)

    assert exc_info.value is error
    assert operation.call_count == 1
    assert delays == []


def test_unstructured_error_is_not_retried(no_sleep):
    _, sleep = no_sleep
    operation = MagicMock(side_effect=KeyError("column"))

    with pytest.raises(KeyError):
        Retrier([0.1], sleep=sleep).run(operation)
    assert operation.call_count == 1


def test_gives_up_when_backoff_is_spent(no_sleep):
    delays, sleep = no_sleep
    last = backend_error()
    operation = MagicMock(side_effect=[backend_error(), backend_error(), last])

    with pytest.raises(RetriesExhaustedError) as exc_info:
        Retrier([0.1, 0.1], sleep=sleep).run(operation)

    assert exc_info.value.last_failure is last
    assert exc_info.value.attempts == 3
    assert exc_info.value.__cause__ is last
    assert delays == [0.1, 0.1]


def test_deadline_stops_retrying(no_sleep):
    delays, sleep = no_sleep
    now = [0.0]

    def clock():
        return now[0]

    def operation():
        now[0] += 4.0
        raise backend_error()

    retrier = Retrier([1.0] * 10, deadline=10.0, sleep=sleep, clock=clock)
    with pytest.raises(RetriesExhaustedError) as exc_info:
        retrier.run(operation)

    # at 4s and 8s a 1s wait still fits, at 12s the budget is spent
    assert exc_info.value.attempts == 3
    assert delays == [1.0, 1.0]


def test_cancel_before_first_attempt_fails_by_default():
    cancel = threading.Event()
    cancel.set()
    operation = MagicMock()

    with pytest.raises(OperationCancelledError):
        Retrier([0.1], cancel_event=cancel).run(operation)
    operation.assert_not_called()


def test_cancel_during_backoff_stops_the_loop():
    cancel = threading.Event()
    calls = []

    def operation():
        calls.append(1)
        cancel.set()
        raise backend_error()

    with pytest.raises(OperationCancelledError):
        Retrier([30.0, 30.0], cancel_event=cancel).run(operation)
    assert len(calls) == 1


def test_retry_on_cancel_is_still_bounded():
    cancel = threading.Event()
    cancel.set()
    classifier = BigQueryClassifier(retry_on_cancel=True)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        Retrier([0.0, 0.0], classifier, cancel_event=cancel).run(MagicMock())
    assert isinstance(exc_info.value.last_failure, OperationCancelledError)


def test_failures_are_published_to_the_classifier(no_sleep):
    _, sleep = no_sleep
    classifier = BigQueryClassifier()
    error = backend_error()
    operation = MagicMock(side_effect=[error, "ok"])

    Retrier([0.1], classifier, sleep=sleep).run(operation)

    assert classifier.last_failure is error


def test_retryable_error_raised_by_operation_is_retried(no_sleep):
    delays, sleep = no_sleep
    operation = MagicMock(side_effect=[RetryableError("not ready"), "ok"])

    assert Retrier([0.5], sleep=sleep).run(operation) == "ok"
    assert delays == [0.5]
