"""
Structured exception hierarchy for BigQuery access and retry handling.
"""

from typing import Any, Dict, List, Optional


class BigQueryError(Exception):
    """Base exception for all bqlink errors."""
    pass


class RetryableError(BigQueryError):
    """
    Raised by an operation to ask the retry loop for another attempt.

    The classifier always answers RETRY for these, whatever the status
    codes involved. The retry budget still applies.
    """
    pass


class FatalError(BigQueryError):
    """
    Errors that should NOT retry.

    Examples:
    - Malformed resource identifiers
    - Invalid feature configuration
    - Exhausted retry budget
    """
    pass


class ConfigurationError(FatalError):
    """Invalid configuration or usage errors."""
    pass


class ResourceSpecError(ConfigurationError):
    """A `[project:]dataset.table` identifier could not be parsed."""

    def __init__(self, spec: str, message: str):
        super().__init__(f"invalid resource spec {spec!r}: {message}")
        self.spec = spec


class MissingProjectError(ResourceSpecError):
    pass


class MissingDatasetError(ResourceSpecError):
    pass


class MissingTableError(ResourceSpecError):
    pass


class AmbiguousSeparatorError(ResourceSpecError):
    pass


class APIError(BigQueryError):
    """
    Structured failure returned by the BigQuery REST API.

    Carries the HTTP status code and the machine-readable reason token
    (e.g. ``backendError``) of the first error in the response envelope.
    """

    def __init__(
        self,
        code: int,
        reason: str = "",
        message: str = "",
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(f"googleapi: Error {code}: {message or reason}")
        self.code = code
        self.reason = reason or ""
        self.message = message or ""
        self.errors = [e for e in errors or [] if isinstance(e, dict)]

    def __repr__(self) -> str:
        return f"APIError(code={self.code!r}, reason={self.reason!r}, message={self.message!r})"


class OperationCancelledError(BigQueryError):
    """The caller cancelled the operation or its deadline passed."""
    pass


class RetriesExhaustedError(FatalError):
    """The retry budget ran out before the operation succeeded."""

    def __init__(self, last_failure: BaseException, attempts: int):
        super().__init__(f"giving up after {attempts} attempt(s): {last_failure}")
        self.last_failure = last_failure
        self.attempts = attempts
