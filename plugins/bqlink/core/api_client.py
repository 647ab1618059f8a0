"""
Thin BigQuery REST client. Every call is a single attempt; retries are the
caller's business (see bqlink.core.retrier).
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from bqlink.core.exceptions import APIError
from bqlink.core.resource_spec import ResourceIdentifier

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://bigquery.googleapis.com/bigquery/v2"


def api_error_from_response(response: requests.Response) -> APIError:
    """
    Build an APIError from an error response.

    Google APIs return an envelope like
    {"error": {"code": 503, "message": "...", "errors": [{"reason": "backendError"}]}};
    when the body isn't such an envelope the HTTP status and reason phrase are used.

    Args:
        response: Non-2xx response

    Returns:
        Structured APIError
    """
    code = response.status_code
    reason = ""
    message = response.reason or ""
    errors: List[Dict[str, Any]] = []

    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        envelope = body["error"]
        # any field may be null or mistyped
        envelope_code = envelope.get("code")
        if isinstance(envelope_code, int) and not isinstance(envelope_code, bool):
            code = envelope_code
        message = str(envelope.get("message") or message)
        errors = [e for e in envelope.get("errors") or [] if isinstance(e, dict)]
        if errors:
            reason = str(errors[0].get("reason") or "")

    return APIError(code=code, reason=reason, message=message, errors=errors)


class BigQueryClient:
    """HTTP client for the BigQuery v2 REST API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token_provider: Optional[Callable[[], str]] = None,
        cache_credentials: bool = True,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize API client

        Args:
            base_url: Base URL for the API
            token_provider: Callable returning an OAuth access token
            cache_credentials: Fetch the token once and reuse it
            timeout: Request timeout in seconds
            session: Session to send requests with (a new one by default)
        """
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.cache_credentials = cache_credentials
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self._token: Optional[str] = None
        self._token_lock = threading.Lock()

    def _build_headers(self) -> Dict[str, str]:
        """Build request headers including authentication"""
        if self.token_provider is None:
            return {}

        if not self.cache_credentials:
            return {"Authorization": f"Bearer {self.token_provider()}"}

        with self._token_lock:
            if self._token is None:
                self._token = self.token_provider()
            return {"Authorization": f"Bearer {self._token}"}

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make a single HTTP request.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: API path relative to base_url
            params: Query parameters
            json_data: JSON request body

        Returns:
            Response JSON as dict (empty for an empty body)

        Raises:
            APIError: For any non-2xx response
            requests.exceptions.RequestException: On transport failures
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.debug(f"Request {method} {url}")

        response = self.session.request(
            method=method,
            url=url,
            params=params,
            json=json_data,
            headers=self._build_headers(),
            timeout=self.timeout,
        )

        if not response.ok:
            error = api_error_from_response(response)
            logger.info(f"{method} {url} failed: {error}")
            raise error

        if not response.content:
            return {}
        return response.json()

    def get_table(self, resource: ResourceIdentifier) -> Dict[str, Any]:
        """Fetch the table resource (schema, row counts, ...)."""
        return self.request("GET", resource.path)

    def insert_rows(
        self,
        resource: ResourceIdentifier,
        rows: List[Dict[str, Any]],
        skip_invalid_rows: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Stream rows into a table with tabledata.insertAll.

        Args:
            resource: Destination table
            rows: Row dicts keyed by column name
            skip_invalid_rows: Insert valid rows even if some rows are invalid

        Returns:
            Per-row insert errors reported by the service (empty on full success)
        """
        body = {
            "kind": "bigquery#tableDataInsertAllRequest",
            "skipInvalidRows": skip_invalid_rows,
            "rows": [{"json": row} for row in rows],
        }
        response = self.request("POST", f"{resource.path}/insertAll", json_data=body)
        insert_errors = response.get("insertErrors", [])
        if insert_errors:
            logger.warning(
                f"{len(insert_errors)} of {len(rows)} rows rejected by {resource}"
            )
        return insert_errors
