"""
Shared fixtures for unit tests.
"""

import json
import pytest
from unittest.mock import MagicMock

import requests


def _make_response(status_code, body=None, reason="", raw=None):
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason
    if raw is not None:
        response._content = raw
    elif body is not None:
        response._content = json.dumps(body).encode("utf-8")
    else:
        response._content = b""
    response.url = "https://bigquery.googleapis.com/bigquery/v2/test"
    return response


def _error_body(code, reason, message=""):
    """Google API error envelope."""
    return {
        "error": {
            "code": code,
            "message": message or reason,
            "errors": [{"reason": reason, "message": message or reason}],
        }
    }


@pytest.fixture
def mock_session():
    """A requests.Session stand-in whose request() is preconfigured per test."""
    return MagicMock(spec=requests.Session)


@pytest.fixture
def no_sleep():
    """Records backoff delays instead of sleeping."""
    delays = []
    return delays, delays.append


@pytest.fixture
def sample_rows():
    return [{"invocation_id": f"inv-{i}", "duration_ms": i * 10} for i in range(7)]


@pytest.fixture
def make_response():
    return _make_response


@pytest.fixture
def error_body():
    return _error_body
