"""
Shared fixtures for the security layer and API tests.
"""
import os

# Keep logging_config from installing handlers on import
os.environ.setdefault("TESTING", "1")

from typing import Dict, Optional, Tuple

import pytest
from starlette.requests import Request

from src.shared.config import Environment, RateLimitSettings, Settings
from src.shared.metrics_collector import MetricsCollector


START_MS = 1_700_000_000_000

DEFAULT_HEADERS = {"user-agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"}


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


def build_request(
    path: str = "/api/test",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    client: Optional[Tuple[str, int]] = ("203.0.113.7", 50000),
    body: bytes = b"",
    default_headers: bool = True,
) -> Request:
    """A real Starlette request built from an ASGI scope."""
    merged = dict(DEFAULT_HEADERS) if default_headers else {}
    merged.update({k.lower(): v for k, v in (headers or {}).items()})

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [(k.encode("latin-1"), v.encode("latin-1")) for k, v in merged.items()],
        "client": client,
        "server": ("testserver", 80),
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Fresh metrics registry per test."""
    MetricsCollector.reset_instance()
    yield
    MetricsCollector.reset_instance()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def rate_limit_settings():
    return RateLimitSettings()


@pytest.fixture
def test_settings():
    """Settings for a non-development deployment."""
    return Settings(environment=Environment.TESTING, debug=False)


@pytest.fixture
def dev_settings():
    return Settings(environment=Environment.DEVELOPMENT, debug=True)
