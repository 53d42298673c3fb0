"""Shared test fixtures for ssologin.

Provides a fixed clock, isolated configuration directories, mock-transport
helpers for the identity provider and portal, and automatic reset of the
process-wide output manager, server registry and package logger.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from ssologin.auth.registry import reset_registry
from ssologin.models import SsoToken
from ssologin.output import OutputFormat, OutputManager, reset_output, set_output

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

OIDC_URL = "https://oidc.us-east-1.amazonaws.com"
PORTAL_URL = "https://portal.sso.us-east-1.amazonaws.com"
START_URL = "https://example.awsapps.com/start"


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_globals() -> None:
    """Reset the output manager, server registry and ``ssologin`` logger.

    The CLI callback attaches handlers and a level to the package logger;
    leaving them in place would hide records from ``caplog`` in later tests.
    """
    yield
    reset_output()
    reset_registry()
    logger = logging.getLogger("ssologin")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def quiet_output() -> OutputManager:
    output = OutputManager(format=OutputFormat.PLAIN, no_color=True, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """A clock frozen at :data:`NOW`."""
    return lambda: NOW


# ---------------------------------------------------------------------------
# Config isolation
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point XDG directories at *tmp_path* and clear ``SSOLOGIN_*`` variables."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in [
        "SSOLOGIN_REGION",
        "SSOLOGIN_START_URL",
        "SSOLOGIN_OIDC_ENDPOINT",
        "SSOLOGIN_SSO_ENDPOINT",
        "SSOLOGIN_FLOW_TIMEOUT",
    ]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("ssologin.config._is_xdg_platform", lambda: True)
    return tmp_path


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def json_response(data: Any, status_code: int = 200, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status_code=status_code, json=data, headers=headers or {})


def error_response(
    status_code: int,
    name: str | None = None,
    body: dict[str, Any] | None = None,
    request_id: str = "req-err",
) -> httpx.Response:
    """Provider-style error: name in ``x-amzn-ErrorType`` when given."""
    headers = {"x-amzn-RequestId": request_id}
    if name:
        headers["x-amzn-ErrorType"] = f"{name}:http://internal.amazon.com/coral/"
    return httpx.Response(status_code=status_code, json=body or {"message": "failed"}, headers=headers)


def request_json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content) if request.content else {}


class Recorder:
    """Routes requests by ``(method, path)`` to handlers and records them.

    A handler may be a response, a callable taking the request, or a list
    of either, consumed one per call (the last entry repeats).
    """

    def __init__(self, routes: dict[tuple[str, str], Any]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []
        self._counts: dict[tuple[str, str], int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"message": f"no route for {key}"})
        handler = self.routes[key]
        if isinstance(handler, list):
            index = self._counts.get(key, 0)
            self._counts[key] = index + 1
            handler = handler[min(index, len(handler) - 1)]
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(request)
        # Fresh copy so one canned response can serve several requests.
        return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def valid_token() -> SsoToken:
    return SsoToken(
        access_token="access-123",
        refresh_token="refresh-456",
        token_type="Bearer",
        expires_at=NOW + timedelta(hours=1),
        request_id="req-1",
    )
