"""Tests for the loopback redirect server.

These start a real listener on 127.0.0.1 and talk to it with httpx.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio
from aiohttp.test_utils import make_mocked_request

from ssologin.auth.server import LoopbackAuthServer
from ssologin.exceptions import (
    AuthRedirectError,
    AuthServerError,
    CancellationError,
    FlowTimedOutError,
    InvalidStateError,
    MissingCodeError,
    MissingPortError,
    MissingStateError,
)

STATE = "state-abc"


@pytest.fixture
def web_root(tmp_path: Path) -> Path:
    root = tmp_path / "web"
    (root / "resources").mkdir(parents=True)
    (root / "index.html").write_text("<html>signed in</html>")
    (root / "resources" / "login.css").write_text("body {}")
    (tmp_path / "secret.txt").write_text("do not serve")
    return root


@pytest_asyncio.fixture
async def server(web_root: Path):
    server = LoopbackAuthServer(STATE, flow_timeout=5.0, resources_dir=web_root)
    await server.start()
    yield server
    if server.listening:
        await server.close()


async def _redirect(server: LoopbackAuthServer, **params: str) -> httpx.Response:
    async with httpx.AsyncClient() as client:
        return await client.get(server.redirect_uri, params=params)


def _error_param(response: httpx.Response) -> str | None:
    query = parse_qs(urlsplit(response.headers["location"]).query)
    return query["error"][0] if "error" in query else None


class TestCallback:
    @pytest.mark.asyncio
    async def test_valid_redirect_yields_code(self, server: LoopbackAuthServer) -> None:
        response = await _redirect(server, code="the-code", state=STATE)

        assert response.status_code == 302
        assert response.headers["location"] == f"http://127.0.0.1:{server.get_address()[1]}/index.html"
        assert response.headers["access-control-allow-methods"] == "GET"
        result = await server.wait_for_authorization()
        assert result.is_ok
        assert result.value == "the-code"

    @pytest.mark.asyncio
    async def test_only_first_outcome_counts(self, server: LoopbackAuthServer) -> None:
        await _redirect(server, code="first", state=STATE)
        second = await _redirect(server, code="second", state="wrong")

        assert second.status_code == 302
        result = await server.wait_for_authorization()
        assert result.value == "first"

    @pytest.mark.asyncio
    async def test_missing_code(self, server: LoopbackAuthServer) -> None:
        response = await _redirect(server, state=STATE)
        assert _error_param(response) == "LoopbackAuthServer: missing code"
        result = await server.wait_for_authorization()
        assert isinstance(result.error, MissingCodeError)

    @pytest.mark.asyncio
    async def test_missing_state(self, server: LoopbackAuthServer) -> None:
        response = await _redirect(server, code="c")
        assert _error_param(response) == "LoopbackAuthServer: missing state"
        result = await server.wait_for_authorization()
        assert isinstance(result.error, MissingStateError)

    @pytest.mark.asyncio
    async def test_invalid_state(self, server: LoopbackAuthServer) -> None:
        response = await _redirect(server, code="c", state="forged")
        assert _error_param(response) == "LoopbackAuthServer: invalid state"
        result = await server.wait_for_authorization()
        assert isinstance(result.error, InvalidStateError)

    @pytest.mark.asyncio
    async def test_provider_error_wins_over_code(self, server: LoopbackAuthServer) -> None:
        response = await _redirect(
            server,
            error="access_denied",
            error_description="user said no",
            code="c",
            state=STATE,
        )
        assert _error_param(response) == "LoopbackAuthServer: access_denied: user said no"
        result = await server.wait_for_authorization()
        assert isinstance(result.error, AuthRedirectError)
        assert result.error.error == "access_denied"
        assert result.error.error_description == "user said no"

    @pytest.mark.asyncio
    async def test_error_without_description_is_missing_code(self, server: LoopbackAuthServer) -> None:
        await _redirect(server, error="access_denied")
        result = await server.wait_for_authorization()
        assert isinstance(result.error, MissingCodeError)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("rejected", "expected"),
        [
            ({"code": "c", "state": "forged"}, InvalidStateError),
            ({"state": STATE}, MissingCodeError),
            ({"code": "c"}, MissingStateError),
        ],
    )
    async def test_rejection_is_not_overridden_by_later_valid_redirect(
        self, server: LoopbackAuthServer, rejected: dict, expected: type
    ) -> None:
        await _redirect(server, **rejected)
        late = await _redirect(server, code="good", state=STATE)

        assert late.status_code == 302
        result = await server.wait_for_authorization()
        assert result.is_err
        assert isinstance(result.error, expected)


class TestResolution:
    @pytest.mark.asyncio
    async def test_cancel_settles_flow(self, server: LoopbackAuthServer) -> None:
        asyncio.get_running_loop().call_later(0.05, server.cancel_current_flow)
        result = await server.wait_for_authorization()

        assert isinstance(result.error, CancellationError)
        assert result.error.agent == "user"

        # A late redirect is served but does not change the outcome.
        late = await _redirect(server, code="late", state=STATE)
        assert late.status_code == 302
        assert (await server.wait_for_authorization()).is_err

    def test_cancel_before_waiting(self) -> None:
        server = LoopbackAuthServer(STATE)
        server.cancel_current_flow()

        result = asyncio.run(server.wait_for_authorization())
        assert isinstance(result.error, CancellationError)

    @pytest.mark.asyncio
    async def test_timeout_raises(self, web_root: Path) -> None:
        server = LoopbackAuthServer(STATE, flow_timeout=0.05, resources_dir=web_root)
        await server.start()
        try:
            with pytest.raises(FlowTimedOutError) as exc_info:
                await server.wait_for_authorization()
        finally:
            await server.close()
        assert exc_info.value.agent == "timeout"

    @pytest.mark.asyncio
    async def test_slow_login_warning(self, web_root: Path, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.WARNING, logger="ssologin.auth.server")
        server = LoopbackAuthServer(
            STATE, flow_timeout=0.2, warning_timeout=0.01, resources_dir=web_root
        )
        with pytest.raises(FlowTimedOutError):
            await server.wait_for_authorization()
        assert "authentication is taking a long time" in caplog.text

    @pytest.mark.asyncio
    async def test_no_warning_when_settled_quickly(
        self, server: LoopbackAuthServer, caplog: pytest.LogCaptureFixture
    ) -> None:
        server.warning_timeout = 0.1
        caplog.set_level(logging.WARNING, logger="ssologin.auth.server")
        await _redirect(server, code="c", state=STATE)
        await server.wait_for_authorization()
        await asyncio.sleep(0.2)
        assert "taking a long time" not in caplog.text


class TestLifecycle:
    def test_redirect_uri_requires_port(self) -> None:
        with pytest.raises(MissingPortError):
            _ = LoopbackAuthServer(STATE).redirect_uri

    @pytest.mark.asyncio
    async def test_binds_ephemeral_loopback_port(self, server: LoopbackAuthServer) -> None:
        host, port = server.get_address()
        assert host == "127.0.0.1"
        assert port > 0
        assert server.redirect_uri == f"http://127.0.0.1:{port}/oauth/callback"
        assert server.listening

    @pytest.mark.asyncio
    async def test_start_twice_fails(self, server: LoopbackAuthServer) -> None:
        with pytest.raises(AuthServerError, match="already started"):
            await server.start()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server: LoopbackAuthServer) -> None:
        await server.close()
        await server.close()
        assert server.closed
        assert not server.listening
        with pytest.raises(MissingPortError):
            _ = server.redirect_uri

    @pytest.mark.asyncio
    async def test_start_after_close_fails(self, web_root: Path) -> None:
        server = LoopbackAuthServer(STATE, resources_dir=web_root)
        await server.start()
        await server.close()
        with pytest.raises(AuthServerError, match="has closed"):
            await server.start()

    @pytest.mark.asyncio
    async def test_close_before_start_fails(self) -> None:
        with pytest.raises(AuthServerError, match="not started"):
            await LoopbackAuthServer(STATE).close()

    @pytest.mark.asyncio
    async def test_close_drops_open_connections(self, server: LoopbackAuthServer) -> None:
        async with httpx.AsyncClient() as client:
            port = server.get_address()[1]
            await client.get(f"http://127.0.0.1:{port}/index.html")
            assert server.connection_count == 1
            await server.close()
            assert server.connection_count == 0
            with pytest.raises(httpx.TransportError):
                await client.get(f"http://127.0.0.1:{port}/index.html")


class TestResources:
    @pytest.mark.asyncio
    async def test_serves_files_with_content_type(self, server: LoopbackAuthServer) -> None:
        base = f"http://127.0.0.1:{server.get_address()[1]}"
        async with httpx.AsyncClient() as client:
            page = await client.get(f"{base}/index.html")
            css = await client.get(f"{base}/resources/login.css")

        assert page.status_code == 200
        assert page.text == "<html>signed in</html>"
        assert page.headers["content-type"].startswith("text/html")
        assert css.status_code == 200
        assert css.headers["content-type"].startswith("text/css")

    @pytest.mark.asyncio
    async def test_missing_file_is_empty_404(self, server: LoopbackAuthServer) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://127.0.0.1:{server.get_address()[1]}/nope.html")
        assert response.status_code == 404
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_nul_byte_in_path_is_empty_404(self, server: LoopbackAuthServer) -> None:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"http://127.0.0.1:{server.get_address()[1]}/a%00b")
        assert response.status_code == 404
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_does_not_serve_outside_root(self, web_root: Path) -> None:
        server = LoopbackAuthServer(STATE, resources_dir=web_root)
        request = make_mocked_request("GET", "/../secret.txt")
        response = await server._handle_resource(request)
        assert response.status == 404
        assert response.body is None

    @pytest.mark.asyncio
    async def test_bundled_login_page(self) -> None:
        server = LoopbackAuthServer(STATE)
        await server.start()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"http://127.0.0.1:{server.get_address()[1]}/index.html"
                )
        finally:
            await server.close()
        assert response.status_code == 200
        assert "login.css" in response.text
