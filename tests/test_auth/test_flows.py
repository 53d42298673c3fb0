"""End-to-end tests for the browser and device login flows."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from conftest import NOW, OIDC_URL, START_URL, Recorder, error_response, json_response, request_json
from ssologin.auth.flows import (
    DEVICE_CODE_GRANT,
    AuthorizationCodeFlow,
    DeviceCodeFlow,
    generate_pkce_pair,
    generate_state,
)
from ssologin.auth.registry import AuthServerRegistry
from ssologin.client.oidc import OidcClient
from ssologin.client.retry import NO_RETRY
from ssologin.exceptions import (
    AuthRedirectError,
    CancellationError,
    ClientResponseError,
    FlowTimedOutError,
)
from ssologin.models import Settings

REGISTER = json_response({
    "clientId": "cid",
    "clientSecret": "csecret",
    "clientSecretExpiresAt": int((NOW + timedelta(days=90)).timestamp()),
})
TOKEN = json_response(
    {"accessToken": "access", "refreshToken": "refresh", "expiresIn": 3600, "tokenType": "Bearer"},
    headers={"x-amzn-RequestId": "rid-token"},
)


def _oidc(recorder: Recorder, clock) -> OidcClient:
    return OidcClient("us-east-1", OIDC_URL, retry=NO_RETRY, transport=recorder.transport, clock=clock)


def test_pkce_pair() -> None:
    verifier, challenge = generate_pkce_pair()
    assert 43 <= len(verifier) <= 128
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=")
    assert challenge == expected.decode()
    assert generate_pkce_pair()[0] != verifier


def test_state_is_unique() -> None:
    assert generate_state() != generate_state()


class _Browser:
    """Stands in for the user's browser by following the authorize URL."""

    def __init__(self, **overrides: str) -> None:
        self.overrides = overrides
        self.urls: list[str] = []
        self._tasks: list[asyncio.Task] = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        self._tasks.append(asyncio.get_running_loop().create_task(self._visit(url)))
        return True

    async def _visit(self, url: str) -> None:
        query = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
        params = {"code": "auth-code", "state": query["state"]}
        params.update(self.overrides)
        params = {k: v for k, v in params.items() if v}
        async with httpx.AsyncClient() as client:
            await client.get(query["redirect_uri"], params=params)

    async def finish(self) -> None:
        # The server may drop the connection while closing.
        await asyncio.gather(*self._tasks, return_exceptions=True)


class TestAuthorizationCodeFlow:
    @pytest.mark.asyncio
    async def test_completes_login(self, clock) -> None:
        recorder = Recorder({("POST", "/client/register"): REGISTER, ("POST", "/token"): TOKEN})
        registry = AuthServerRegistry()
        browser = _Browser()
        async with _oidc(recorder, clock) as oidc:
            flow = AuthorizationCodeFlow(oidc, Settings(), registry=registry, open_url=browser)
            session = await flow.run(START_URL)
            await browser.finish()

        assert session.token.access_token == "access"
        assert session.token.request_id == "rid-token"
        assert session.registration.client_id == "cid"
        assert session.registration.flow == "auth code"
        assert registry.last_instance.closed

        register = request_json(recorder.calls("POST", "/client/register")[0])
        assert register["grantTypes"] == ["authorization_code", "refresh_token"]
        assert register["redirectUris"] == ["http://127.0.0.1/oauth/callback"]
        assert register["issuerUrl"] == START_URL

        authorize = parse_qs(urlsplit(browser.urls[0]).query)
        assert browser.urls[0].startswith(f"{OIDC_URL}/authorize?")
        assert authorize["client_id"] == ["cid"]
        assert authorize["code_challenge_method"] == ["S256"]
        assert authorize["scopes"] == ["sso:account:access"]

        token = request_json(recorder.calls("POST", "/token")[0])
        assert token["grantType"] == "authorization_code"
        assert token["code"] == "auth-code"
        assert token["redirectUri"] == authorize["redirect_uri"][0]
        challenge = base64.urlsafe_b64encode(
            hashlib.sha256(token["codeVerifier"].encode()).digest()
        ).rstrip(b"=").decode()
        assert authorize["code_challenge"] == [challenge]

    @pytest.mark.asyncio
    async def test_redirect_error_stops_before_token_exchange(self, clock) -> None:
        recorder = Recorder({("POST", "/client/register"): REGISTER, ("POST", "/token"): TOKEN})
        registry = AuthServerRegistry()
        browser = _Browser(error="access_denied", error_description="denied by user")
        async with _oidc(recorder, clock) as oidc:
            flow = AuthorizationCodeFlow(oidc, Settings(), registry=registry, open_url=browser)
            with pytest.raises(AuthRedirectError):
                await flow.run(START_URL)
            await browser.finish()

        assert recorder.calls("POST", "/token") == []
        assert registry.last_instance.closed

    @pytest.mark.asyncio
    async def test_cancel(self, clock) -> None:
        recorder = Recorder({("POST", "/client/register"): REGISTER})
        registry = AuthServerRegistry()
        flow: AuthorizationCodeFlow

        def open_url(url: str) -> bool:
            asyncio.get_running_loop().call_soon(flow.cancel)
            return True

        async with _oidc(recorder, clock) as oidc:
            flow = AuthorizationCodeFlow(oidc, Settings(), registry=registry, open_url=open_url)
            with pytest.raises(CancellationError) as exc_info:
                await flow.run(START_URL)

        assert exc_info.value.agent == "user"
        assert registry.last_instance.closed

    @pytest.mark.asyncio
    async def test_timeout(self, clock) -> None:
        recorder = Recorder({("POST", "/client/register"): REGISTER})
        registry = AuthServerRegistry()
        async with _oidc(recorder, clock) as oidc:
            flow = AuthorizationCodeFlow(
                oidc,
                Settings(flow_timeout=0.05),
                registry=registry,
                open_url=lambda url: True,
            )
            with pytest.raises(FlowTimedOutError):
                await flow.run(START_URL)
        assert registry.last_instance.closed


def _device_routes(token_handler, expires_in: int = 600) -> Recorder:
    return Recorder({
        ("POST", "/client/register"): REGISTER,
        ("POST", "/device_authorization"): json_response({
            "deviceCode": "dev-code",
            "userCode": "ABCD-EFGH",
            "verificationUri": "https://device.sso.us-east-1.amazonaws.com/",
            "verificationUriComplete": "https://device.sso.us-east-1.amazonaws.com/?user_code=ABCD-EFGH",
            "expiresIn": expires_in,
        }),
        ("POST", "/token"): token_handler,
    })


PENDING = error_response(400, body={"error": "authorization_pending"})


class TestDeviceCodeFlow:
    @pytest.mark.asyncio
    async def test_polls_until_approved(self, clock) -> None:
        recorder = _device_routes([PENDING, PENDING, TOKEN])
        opened: list[str] = []
        notified = []
        async with _oidc(recorder, clock) as oidc:
            flow = DeviceCodeFlow(
                oidc,
                Settings(),
                open_url=opened.append,
                notify=notified.append,
                default_interval=0.01,
                clock=clock,
            )
            session = await flow.run(START_URL)

        assert session.token.access_token == "access"
        assert session.registration.flow == "device code"
        assert notified[0].user_code == "ABCD-EFGH"
        assert opened == ["https://device.sso.us-east-1.amazonaws.com/?user_code=ABCD-EFGH"]

        polls = recorder.calls("POST", "/token")
        assert len(polls) == 3
        body = request_json(polls[0])
        assert body["grantType"] == DEVICE_CODE_GRANT
        assert body["deviceCode"] == "dev-code"

    @pytest.mark.asyncio
    async def test_slow_down_widens_interval(
        self, clock, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        monkeypatch.setattr("ssologin.auth.flows.SLOW_DOWN_INCREMENT", 0.02)
        caplog.set_level(logging.DEBUG, logger="ssologin.auth.flows")
        slow_down = error_response(400, body={"error": "slow_down"})
        recorder = _device_routes([slow_down, TOKEN])
        async with _oidc(recorder, clock) as oidc:
            flow = DeviceCodeFlow(
                oidc, Settings(), open_url=lambda url: True, default_interval=0.01, clock=clock
            )
            await flow.run(START_URL)

        assert len(recorder.calls("POST", "/token")) == 2
        assert "polling every 0.0" in caplog.text

    @pytest.mark.asyncio
    async def test_expired_grant_times_out(self, clock) -> None:
        recorder = _device_routes(TOKEN, expires_in=0)
        async with _oidc(recorder, clock) as oidc:
            flow = DeviceCodeFlow(oidc, Settings(), open_url=lambda url: True, clock=clock)
            with pytest.raises(FlowTimedOutError, match="device authorization"):
                await flow.run(START_URL)
        assert recorder.calls("POST", "/token") == []

    @pytest.mark.asyncio
    async def test_denied_stops_polling(self, clock) -> None:
        denied = error_response(400, body={"error": "access_denied"})
        recorder = _device_routes([PENDING, denied, TOKEN])
        async with _oidc(recorder, clock) as oidc:
            flow = DeviceCodeFlow(
                oidc, Settings(), open_url=lambda url: True, default_interval=0.01, clock=clock
            )
            with pytest.raises(ClientResponseError) as exc_info:
                await flow.run(START_URL)
        assert exc_info.value.name == "AccessDeniedException"
        assert len(recorder.calls("POST", "/token")) == 2

    @pytest.mark.asyncio
    async def test_cancel(self, clock) -> None:
        recorder = _device_routes(TOKEN)
        flow: DeviceCodeFlow
        async with _oidc(recorder, clock) as oidc:
            flow = DeviceCodeFlow(
                oidc,
                Settings(),
                open_url=lambda url: True,
                notify=lambda authorization: flow.cancel(),
                clock=clock,
            )
            with pytest.raises(CancellationError):
                await flow.run(START_URL)
        assert recorder.calls("POST", "/token") == []
