"""Interactive login flows built on the loopback server and the OIDC client.

Two flows are provided:

* :class:`AuthorizationCodeFlow` -- OAuth 2.0 authorization code with PKCE
  (:rfc:`7636`). The browser is redirected back to a
  :class:`~ssologin.auth.server.LoopbackAuthServer`.
* :class:`DeviceCodeFlow` -- OAuth 2.0 Device Authorization Grant
  (:rfc:`8628`) for terminals without a local browser. The user enters a
  short code on any device while the flow polls the token endpoint.

Both return a :class:`LoginSession` holding the client registration (needed
to refresh later) and the token. Opening the browser is delegated to an
injected ``open_url`` callable, :func:`webbrowser.open` by default.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
import uuid
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from ssologin.auth.registry import AuthServerRegistry, get_registry
from ssologin.client.oidc import OidcClient
from ssologin.exceptions import CancellationError, ClientResponseError, FlowTimedOutError
from ssologin.models import (
    AuthorizeRequest,
    ClientRegistration,
    CreateTokenRequest,
    DeviceAuthorization,
    RegisterClientRequest,
    Settings,
    SsoToken,
    StartDeviceAuthorizationRequest,
)

logger = logging.getLogger(__name__)

OpenUrl = Callable[[str], object]

AUTH_CODE_GRANT = "authorization_code"
REFRESH_GRANT = "refresh_token"
DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

# Redirect URI declared at registration; loopback redirects may use any port.
REGISTERED_REDIRECT_URI = "http://127.0.0.1/oauth/callback"

DEFAULT_POLL_INTERVAL = 5.0
SLOW_DOWN_INCREMENT = 5.0


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    # RFC 7636: 43-128 characters from unreserved character set
    code_verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


def generate_state() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class LoginSession:
    registration: ClientRegistration
    token: SsoToken


class AuthorizationCodeFlow:
    """Browser login through the authorization code grant with PKCE.

    Steps: register a public client, start a loopback server through the
    registry, open the authorize URL, wait for the redirect, always close
    the server, then exchange the code for a token.

    Args:
        oidc: Identity provider client.
        settings: Supplies client name, scopes and server timeouts.
        registry: Server registry; defaults to the process-wide one.
        open_url: Called with the authorize URL.
    """

    flow = "auth code"

    def __init__(
        self,
        oidc: OidcClient,
        settings: Settings,
        *,
        registry: Optional[AuthServerRegistry] = None,
        open_url: OpenUrl = webbrowser.open,
    ) -> None:
        self._oidc = oidc
        self._settings = settings
        self._registry = registry or get_registry()
        self._open_url = open_url
        self._server = None

    def cancel(self) -> None:
        """Cancel the flow if it is waiting for the browser."""
        if self._server is not None:
            self._server.cancel_current_flow()

    async def run(self, start_url: str, scopes: Optional[list[str]] = None) -> LoginSession:
        """Run the flow to completion.

        Raises:
            AuthRedirectProtocolError: If the redirect carried an error or
                a bad ``state``.
            CancellationError: If :meth:`cancel` was called.
            FlowTimedOutError: If the browser never came back.
            ClientResponseError: If the token exchange failed.
        """
        scopes = scopes if scopes is not None else list(self._settings.scopes)
        registration = await self._oidc.register_client(
            RegisterClientRequest(
                client_name=self._settings.client_name,
                client_type="public",
                scopes=scopes,
                grant_types=[AUTH_CODE_GRANT, REFRESH_GRANT],
                redirect_uris=[REGISTERED_REDIRECT_URI],
                issuer_url=start_url,
            ),
            start_url,
            flow=self.flow,
        )

        state = generate_state()
        code_verifier, code_challenge = generate_pkce_pair()
        server = await self._registry.init(
            state,
            flow_timeout=self._settings.flow_timeout,
            warning_timeout=self._settings.warning_timeout,
            resources_dir=self._settings.resources_dir,
        )
        self._server = server
        try:
            await server.start()
            redirect_uri = server.redirect_uri
            url = self._oidc.authorize(
                AuthorizeRequest(
                    client_id=registration.client_id,
                    redirect_uri=redirect_uri,
                    scopes=scopes,
                    state=state,
                    code_challenge=code_challenge,
                )
            )
            logger.info("Opening browser for sign-in at %s", self._oidc.endpoint)
            self._open_url(url)
            result = await server.wait_for_authorization()
        finally:
            self._server = None
            if server.listening:
                await server.close()

        code = result.unwrap()
        token = await self._oidc.create_token(
            CreateTokenRequest(
                client_id=registration.client_id,
                client_secret=registration.client_secret,
                grant_type=AUTH_CODE_GRANT,
                code=code,
                redirect_uri=redirect_uri,
                code_verifier=code_verifier,
            )
        )
        return LoginSession(registration=registration, token=token)


class DeviceCodeFlow:
    """Login through the device authorization grant.

    Polls the token endpoint every ``interval`` (the provider's value, or
    *default_interval* seconds). ``AuthorizationPendingException`` keeps
    polling, ``SlowDownException`` adds five seconds to the interval, and
    the flow stops with :class:`~ssologin.exceptions.FlowTimedOutError` at
    the grant's ``expires_at``.

    Args:
        oidc: Identity provider client.
        settings: Supplies client name and scopes.
        open_url: Called with the verification URL.
        notify: Called with the :class:`~ssologin.models.DeviceAuthorization`
            so the caller can show the user code.
        default_interval: Poll spacing in seconds when the provider gives none.
        clock: Callable returning the current aware UTC time.
    """

    flow = "device code"

    def __init__(
        self,
        oidc: OidcClient,
        settings: Settings,
        *,
        open_url: OpenUrl = webbrowser.open,
        notify: Optional[Callable[[DeviceAuthorization], object]] = None,
        default_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._oidc = oidc
        self._settings = settings
        self._open_url = open_url
        self._notify = notify
        self._default_interval = default_interval
        self._clock = clock
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    async def run(self, start_url: str, scopes: Optional[list[str]] = None) -> LoginSession:
        scopes = scopes if scopes is not None else list(self._settings.scopes)
        registration = await self._oidc.register_client(
            RegisterClientRequest(
                client_name=self._settings.client_name,
                client_type="public",
                scopes=scopes,
            ),
            start_url,
            flow=self.flow,
        )
        authorization = await self._oidc.start_device_authorization(
            StartDeviceAuthorizationRequest(
                client_id=registration.client_id,
                client_secret=registration.client_secret,
                start_url=start_url,
            )
        )
        if self._notify is not None:
            self._notify(authorization)
        self._open_url(authorization.verification_uri_complete or authorization.verification_uri)

        token = await self._poll(registration, authorization)
        return LoginSession(registration=registration, token=token)

    async def _poll(
        self, registration: ClientRegistration, authorization: DeviceAuthorization
    ) -> SsoToken:
        interval = (
            authorization.interval / 1000
            if authorization.interval
            else self._default_interval
        )
        request = CreateTokenRequest(
            client_id=registration.client_id,
            client_secret=registration.client_secret,
            grant_type=DEVICE_CODE_GRANT,
            device_code=authorization.device_code,
        )

        while True:
            remaining = (authorization.expires_at - self._clock()).total_seconds()
            if remaining <= 0:
                raise FlowTimedOutError("Timed-out waiting for device authorization to complete")
            if await self._wait_cancelled(min(interval, remaining)):
                raise CancellationError("user")

            try:
                return await self._oidc.create_token(request)
            except ClientResponseError as exc:
                if exc.name == "AuthorizationPendingException":
                    continue
                if exc.name == "SlowDownException":
                    interval += SLOW_DOWN_INCREMENT
                    logger.debug("DeviceCodeFlow: slowing down, polling every %.1fs", interval)
                    continue
                raise

    async def _wait_cancelled(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._cancelled.wait(), delay)
        except asyncio.TimeoutError:
            return False
        return True
