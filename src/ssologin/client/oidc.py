"""Identity provider (OIDC) client.

:class:`OidcClient` registers public clients, starts device authorizations,
builds authorization URLs and exchanges codes for tokens. Relative
``expiresIn`` values are converted to absolute ``expires_at`` timestamps
using the injected clock at the moment the response is received.

Construction via :meth:`OidcClient.create` applies the standard policy:
three attempts, the OIDC retry decider (which also retries
``InvalidGrantException`` unless disabled), a 12 second request timeout and
redacted request logging.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx

from ssologin.client.middleware import MiddlewareChain
from ssologin.client.retry import RetryStrategy, make_oidc_decider
from ssologin.client.transport import ServiceTransport
from ssologin.config import oidc_endpoint
from ssologin.exceptions import ClientResponseError, ServiceError
from ssologin.models import (
    AuthorizeRequest,
    ClientRegistration,
    CreateTokenRequest,
    CreateTokenResponse,
    DeviceAuthorization,
    RegisterClientRequest,
    RegisterClientResponse,
    Settings,
    SsoToken,
    StartDeviceAuthorizationRequest,
    StartDeviceAuthorizationResponse,
    parse_response,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_REQUEST_TIMEOUT = 12.0
DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OidcClient:
    """Client for the identity provider's registration and token endpoints.

    Args:
        region: Provider region, reported by :attr:`region`.
        endpoint: Base URL of the provider.
        timeout: Per-request timeout in seconds.
        retry: Retry strategy for every call.
        middleware: Middleware chain; defaults to redacted logging.
        transport: Optional httpx transport, used by tests.
        clock: Callable returning the current aware UTC time.
    """

    client_name = "OidcClient"

    def __init__(
        self,
        region: str,
        endpoint: str,
        *,
        timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        retry: Optional[RetryStrategy] = None,
        middleware: Optional[MiddlewareChain] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._region = region
        self._clock = clock
        self._transport = ServiceTransport(
            endpoint,
            self.client_name,
            timeout=timeout,
            retry=retry or RetryStrategy(DEFAULT_MAX_ATTEMPTS, make_oidc_decider()),
            middleware=middleware,
            transport=transport,
        )

    @classmethod
    def create(
        cls,
        settings: Settings,
        region: Optional[str] = None,
        *,
        middleware: Optional[MiddlewareChain] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utcnow,
    ) -> OidcClient:
        """Build a client with the configured retry policy and endpoint override."""
        region = region or settings.region
        return cls(
            region,
            oidc_endpoint(settings, region),
            timeout=settings.request_timeout,
            retry=RetryStrategy(
                settings.max_attempts,
                make_oidc_decider(settings.retry_invalid_grant),
            ),
            middleware=middleware,
            transport=transport,
            clock=clock,
        )

    @property
    def region(self) -> str:
        return self._region

    @property
    def endpoint(self) -> str:
        return self._transport.base_url

    async def __aenter__(self) -> OidcClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def register_client(
        self,
        request: RegisterClientRequest,
        start_url: str,
        flow: Optional[str] = None,
    ) -> ClientRegistration:
        """Register a public client and return its credentials.

        ``clientSecretExpiresAt`` is epoch seconds; the returned
        ``expires_at`` is the corresponding UTC datetime.

        Raises:
            MissingPropertyError: If the response lacks ``clientId``,
                ``clientSecret`` or ``clientSecretExpiresAt``.
        """
        resp = await self._transport.call(
            "registerClient", "POST", "/client/register", json_body=request.to_wire()
        )
        parsed = parse_response(RegisterClientResponse, resp.body, "RegisterClientResponse")
        return ClientRegistration(
            client_id=parsed.client_id,
            client_secret=parsed.client_secret,
            expires_at=datetime.fromtimestamp(parsed.client_secret_expires_at, timezone.utc),
            scopes=request.scopes,
            start_url=start_url,
            flow=flow,
        )

    async def start_device_authorization(
        self, request: StartDeviceAuthorizationRequest
    ) -> DeviceAuthorization:
        """Start a device authorization grant.

        ``expires_at`` is measured from the local clock on receipt, and
        ``interval`` is converted from seconds to milliseconds.
        """
        resp = await self._transport.call(
            "startDeviceAuthorization",
            "POST",
            "/device_authorization",
            json_body=request.to_wire(),
        )
        parsed = parse_response(
            StartDeviceAuthorizationResponse, resp.body, "StartDeviceAuthorizationResponse"
        )
        return DeviceAuthorization(
            device_code=parsed.device_code,
            user_code=parsed.user_code,
            verification_uri=parsed.verification_uri,
            verification_uri_complete=parsed.verification_uri_complete,
            expires_at=self._clock() + timedelta(seconds=parsed.expires_in),
            interval=parsed.interval * 1000 if parsed.interval else None,
        )

    def authorize(self, request: AuthorizeRequest) -> str:
        """Return the browser authorization URL for *request*.

        Field names become snake_case query parameters and list values are
        comma-joined. No request is sent.
        """
        params = {
            key: ",".join(value) if isinstance(value, list) else value
            for key, value in request.model_dump(exclude_none=True).items()
        }
        return f"{self.endpoint}/authorize?{urlencode(params)}"

    async def create_token(self, request: CreateTokenRequest) -> SsoToken:
        """Exchange a code, device code or refresh token for tokens.

        Raises:
            ClientResponseError: For any provider-declared failure.
            ConnectionError_: If the provider could not be reached.
            MissingPropertyError: If the response lacks ``accessToken`` or
                ``expiresIn``.
        """
        try:
            resp = await self._transport.call(
                "createToken", "POST", "/token", json_body=request.to_wire()
            )
        except ServiceError as exc:
            raise ClientResponseError.instance_if(exc) from exc

        parsed = parse_response(CreateTokenResponse, resp.body, "CreateTokenResponse")
        return SsoToken(
            access_token=parsed.access_token,
            refresh_token=parsed.refresh_token,
            token_type=parsed.token_type,
            request_id=resp.request_id,
            expires_at=self._clock() + timedelta(seconds=parsed.expires_in),
        )
