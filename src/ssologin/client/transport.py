"""Asynchronous JSON transport shared by the identity and portal clients.

This module provides :class:`ServiceTransport`, a thin wrapper around
:class:`httpx.AsyncClient` that:

* runs the :class:`~ssologin.client.middleware.MiddlewareChain` around every
  attempt,
* decodes JSON bodies and maps error responses to
  :class:`~ssologin.exceptions.ServiceError`,
* retries according to a :class:`~ssologin.client.retry.RetryStrategy`,
  sleeping with :func:`asyncio.sleep` between attempts.

Error names are taken from the ``x-amzn-ErrorType`` header when present,
then from the body's ``__type``, then from an OAuth ``error`` code (e.g.
``invalid_grant`` becomes ``InvalidGrantException``), and finally from the
HTTP status.
"""

from __future__ import annotations

import asyncio
import logging
import platform
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ssologin import __version__
from ssologin.client.middleware import MiddlewareChain, RequestContext, default_chain
from ssologin.client.retry import NO_RETRY, RetryStrategy
from ssologin.exceptions import ConnectionError_, ServiceError

logger = logging.getLogger(__name__)

ERROR_CODE_NAMES: dict[str, str] = {
    "invalid_grant": "InvalidGrantException",
    "authorization_pending": "AuthorizationPendingException",
    "slow_down": "SlowDownException",
    "access_denied": "AccessDeniedException",
    "expired_token": "ExpiredTokenException",
    "invalid_client": "InvalidClientException",
    "invalid_request": "InvalidRequestException",
    "invalid_scope": "InvalidScopeException",
    "unauthorized_client": "UnauthorizedClientException",
    "unsupported_grant_type": "UnsupportedGrantTypeException",
}

STATUS_ERROR_NAMES: dict[int, str] = {
    400: "BadRequestException",
    401: "UnauthorizedException",
    403: "ForbiddenException",
    404: "ResourceNotFoundException",
    429: "TooManyRequestsException",
}


@dataclass(frozen=True)
class ServiceResponse:
    """A decoded successful response."""

    body: dict[str, Any]
    status_code: int
    request_id: Optional[str] = None


def user_agent() -> str:
    """User-Agent string including the platform, sent on every request."""
    return (
        f"ssologin/{__version__} python/{platform.python_version()} "
        f"{platform.system().lower()}/{platform.release()}"
    )


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"message": response.text[:200]}


def service_error_from_response(response: httpx.Response) -> ServiceError:
    """Build a :class:`ServiceError` from an error response."""
    body = _decode_body(response)
    if not isinstance(body, dict):
        body = {}

    name: Optional[str] = None
    header = response.headers.get("x-amzn-ErrorType")
    if header:
        name = header.split(":", 1)[0]
    elif body.get("__type"):
        name = str(body["__type"]).rsplit("#", 1)[-1]
    elif body.get("error") in ERROR_CODE_NAMES:
        name = ERROR_CODE_NAMES[body["error"]]
    if not name:
        status = response.status_code
        name = STATUS_ERROR_NAMES.get(
            status, "InternalServerException" if status >= 500 else "UnknownError"
        )

    message = (
        body.get("message")
        or body.get("Message")
        or body.get("error_description")
        or body.get("error")
        or ""
    )
    return ServiceError(
        name=name,
        message=str(message),
        status_code=response.status_code,
        request_id=response.headers.get("x-amzn-RequestId"),
    )


class ServiceTransport:
    """Asynchronous JSON transport with middleware and retry.

    Args:
        base_url: Service endpoint, e.g. ``https://oidc.us-east-1.amazonaws.com``.
        client_name: Name of the owning client, recorded on each
            :class:`~ssologin.client.middleware.RequestContext`.
        timeout: Per-request timeout in seconds, or ``None`` for no timeout.
        retry: Retry strategy; defaults to a single attempt.
        middleware: Middleware chain; defaults to redacted logging.
        transport: Optional httpx transport (tests pass
            :class:`httpx.MockTransport`).

    Example::

        async with ServiceTransport("https://oidc.us-east-1.amazonaws.com", "OidcClient") as t:
            resp = await t.call("registerClient", "POST", "/client/register", json_body={...})
            client_id = resp.body["clientId"]
    """

    def __init__(
        self,
        base_url: str,
        client_name: str,
        timeout: Optional[float] = None,
        retry: RetryStrategy = NO_RETRY,
        middleware: Optional[MiddlewareChain] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_name = client_name
        self.retry = retry
        self.middleware = middleware if middleware is not None else default_chain()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": user_agent(), "Accept": "application/json"},
        )

    async def __aenter__(self) -> ServiceTransport:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> ServiceResponse:
        """Send a request, retrying per the strategy, and return the decoded body.

        Headers are never passed to middleware; bearer tokens travel there.

        Args:
            operation: Logical operation name used in logs.
            method: HTTP method.
            path: Path relative to ``base_url``.
            json_body: JSON request body.
            params: Query parameters.
            headers: Extra request headers.

        Returns:
            A :class:`ServiceResponse` whose ``body`` is the decoded JSON
            object (``{}`` for an empty body).

        Raises:
            ServiceError: For error responses once retries are exhausted or
                the error is not retryable.
            ConnectionError_: For transport failures once retries are exhausted.
        """
        ctx = RequestContext(
            client_name=self.client_name,
            operation=operation,
            method=method,
            url=f"{self.base_url}{path}",
            input=json_body if json_body is not None else params,
        )

        attempt = 0
        while True:
            attempt += 1
            ctx.attempt = attempt
            ctx.error = None
            self.middleware.run_request(ctx)
            try:
                response = await self._client.request(
                    method, path, json=json_body, params=params, headers=headers
                )
                ctx.status_code = response.status_code
                if response.status_code >= 400:
                    raise service_error_from_response(response)
                data = _decode_body(response)
            except (httpx.TransportError, ServiceError) as exc:
                ctx.error = exc
                self.middleware.run_error(ctx)
                if self.retry.should_retry(exc, attempt):
                    delay = self.retry.delay(attempt)
                    logger.debug(
                        "%s failed (%s), retrying in %.2fs (attempt %d/%d)",
                        ctx.tag,
                        type(exc).__name__ if not isinstance(exc, ServiceError) else exc.name,
                        delay,
                        attempt,
                        self.retry.max_attempts,
                    )
                    await asyncio.sleep(delay)
                    continue
                if isinstance(exc, httpx.TransportError):
                    raise ConnectionError_(
                        f"{ctx.tag} failed after {attempt} attempt(s): {exc}"
                    ) from exc
                raise

            ctx.output = data if isinstance(data, dict) else {"value": data}
            self.middleware.run_response(ctx)
            return ServiceResponse(
                body=ctx.output,
                status_code=response.status_code,
                request_id=response.headers.get("x-amzn-RequestId"),
            )
