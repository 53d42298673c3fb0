"""Account portal client with per-call bearer token injection.

Every operation funnels through :meth:`SsoClient._call`, which fetches the
current token from the :class:`~ssologin.auth.tokens.TokenProvider`, sends
it in the ``x-amz-sso_bearer_token`` header and, on failure, runs
:meth:`SsoClient._handle_error` before re-raising. Portal calls are never
retried.

Token invalidation policy: a provider-declared client fault other than
``ForbiddenException`` means the provider rejected the token itself, so the
cached token is invalidated with the reason ``ssoClient:<ErrorName>``.
Forbidden only means the token lacks access to that resource.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx

from ssologin.client.middleware import MiddlewareChain
from ssologin.client.pagination import AsyncPager
from ssologin.client.retry import NO_RETRY
from ssologin.client.transport import ServiceTransport
from ssologin.config import sso_endpoint
from ssologin.exceptions import MissingPropertyError, ServiceError, SsoLoginError
from ssologin.models import (
    AccountInfo,
    GetRoleCredentialsRequest,
    GetRoleCredentialsResponse,
    ListAccountRolesRequest,
    ListAccountsRequest,
    RoleCredentials,
    RoleInfo,
    Settings,
    parse_response,
)

if TYPE_CHECKING:
    from ssologin.auth.tokens import TokenProvider

logger = logging.getLogger(__name__)

BEARER_HEADER = "x-amz-sso_bearer_token"
FORBIDDEN = "ForbiddenException"


def _query(**params: Any) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


class SsoClient:
    """Authenticated, paginated access to the account portal.

    Args:
        region: Portal region, reported by :attr:`region`.
        endpoint: Base URL of the portal.
        provider: Source of bearer tokens; invalidated on token rejection.
        timeout: Per-request timeout in seconds.
        middleware: Middleware chain; defaults to redacted logging.
        transport: Optional httpx transport, used by tests.
    """

    client_name = "SsoClient"

    def __init__(
        self,
        region: Optional[str],
        endpoint: str,
        provider: TokenProvider,
        *,
        timeout: Optional[float] = None,
        middleware: Optional[MiddlewareChain] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._region = region
        self._provider = provider
        self._transport = ServiceTransport(
            endpoint,
            self.client_name,
            timeout=timeout,
            retry=NO_RETRY,
            middleware=middleware,
            transport=transport,
        )

    @classmethod
    def create(
        cls,
        settings: Settings,
        provider: TokenProvider,
        region: Optional[str] = None,
        *,
        middleware: Optional[MiddlewareChain] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> SsoClient:
        region = region or settings.region
        return cls(
            region,
            sso_endpoint(settings, region),
            provider,
            middleware=middleware,
            transport=transport,
        )

    @property
    def region(self) -> Optional[str]:
        return self._region

    async def __aenter__(self) -> SsoClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._transport.aclose()

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def list_accounts(
        self, request: Optional[ListAccountsRequest] = None
    ) -> AsyncPager[AccountInfo]:
        """Return a pager over the accounts assigned to the signed-in user."""
        request = request or ListAccountsRequest()

        async def fetch(next_token: Optional[str]) -> dict[str, Any]:
            return await self._call(
                "listAccounts",
                "GET",
                "/assignment/accounts",
                params=_query(
                    next_token=next_token or request.next_token,
                    max_result=request.max_results,
                ),
            )

        return AsyncPager(
            fetch,
            "accountList",
            lambda items: [parse_response(AccountInfo, a, "AccountInfo") for a in items],
        )

    def list_account_roles(self, request: ListAccountRolesRequest) -> AsyncPager[RoleInfo]:
        """Return a pager over the roles available in ``request.account_id``."""

        async def fetch(next_token: Optional[str]) -> dict[str, Any]:
            return await self._call(
                "listAccountRoles",
                "GET",
                "/assignment/roles",
                params=_query(
                    account_id=request.account_id,
                    next_token=next_token or request.next_token,
                    max_result=request.max_results,
                ),
            )

        return AsyncPager(
            fetch,
            "roleList",
            lambda items: [parse_response(RoleInfo, r, "RoleInfo") for r in items],
        )

    async def get_role_credentials(self, request: GetRoleCredentialsRequest) -> RoleCredentials:
        """Fetch short-term credentials for a role.

        Raises:
            MissingPropertyError: If ``roleCredentials``, ``accessKeyId`` or
                ``secretAccessKey`` is absent.
        """
        body = await self._call(
            "getRoleCredentials",
            "GET",
            "/federation/credentials",
            params=_query(role_name=request.role_name, account_id=request.account_id),
        )
        parsed = parse_response(GetRoleCredentialsResponse, body, "GetRoleCredentialsResponse")

        raw = dict(parsed.role_credentials)
        expiration = raw.pop("expiration", None)
        credentials = parse_response(RoleCredentials, raw, "RoleCredentials")
        if expiration:
            # Portal sends epoch milliseconds.
            credentials = credentials.model_copy(
                update={"expiration": datetime.fromtimestamp(expiration / 1000, timezone.utc)}
            )
        return credentials

    async def logout(self) -> None:
        """Invalidate the portal session for the current token."""
        await self._call("logout", "POST", "/logout")

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        token = await self._provider.get_token()
        if token is None or not token.access_token:
            raise MissingPropertyError(["accessToken"], "SsoToken")

        try:
            resp = await self._transport.call(
                operation,
                method,
                path,
                params=params,
                headers={BEARER_HEADER: token.access_token},
            )
        except SsoLoginError as exc:
            await self._handle_error(exc)
            raise
        return resp.body

    async def _handle_error(self, error: BaseException) -> None:
        if (
            isinstance(error, ServiceError)
            and error.is_client_fault
            and error.name != FORBIDDEN
        ):
            logger.warning("credentials (sso): invalidating stored token: %s", error.message)
            await self._provider.invalidate(f"ssoClient:{error.name}")
