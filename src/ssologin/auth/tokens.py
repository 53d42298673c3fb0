"""Token providers consumed by :class:`~ssologin.client.sso.SsoClient`.

The portal client never stores tokens. It asks a :class:`TokenProvider` for
the current token before every call and tells it to
:meth:`~TokenProvider.invalidate` when the provider rejects that token.

:class:`MemoryTokenProvider` keeps one token in memory and, when given the
client registration and an :class:`~ssologin.client.oidc.OidcClient`,
refreshes it with the ``refresh_token`` grant once it expires. Persisting
tokens is left to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional, Protocol, runtime_checkable

from ssologin.exceptions import ClientResponseError
from ssologin.models import ClientRegistration, CreateTokenRequest, SsoToken

if TYPE_CHECKING:
    from ssologin.client.oidc import OidcClient

logger = logging.getLogger(__name__)

REFRESH_GRANT = "refresh_token"


@runtime_checkable
class TokenProvider(Protocol):
    """Source of bearer tokens for authenticated calls."""

    async def get_token(self) -> Optional[SsoToken]:
        """Return the current token, or ``None`` when signed out."""
        ...

    async def invalidate(self, reason: str) -> None:
        """Discard the cached token. *reason* is ``"<client>:<ErrorName>"``."""
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryTokenProvider:
    """In-memory :class:`TokenProvider` with optional refresh.

    Args:
        token: Initial token, e.g. the result of a login flow.
        registration: Client registration used for the refresh grant.
        oidc: Client used for the refresh grant.
        clock: Callable returning the current aware UTC time.

    Attributes:
        invalidations: Reasons passed to :meth:`invalidate`, oldest first.
    """

    def __init__(
        self,
        token: Optional[SsoToken] = None,
        *,
        registration: Optional[ClientRegistration] = None,
        oidc: Optional[OidcClient] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._token = token
        self._registration = registration
        self._oidc = oidc
        self._clock = clock
        self._lock = asyncio.Lock()
        self.invalidations: list[str] = []

    def set_token(self, token: Optional[SsoToken]) -> None:
        self._token = token

    async def get_token(self) -> Optional[SsoToken]:
        async with self._lock:
            token = self._token
            if token is None or not token.is_expired(self._clock()):
                return token
            if self._can_refresh(token):
                self._token = await self._refresh(token)
            else:
                logger.debug("MemoryTokenProvider: token expired and cannot be refreshed")
                self._token = None
            return self._token

    async def invalidate(self, reason: str) -> None:
        logger.info("MemoryTokenProvider: invalidating token (%s)", reason)
        self.invalidations.append(reason)
        self._token = None

    def _can_refresh(self, token: SsoToken) -> bool:
        return bool(
            token.refresh_token
            and self._oidc is not None
            and self._registration is not None
            and self._clock() < self._registration.expires_at
        )

    async def _refresh(self, token: SsoToken) -> SsoToken:
        assert self._oidc is not None and self._registration is not None
        logger.debug("MemoryTokenProvider: refreshing expired token")
        request = CreateTokenRequest(
            client_id=self._registration.client_id,
            client_secret=self._registration.client_secret,
            grant_type=REFRESH_GRANT,
            refresh_token=token.refresh_token,
        )
        try:
            refreshed = await self._oidc.create_token(request)
        except ClientResponseError as exc:
            if exc.is_client_fault:
                await self.invalidate(f"refresh:{exc.name}")
            raise
        if refreshed.refresh_token is None:
            refreshed = refreshed.model_copy(update={"refresh_token": token.refresh_token})
        return refreshed
