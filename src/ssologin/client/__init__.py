"""HTTP clients for the identity provider and the account portal.

Classes:
    :class:`OidcClient` -- client registration, device authorization,
        authorize URL construction and token exchange, with retry.
    :class:`SsoClient` -- authenticated, paginated portal calls with token
        invalidation on rejection; never retried.

Both are built on :class:`~ssologin.client.transport.ServiceTransport` and
accept an ``httpx`` transport for testing.

Example::

    from ssologin.client import OidcClient

    async with OidcClient.create(settings) as oidc:
        registration = await oidc.register_client(request, start_url)
"""

from ssologin.client.oidc import OidcClient
from ssologin.client.pagination import AsyncPager
from ssologin.client.sso import SsoClient

__all__ = ["OidcClient", "SsoClient", "AsyncPager"]
