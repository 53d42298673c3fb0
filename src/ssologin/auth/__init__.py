"""Loopback redirect server, server registry, token providers and login flows.

The main entry points are:

- :class:`LoopbackAuthServer` -- one-shot receiver for the provider's redirect.
- :class:`AuthServerRegistry` -- keeps at most one live server per process.
- :class:`TokenProvider` / :class:`MemoryTokenProvider` -- bearer token
  source for the portal client.
- :class:`AuthorizationCodeFlow` / :class:`DeviceCodeFlow` -- interactive
  logins that return a :class:`LoginSession`.

Typical usage::

    from ssologin.auth import AuthorizationCodeFlow, MemoryTokenProvider

    session = await AuthorizationCodeFlow(oidc, settings).run(start_url)
    provider = MemoryTokenProvider(session.token, registration=session.registration, oidc=oidc)
"""

from ssologin.auth.flows import (
    AuthorizationCodeFlow,
    DeviceCodeFlow,
    LoginSession,
    generate_pkce_pair,
)
from ssologin.auth.registry import AuthServerRegistry, get_registry, reset_registry
from ssologin.auth.server import LoopbackAuthServer
from ssologin.auth.tokens import MemoryTokenProvider, TokenProvider

__all__ = [
    "AuthServerRegistry",
    "AuthorizationCodeFlow",
    "DeviceCodeFlow",
    "LoginSession",
    "LoopbackAuthServer",
    "MemoryTokenProvider",
    "TokenProvider",
    "generate_pkce_pair",
    "get_registry",
    "reset_registry",
]
