"""Process-wide coordinator that keeps at most one live loopback server.

:meth:`AuthServerRegistry.init` is the only way the registry's last instance
changes. It closes the previous server if that one is still open, then
creates and records a new one.

A module-level default registry is available through :func:`get_registry`.
Tests call :func:`reset_registry` (or build their own
:class:`AuthServerRegistry`) so that cases never share servers.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ssologin.auth.server import LoopbackAuthServer
from ssologin.exceptions import AuthServerError

logger = logging.getLogger(__name__)

ServerFactory = Callable[..., LoopbackAuthServer]


class AuthServerRegistry:
    """Tracks the most recently initialised :class:`LoopbackAuthServer`.

    Args:
        factory: Callable building a server from ``state`` and keyword
            options; defaults to :class:`LoopbackAuthServer`.
    """

    def __init__(self, factory: ServerFactory = LoopbackAuthServer) -> None:
        self._factory = factory
        self._last_instance: Optional[LoopbackAuthServer] = None

    @property
    def last_instance(self) -> Optional[LoopbackAuthServer]:
        return self._last_instance

    async def init(self, state: str, **options: Any) -> LoopbackAuthServer:
        """Close any still-open previous server and return a new one bound to *state*.

        A failure to close the previous server is logged, not raised, so a
        stale server never blocks a new login.

        Args:
            state: Anti-CSRF value for the new server.
            **options: Forwarded to the factory (``flow_timeout``,
                ``warning_timeout``, ``resources_dir``).
        """
        last = self._last_instance
        if last is not None and not last.closed:
            try:
                await last.close()
            except AuthServerError as exc:
                logger.error(
                    "Failed to close already existing auth server in AuthServerRegistry.init(): %s",
                    exc,
                )

        logger.debug("AuthServerRegistry: initialized new auth server")
        instance = self._factory(state, **options)
        self._last_instance = instance
        return instance


# Module-level default registry
_registry: Optional[AuthServerRegistry] = None


def get_registry() -> AuthServerRegistry:
    """Return the process-wide registry, creating it on first use."""
    global _registry
    if _registry is None:
        _registry = AuthServerRegistry()
    return _registry


def set_registry(registry: AuthServerRegistry) -> None:
    global _registry
    _registry = registry


def reset_registry() -> None:
    """Forget the process-wide registry. Used by tests."""
    global _registry
    _registry = None
