"""Request middleware: call context, hook chain, and redacted logging.

This module provides three components used by every client:

* :class:`RequestContext` -- a mutable dataclass threaded through the chain.
  It records which client and operation issued the call (the per-call
  ``Class.operation`` tag) alongside request and response state.
* :class:`Middleware` / :class:`MiddlewareChain` -- ``on_request``,
  ``on_response`` and ``on_error`` hooks run in registration order.
* :class:`LoggingMiddleware` -- logs every request and response at DEBUG with
  credential-bearing fields replaced by ``[omitted]``.

The chain is assembled once at client construction, so every operation is
covered without decorating individual methods.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx

logger = logging.getLogger(__name__)

REDACTED_KEYS = frozenset(
    {
        "clientSecret",
        "accessToken",
        "refreshToken",
        "client_secret",
        "access_token",
        "refresh_token",
    }
)

# Errors that are part of normal control flow and not worth an ERROR line.
QUIET_ERROR_NAMES = frozenset({"AuthorizationPendingException"})


def partial_clone(
    value: Any,
    depth: int = 3,
    omit_keys: Iterable[str] = REDACTED_KEYS,
    replacement: str = "[omitted]",
) -> Any:
    """Copy *value* for logging, redacting secrets and truncating depth.

    Mappings and non-string sequences are copied up to *depth* levels; any
    container below that is replaced with ``"[depth limit]"``. Values under
    a key in *omit_keys* are replaced with *replacement* at every level.

    Args:
        value: The object to copy.
        depth: Number of container levels to keep.
        omit_keys: Keys whose values must never be logged.
        replacement: Placeholder for omitted values.

    Returns:
        A new structure safe to hand to a logger.
    """
    omit = frozenset(omit_keys)

    def _clone(obj: Any, level: int) -> Any:
        if isinstance(obj, Mapping):
            if level >= depth:
                return "[depth limit]"
            return {
                k: (replacement if k in omit else _clone(v, level + 1))
                for k, v in obj.items()
            }
        if isinstance(obj, Sequence) and not isinstance(obj, (str, bytes, bytearray)):
            if level >= depth:
                return "[depth limit]"
            return [_clone(v, level + 1) for v in obj]
        return obj

    return _clone(value, 0)


@dataclass
class RequestContext:
    """Mutable context object threaded through the middleware chain.

    Attributes:
        client_name: Originating client class (e.g. ``"SsoClient"``).
        operation: Logical operation name (e.g. ``"listAccounts"``).
        method: HTTP method.
        url: Fully resolved request URL.
        input: Request payload as sent (may contain secrets).
        output: Decoded response body, set after a successful call.
        status_code: HTTP status, set once a response is received.
        error: Exception instance if the call failed.
        attempt: 1-based attempt number for retried calls.
    """

    client_name: str
    operation: str
    method: str = ""
    url: str = ""
    input: Any = None
    output: Any = None
    status_code: int = 0
    error: Optional[BaseException] = None
    attempt: int = 1

    @property
    def tag(self) -> str:
        return f"{self.client_name}.{self.operation}"

    @property
    def host_and_path(self) -> tuple[str, str]:
        parsed = httpx.URL(self.url)
        return parsed.host, parsed.path


class Middleware:
    """Base class for request middleware. All hooks default to no-ops."""

    def on_request(self, ctx: RequestContext) -> None:
        """Called before each attempt is sent."""

    def on_response(self, ctx: RequestContext) -> None:
        """Called after a successful response has been decoded."""

    def on_error(self, ctx: RequestContext) -> None:
        """Called when an attempt fails; ``ctx.error`` is set."""


class MiddlewareChain:
    """Executes middleware hooks in registration order."""

    def __init__(self, middleware: Optional[Iterable[Middleware]] = None) -> None:
        self._middleware: list[Middleware] = list(middleware or [])

    def add(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    def __len__(self) -> int:
        return len(self._middleware)

    def run_request(self, ctx: RequestContext) -> None:
        for mw in self._middleware:
            mw.on_request(ctx)

    def run_response(self, ctx: RequestContext) -> None:
        for mw in self._middleware:
            mw.on_response(ctx)

    def run_error(self, ctx: RequestContext) -> None:
        """Run ``on_error`` hooks; a failing hook never masks ``ctx.error``."""
        for mw in self._middleware:
            try:
                mw.on_error(ctx)
            except Exception:
                logger.exception("middleware %r failed in on_error", mw)


class LoggingMiddleware(Middleware):
    """Log requests and responses with credentials elided.

    Args:
        depth: Maximum nesting depth kept in logged payloads.
        omit_keys: Keys whose values are replaced with ``[omitted]``.
    """

    def __init__(self, depth: int = 3, omit_keys: Iterable[str] = REDACTED_KEYS) -> None:
        self._depth = depth
        self._omit = frozenset(omit_keys)

    def on_request(self, ctx: RequestContext) -> None:
        host, path = ctx.host_and_path
        logger.debug(
            "API request (%s %s) [%s]: %s",
            host,
            path,
            ctx.tag,
            partial_clone(ctx.input, self._depth, self._omit),
        )

    def on_response(self, ctx: RequestContext) -> None:
        host, path = ctx.host_and_path
        logger.debug(
            "API response (%s %s) [%s]: %s",
            host,
            path,
            ctx.tag,
            partial_clone(ctx.output, self._depth, self._omit),
        )

    def on_error(self, ctx: RequestContext) -> None:
        error = ctx.error
        if error is None or getattr(error, "name", None) in QUIET_ERROR_NAMES:
            return
        host, path = ctx.host_and_path
        logger.error("API response (%s %s) [%s]: %r", host, path, ctx.tag, error)


def default_chain() -> MiddlewareChain:
    """Return the chain every client starts with."""
    return MiddlewareChain([LoggingMiddleware()])
