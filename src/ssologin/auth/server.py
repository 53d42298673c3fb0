"""Loopback HTTP server that receives the identity provider's redirect.

:class:`LoopbackAuthServer` binds an ephemeral port on ``127.0.0.1`` and
serves two kinds of request:

* ``GET /oauth/callback`` -- checks ``error``/``error_description``, then
  ``code``, then ``state``, settles the pending flow and redirects the
  browser to ``/index.html`` (with ``?error=<message>`` on failure).
* anything else -- static files from the login page directory, ``404`` with
  an empty body when the file cannot be read.

Every outcome (success, redirect error, user cancellation, hard timeout) goes
through :meth:`LoopbackAuthServer._resolve`, which accepts only the first
result. Later requests are still served but cannot change the outcome.

Callers must always :meth:`~LoopbackAuthServer.close` the server once
:meth:`~LoopbackAuthServer.wait_for_authorization` returns or raises.
Instances are normally created through
:meth:`ssologin.auth.registry.AuthServerRegistry.init`, which keeps at most
one live listener per process.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import socket
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlencode

from aiohttp import web

from ssologin.exceptions import (
    AuthRedirectError,
    AuthRedirectProtocolError,
    AuthServerError,
    CancellationError,
    FlowTimedOutError,
    InvalidStateError,
    MissingCodeError,
    MissingPortError,
    MissingStateError,
)
from ssologin.result import Result

logger = logging.getLogger(__name__)

DEFAULT_FLOW_TIMEOUT = 600.0
DEFAULT_WARNING_TIMEOUT = 60.0

WEB_ROOT = Path(__file__).resolve().parent.parent / "resources" / "web"


class LoopbackAuthServer:
    """One-shot redirect receiver for a single login flow.

    Args:
        state: Anti-CSRF value the redirect must echo back. Fixed for the
            lifetime of the instance.
        flow_timeout: Seconds before :meth:`wait_for_authorization` gives up.
        warning_timeout: Seconds before a "taking a long time" warning is logged.
        resources_dir: Directory of static login pages; defaults to the
            bundled pages.
    """

    host = "127.0.0.1"
    oauth_callback = "/oauth/callback"

    def __init__(
        self,
        state: str,
        *,
        flow_timeout: float = DEFAULT_FLOW_TIMEOUT,
        warning_timeout: float = DEFAULT_WARNING_TIMEOUT,
        resources_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        self._state = state
        self.flow_timeout = flow_timeout
        self.warning_timeout = warning_timeout
        self._root = Path(resources_dir).resolve() if resources_dir else WEB_ROOT

        self._result: Optional[Result[str]] = None
        self._settled = asyncio.Event()
        self._connections: set[asyncio.BaseTransport] = set()
        self._closed = False
        self._close_lock = asyncio.Lock()
        self._runner: Optional[web.AppRunner] = None
        self._sock: Optional[socket.socket] = None

        self.app = web.Application(middlewares=[self._track_connection])
        self.app.router.add_get(self.oauth_callback, self._handle_callback)
        self.app.router.add_get("/{path:.*}", self._handle_resource)

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> str:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listening(self) -> bool:
        return self._runner is not None and not self._closed

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def redirect_uri(self) -> str:
        """``http://127.0.0.1:<port>/oauth/callback``.

        Raises:
            MissingPortError: If no port is bound (not started, or closed).
        """
        return f"{self._base_location}{self.oauth_callback}"

    @property
    def _base_location(self) -> str:
        return f"http://{self.host}:{self._get_port()}"

    def get_address(self) -> Optional[tuple[str, int]]:
        """Return the bound ``(host, port)``, or ``None`` when nothing is bound."""
        if self._sock is None or self._closed:
            return None
        try:
            return self._sock.getsockname()[:2]
        except OSError:
            return None

    def _get_port(self) -> int:
        address = self.get_address()
        if not address:
            raise MissingPortError()
        return address[1]

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Bind an ephemeral loopback port and begin serving.

        Raises:
            AuthServerError: If the server is already started or closed, or
                the port cannot be bound.
            MissingPortError: If the listener reports no address.
        """
        if self._closed:
            raise AuthServerError("LoopbackAuthServer: server has closed")
        if self._runner is not None:
            raise AuthServerError("LoopbackAuthServer: server already started")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        runner = web.AppRunner(self.app, access_log=None)
        try:
            sock.bind((self.host, 0))
            await runner.setup()
            await web.SockSite(runner, sock).start()
        except OSError as exc:
            await runner.cleanup()
            sock.close()
            raise AuthServerError(f"LoopbackAuthServer: server failed: {exc}") from exc

        self._runner = runner
        self._sock = sock
        if not self.get_address():
            raise MissingPortError()
        logger.debug("LoopbackAuthServer: listening at %s", self._base_location)

    async def close(self) -> None:
        """Drop every tracked connection and stop listening.

        Idempotent: once closed, further calls return immediately.

        Raises:
            AuthServerError: If the server was never started.
        """
        async with self._close_lock:
            if self._closed:
                return
            if self._runner is None:
                raise AuthServerError("LoopbackAuthServer: server not started")

            logger.debug("LoopbackAuthServer: attempting to close server")
            for transport in self._connections:
                transport.abort()
            self._connections.clear()
            await self._runner.cleanup()
            self._closed = True
            logger.debug("LoopbackAuthServer: server closed")

    # ------------------------------------------------------------------ #
    # Flow resolution
    # ------------------------------------------------------------------ #

    def _resolve(self, result: Result[str]) -> bool:
        if self._result is not None:
            logger.debug("LoopbackAuthServer: flow already settled, ignoring %r", result)
            return False
        self._result = result
        self._settled.set()
        return True

    def cancel_current_flow(self) -> None:
        """Settle the pending flow as cancelled by the user."""
        logger.debug("LoopbackAuthServer: cancelling current login flow")
        self._resolve(Result.err(CancellationError("user")))

    async def wait_for_authorization(self) -> Result[str]:
        """Wait for the redirect, a cancellation, or the hard timeout.

        Returns:
            ``Result.ok(code)`` on a valid redirect, otherwise
            ``Result.err`` carrying an
            :class:`~ssologin.exceptions.AuthRedirectProtocolError` or
            :class:`~ssologin.exceptions.CancellationError`.

        Raises:
            FlowTimedOutError: If nothing settles the flow within
                ``flow_timeout`` seconds.
        """
        loop = asyncio.get_running_loop()
        warning = loop.call_later(
            self.warning_timeout,
            logger.warning,
            "LoopbackAuthServer: authentication is taking a long time",
        )
        try:
            await asyncio.wait_for(self._settled.wait(), self.flow_timeout)
        except asyncio.TimeoutError:
            self._resolve(Result.err(FlowTimedOutError()))
        finally:
            warning.cancel()

        result = self._result
        assert result is not None
        if isinstance(result.error, FlowTimedOutError):
            raise result.error
        return result

    # ------------------------------------------------------------------ #
    # Request handling
    # ------------------------------------------------------------------ #

    @web.middleware
    async def _track_connection(self, request: web.Request, handler) -> web.StreamResponse:
        if request.transport is not None:
            self._connections.add(request.transport)
        response = await handler(request)
        response.headers["Access-Control-Allow-Methods"] = "GET"
        return response

    async def _handle_callback(self, request: web.Request) -> web.Response:
        params = request.query

        error = params.get("error")
        error_description = params.get("error_description")
        if error and error_description:
            return self._reject(AuthRedirectError(error, error_description))

        code = params.get("code")
        if not code:
            return self._reject(MissingCodeError())

        state = params.get("state")
        if not state:
            return self._reject(MissingStateError())
        if state != self._state:
            return self._reject(InvalidStateError())

        self._resolve(Result.ok(code))
        return self._redirect()

    def _reject(self, error: AuthRedirectProtocolError) -> web.Response:
        response = self._redirect(error.message)
        self._resolve(Result.err(error))
        return response

    def _redirect(self, error: Optional[str] = None) -> web.Response:
        location = f"{self._base_location}/index.html"
        if error:
            location += f"?{urlencode({'error': error})}"
        return web.Response(status=302, headers={"Location": location})

    async def _handle_resource(self, request: web.Request) -> web.Response:
        try:
            target = (self._root / request.path.lstrip("/")).resolve()
            if not target.is_relative_to(self._root):
                logger.error(
                    "LoopbackAuthServer: refusing resource outside web root: %s", request.path
                )
                return web.Response(status=404)
            body = await asyncio.to_thread(target.read_bytes)
        except (OSError, ValueError):
            # ValueError: embedded NUL byte in the decoded path
            logger.error("LoopbackAuthServer: unable to find %s", request.path)
            return web.Response(status=404)
        content_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        return web.Response(body=body, content_type=content_type)
