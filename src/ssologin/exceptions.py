"""Exception hierarchy for ssologin.

All exceptions inherit from :class:`SsoLoginError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`ssologin.exit_codes`
and a stable, machine-readable ``code``. The CLI entry point in
:func:`ssologin.app.main` catches ``SsoLoginError`` and exits with the
appropriate code.

Subclass hierarchy::

    SsoLoginError (exit 1)
    +-- AuthServerError              (exit 3)
    |   +-- MissingPortError
    +-- AuthRedirectProtocolError    (exit 3)
    |   +-- MissingCodeError
    |   +-- MissingStateError
    |   +-- InvalidStateError
    |   +-- AuthRedirectError
    +-- CancellationError            (exit 130)
    |   +-- FlowTimedOutError
    +-- MissingPropertyError         (exit 8)
    +-- ServiceError                 (exit 5)
    |   +-- ClientResponseError
    +-- ConnectionError_             (exit 6)
    +-- ConfigError                  (exit 1)

Messages never include credential values; :class:`ServiceError` keeps only
the provider's error name, message, HTTP status and request id.
"""

from __future__ import annotations

from typing import Optional

from ssologin.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_CONTRACT_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_SERVER_ERROR,
)


class SsoLoginError(Exception):
    """Base exception for all ssologin errors.

    Args:
        message: Human-readable error description printed to stderr.
        code: Optional override for the class-level machine-readable code.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE
    code: str = "SsoLoginError"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        exit_code: Optional[int] = None,
    ):
        super().__init__(message)
        if code is not None:
            self.code = code
        if exit_code is not None:
            self.exit_code = exit_code

    @property
    def message(self) -> str:
        return str(self)


# --- Loopback server ---


class AuthServerError(SsoLoginError):
    """Raised for loopback server lifecycle failures (bind, start, close)."""

    exit_code = EXIT_AUTH_FAILURE
    code = "AuthServerError"


class MissingPortError(AuthServerError):
    """Raised when the loopback server has no bound port to report."""

    code = "MissingPort"

    def __init__(self) -> None:
        super().__init__("LoopbackAuthServer: missing auth server port")


class AuthRedirectProtocolError(SsoLoginError):
    """Base class for errors delivered through the browser redirect.

    These are never raised across the wait boundary; the server resolves
    the pending flow with them as :meth:`ssologin.result.Result.err` values.
    """

    exit_code = EXIT_AUTH_FAILURE
    code = "AuthRedirectProtocolError"


class MissingCodeError(AuthRedirectProtocolError):
    code = "MissingCode"

    def __init__(self) -> None:
        super().__init__("LoopbackAuthServer: missing code")


class MissingStateError(AuthRedirectProtocolError):
    code = "MissingState"

    def __init__(self) -> None:
        super().__init__("LoopbackAuthServer: missing state")


class InvalidStateError(AuthRedirectProtocolError):
    code = "InvalidState"

    def __init__(self) -> None:
        super().__init__("LoopbackAuthServer: invalid state")


class AuthRedirectError(AuthRedirectProtocolError):
    """The identity provider redirected back with ``error``/``error_description``."""

    code = "AuthRedirectError"

    def __init__(self, error: str, error_description: str) -> None:
        self.error = error
        self.error_description = error_description
        super().__init__(f"LoopbackAuthServer: {error}: {error_description}")


# --- Cancellation ---


class CancellationError(SsoLoginError):
    """The flow was aborted rather than failed.

    Attributes:
        agent: ``"user"`` for an explicit cancellation, ``"timeout"`` when
            a timer expired.
    """

    exit_code = EXIT_CANCELLED
    code = "Cancelled"

    def __init__(self, agent: str = "user", message: Optional[str] = None) -> None:
        self.agent = agent
        super().__init__(message or f"Cancelled by {agent}")


class FlowTimedOutError(CancellationError):
    """Raised when the login flow outlives its hard timeout."""

    code = "TimedOut"

    def __init__(self, message: str = "Timed-out waiting for browser login flow to complete") -> None:
        super().__init__(agent="timeout", message=message)


# --- Provider responses ---


class MissingPropertyError(SsoLoginError):
    """Raised when a provider response lacks fields the client requires.

    Always fatal to the current call and never retried.

    Attributes:
        missing: Names of the absent fields, in wire (camelCase) form.
    """

    exit_code = EXIT_CONTRACT_ERROR
    code = "MissingProperty"

    def __init__(self, missing: list[str], shape: str = "response") -> None:
        self.missing = list(missing)
        self.shape = shape
        super().__init__(
            f"{shape} is missing required properties: {', '.join(self.missing)}"
        )


class ServiceError(SsoLoginError):
    """A provider-declared service exception.

    Attributes:
        name: The provider's exception name (e.g. ``"InvalidGrantException"``).
        status_code: HTTP status of the failed response.
        request_id: Provider correlation id, when one was returned.
        fault: ``"client"`` for 4xx responses, ``"server"`` for 5xx.
    """

    exit_code = EXIT_SERVER_ERROR

    THROTTLING_NAMES = frozenset(
        {"ThrottlingException", "TooManyRequestsException", "RequestLimitExceeded"}
    )

    def __init__(
        self,
        name: str,
        message: str,
        status_code: int,
        request_id: Optional[str] = None,
    ) -> None:
        self.name = name
        self.status_code = status_code
        self.request_id = request_id
        self.fault = "client" if 400 <= status_code < 500 else "server"
        super().__init__(message or name, code=name)

    @property
    def is_client_fault(self) -> bool:
        """True for 4xx responses other than throttling."""
        return self.fault == "client" and not self.is_throttling

    @property
    def is_throttling(self) -> bool:
        return self.status_code == 429 or self.name in self.THROTTLING_NAMES

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, status_code={self.status_code}, "
            f"request_id={self.request_id!r})"
        )


class ClientResponseError(ServiceError):
    """Normalized form of a token-exchange failure.

    :meth:`ssologin.client.oidc.OidcClient.create_token` re-wraps every
    :class:`ServiceError` into this type so callers can handle token
    issuance failures uniformly.
    """

    @classmethod
    def instance_if(cls, error: BaseException) -> BaseException:
        """Return *error* re-wrapped as a :class:`ClientResponseError` if it is a service error."""
        if isinstance(error, ServiceError) and not isinstance(error, ClientResponseError):
            wrapped = cls(error.name, str(error), error.status_code, error.request_id)
            wrapped.__cause__ = error
            return wrapped
        return error


class ConnectionError_(SsoLoginError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """

    exit_code = EXIT_CONNECTION_ERROR
    code = "ConnectionError"


class ConfigError(SsoLoginError):
    """Raised for configuration problems (invalid JSON, bad values)."""

    exit_code = EXIT_GENERIC_FAILURE
    code = "ConfigError"
