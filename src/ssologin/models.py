"""Canonical Pydantic models shared across all ssologin modules.

This is the single source of truth for data shapes in the project. The models
fall into four groups:

**Configuration** -- :class:`EndpointsConfig` and :class:`Settings`, loaded
by :mod:`ssologin.config`.

**Identity provider (OIDC) requests and wire responses** --
:class:`RegisterClientRequest`, :class:`StartDeviceAuthorizationRequest`,
:class:`AuthorizeRequest`, :class:`CreateTokenRequest` and their
``*Response`` counterparts.

**Portal requests and wire responses** -- :class:`ListAccountsRequest`,
:class:`ListAccountRolesRequest`, :class:`GetRoleCredentialsRequest`,
:class:`AccountInfo`, :class:`RoleInfo`, :class:`RoleCredentials`.

**Results handed back to callers** -- :class:`ClientRegistration`,
:class:`DeviceAuthorization`, :class:`SsoToken`. These carry absolute
``expires_at`` timestamps; relative ``expiresIn`` values never leave the
client layer.

Wire models use camelCase aliases (``clientId``) while Python code uses
snake_case. Required fields are required on the model, so validating a
provider response is a parse step: :func:`parse_response` turns a missing
field into :class:`~ssologin.exceptions.MissingPropertyError` instead of
letting a ``KeyError`` escape later.

Credential-bearing fields are declared with ``repr=False`` so that logging a
model never prints a secret.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ssologin.exceptions import MissingPropertyError

M = TypeVar("M", bound=BaseModel)


class WireModel(BaseModel):
    """Base for models that cross the wire with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialise to the provider's camelCase JSON shape, dropping unset values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_response(model: type[M], data: Any, shape: Optional[str] = None) -> M:
    """Validate *data* against *model*, mapping absent fields to a contract error.

    ``None`` values are treated as absent, matching how the provider omits
    optional members.

    Args:
        model: The wire model class to validate against.
        data: Decoded JSON body.
        shape: Name used in the error message; defaults to the model name.

    Returns:
        The validated model instance.

    Raises:
        MissingPropertyError: If *data* is not an object or lacks (or has
            malformed) required fields.
    """
    name = shape or model.__name__
    if not isinstance(data, dict):
        raise MissingPropertyError(["<object>"], name)

    cleaned = {k: v for k, v in data.items() if v is not None}
    try:
        return model.model_validate(cleaned)
    except ValidationError as exc:
        missing: list[str] = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"])
            if loc not in missing:
                missing.append(loc)
        raise MissingPropertyError(missing, name) from None


# --- Configuration ---


class EndpointsConfig(BaseModel):
    """Per-service endpoint overrides.

    When unset, the regional defaults are used:
    ``https://oidc.{region}.amazonaws.com`` and
    ``https://portal.sso.{region}.amazonaws.com``.
    """

    ssooidc: Optional[str] = Field(default=None, description="Identity provider (OIDC) endpoint")
    sso: Optional[str] = Field(default=None, description="Account portal endpoint")


class Settings(BaseModel):
    """Effective configuration for clients and the loopback server.

    Serialised as JSON in the user's config directory; see
    :func:`ssologin.config.resolve_settings` for precedence.
    """

    region: str = Field(default="us-east-1", description="Identity provider region")
    start_url: Optional[str] = Field(default=None, description="Portal start URL")
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)
    request_timeout: float = Field(
        default=12.0, description="Per-request timeout for identity calls, in seconds"
    )
    max_attempts: int = Field(default=3, ge=1, description="Total attempts for identity calls")
    retry_invalid_grant: bool = Field(
        default=True, description="Retry token calls that fail with InvalidGrantException"
    )
    flow_timeout: float = Field(
        default=600.0, gt=0, description="Hard timeout for the browser flow, in seconds"
    )
    warning_timeout: float = Field(
        default=60.0, gt=0, description="Delay before logging a slow-login warning, in seconds"
    )
    resources_dir: Optional[str] = Field(
        default=None, description="Directory of static login pages (defaults to bundled pages)"
    )
    client_name: str = Field(default="ssologin", description="Name used for client registration")
    scopes: list[str] = Field(default_factory=lambda: ["sso:account:access"])


# --- OIDC requests ---


class RegisterClientRequest(WireModel):
    client_name: str
    client_type: str = "public"
    scopes: Optional[list[str]] = None
    grant_types: Optional[list[str]] = None
    redirect_uris: Optional[list[str]] = None
    issuer_url: Optional[str] = None


class StartDeviceAuthorizationRequest(WireModel):
    client_id: str
    client_secret: str = Field(repr=False)
    start_url: str


class AuthorizeRequest(WireModel):
    response_type: str = "code"
    client_id: str
    redirect_uri: str
    scopes: list[str]
    state: str
    code_challenge: str
    code_challenge_method: str = "S256"


class CreateTokenRequest(WireModel):
    client_id: str
    client_secret: str = Field(repr=False)
    grant_type: str
    device_code: Optional[str] = Field(default=None, repr=False)
    code: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    scope: Optional[list[str]] = None
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = Field(default=None, repr=False)


# --- OIDC wire responses ---


class RegisterClientResponse(WireModel):
    client_id: str
    client_secret: str = Field(repr=False)
    client_secret_expires_at: int
    client_id_issued_at: Optional[int] = None


class StartDeviceAuthorizationResponse(WireModel):
    device_code: str = Field(repr=False)
    user_code: str
    verification_uri: str
    expires_in: int
    verification_uri_complete: Optional[str] = None
    interval: Optional[int] = None


class CreateTokenResponse(WireModel):
    access_token: str = Field(repr=False)
    expires_in: int
    token_type: Optional[str] = None
    refresh_token: Optional[str] = Field(default=None, repr=False)
    id_token: Optional[str] = Field(default=None, repr=False)


# --- Results handed to callers ---


class ClientRegistration(BaseModel):
    """A registered public client. Immutable once returned."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: str = Field(repr=False)
    expires_at: datetime
    scopes: Optional[list[str]] = None
    start_url: str
    flow: Optional[str] = None


class DeviceAuthorization(BaseModel):
    """A device authorization grant.

    Attributes:
        expires_at: Absolute deadline, computed from the local clock when
            the response was received.
        interval: Minimum poll spacing in **milliseconds**, or ``None`` when
            the provider did not declare one.
    """

    model_config = ConfigDict(frozen=True)

    device_code: str = Field(repr=False)
    user_code: str
    verification_uri: str
    verification_uri_complete: Optional[str] = None
    expires_at: datetime
    interval: Optional[int] = None


class SsoToken(BaseModel):
    """Token material returned by a successful token exchange.

    Tokens are opaque; only ``expires_at`` is ever interpreted.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_type: Optional[str] = None
    expires_at: datetime
    request_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# --- Portal requests ---


class ListAccountsRequest(WireModel):
    next_token: Optional[str] = None
    max_results: Optional[int] = None


class ListAccountRolesRequest(WireModel):
    account_id: str
    next_token: Optional[str] = None
    max_results: Optional[int] = None


class GetRoleCredentialsRequest(WireModel):
    role_name: str
    account_id: str


# --- Portal responses ---


class AccountInfo(WireModel):
    account_id: str
    account_name: Optional[str] = None
    email_address: Optional[str] = None


class RoleInfo(WireModel):
    role_name: str
    account_id: str


class RoleCredentials(WireModel):
    """Short-term role credentials.

    ``expiration`` arrives as epoch milliseconds and is normalised to an
    aware UTC :class:`~datetime.datetime` by the portal client.
    """

    access_key_id: str
    secret_access_key: str = Field(repr=False)
    session_token: Optional[str] = Field(default=None, repr=False)
    expiration: Optional[datetime] = None


class GetRoleCredentialsResponse(WireModel):
    role_credentials: dict[str, Any] = Field(repr=False)
