"""Configuration loading with XDG paths and precedence resolution.

This module resolves the effective :class:`~ssologin.models.Settings`:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.ssologin/`` on macOS and Windows. See :func:`get_config_dir`.
* **Config file** -- a single JSON document deserialised into
  :class:`~ssologin.models.Settings`. See :func:`load_settings`.
* **Precedence resolution** -- :func:`resolve_settings` merges explicit
  arguments, environment variables, the config file and defaults.
* **Endpoint resolution** -- :func:`oidc_endpoint` and :func:`sso_endpoint`
  apply the configured overrides on top of the regional defaults.

Settings are read-only here; writing them is left to whatever tool owns the
user's configuration.
"""

from __future__ import annotations

import json
import os
import platform
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from ssologin.exceptions import ConfigError
from ssologin.models import Settings

_APP_NAME = "ssologin"
_CONFIG_FILENAME = "config.json"

ENV_REGION = "SSOLOGIN_REGION"
ENV_START_URL = "SSOLOGIN_START_URL"
ENV_OIDC_ENDPOINT = "SSOLOGIN_OIDC_ENDPOINT"
ENV_SSO_ENDPOINT = "SSOLOGIN_SSO_ENDPOINT"
ENV_FLOW_TIMEOUT = "SSOLOGIN_FLOW_TIMEOUT"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform uses the XDG Base Directory layout (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def get_config_dir() -> Path:
    """Return the configuration directory without creating it.

    On Linux/BSD: ``$XDG_CONFIG_HOME/ssologin/`` (default ``~/.config/ssologin/``).
    On macOS/Windows: ``~/.ssologin/``.
    """
    if _is_xdg_platform():
        env_value = os.environ.get("XDG_CONFIG_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".config"
        return base / _APP_NAME
    return Path.home() / f".{_APP_NAME}"


def get_data_dir() -> Path:
    """Return the directory for crash logs, creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/ssologin/`` (default ``~/.local/share/ssologin/``).
    On macOS/Windows: ``~/.ssologin/logs/``.
    """
    if _is_xdg_platform():
        env_value = os.environ.get("XDG_DATA_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".local" / "share"
        path = base / _APP_NAME
    else:
        path = Path.home() / f".{_APP_NAME}" / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def config_path() -> Path:
    """Path to the settings file."""
    return get_config_dir() / _CONFIG_FILENAME


# --- Loading ---


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from *path* (default: :func:`config_path`).

    Returns:
        The deserialised :class:`~ssologin.models.Settings`. If the file
        does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = path or config_path()
    if not path.is_file():
        return Settings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Settings.model_validate(data)
    except (json.JSONDecodeError, ValidationError, ValueError) as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if os.environ.get(ENV_REGION):
        overrides["region"] = os.environ[ENV_REGION]
    if os.environ.get(ENV_START_URL):
        overrides["start_url"] = os.environ[ENV_START_URL]
    if os.environ.get(ENV_FLOW_TIMEOUT):
        raw = os.environ[ENV_FLOW_TIMEOUT]
        try:
            overrides["flow_timeout"] = float(raw)
        except ValueError:
            raise ConfigError(
                f"{ENV_FLOW_TIMEOUT} must be a number of seconds, got {raw!r}"
            ) from None
    return overrides


def resolve_settings(
    path: Optional[Path] = None,
    **explicit: Any,
) -> Settings:
    """Resolve settings with the full precedence chain.

    Precedence (high to low):
        1. Explicit keyword arguments whose value is not ``None``
        2. Environment variables (``SSOLOGIN_REGION``, ``SSOLOGIN_START_URL``,
           ``SSOLOGIN_OIDC_ENDPOINT``, ``SSOLOGIN_SSO_ENDPOINT``,
           ``SSOLOGIN_FLOW_TIMEOUT``)
        3. Config file
        4. Defaults

    Args:
        path: Optional config file path override.
        **explicit: Field values for :class:`~ssologin.models.Settings`.

    Returns:
        The merged, validated settings.

    Raises:
        ConfigError: If the file is invalid or the merged values fail validation.
    """
    base = load_settings(path)
    merged = base.model_dump()
    merged.update(_env_overrides())

    endpoints = dict(merged.get("endpoints") or {})
    if os.environ.get(ENV_OIDC_ENDPOINT):
        endpoints["ssooidc"] = os.environ[ENV_OIDC_ENDPOINT]
    if os.environ.get(ENV_SSO_ENDPOINT):
        endpoints["sso"] = os.environ[ENV_SSO_ENDPOINT]
    merged["endpoints"] = endpoints

    merged.update({k: v for k, v in explicit.items() if v is not None})

    try:
        return Settings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc


# --- Endpoints ---


def oidc_endpoint(settings: Settings, region: Optional[str] = None) -> str:
    """Return the identity provider base URL for *region*."""
    if settings.endpoints.ssooidc:
        return settings.endpoints.ssooidc.rstrip("/")
    return f"https://oidc.{region or settings.region}.amazonaws.com"


def sso_endpoint(settings: Settings, region: Optional[str] = None) -> str:
    """Return the account portal base URL for *region*."""
    if settings.endpoints.sso:
        return settings.endpoints.sso.rstrip("/")
    return f"https://portal.sso.{region or settings.region}.amazonaws.com"
