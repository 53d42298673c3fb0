"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~ssologin.exceptions.SsoLoginError` subclass.
Shell wrappers can inspect the exit code to tell a rejected login from a
provider outage without parsing stderr.

Example::

    $ ssologin --start-url https://my-org.awsapps.com/start accounts
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the browser login was rejected
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_AUTH_FAILURE = 3
"""The login flow failed (bad redirect, state mismatch, provider-declared error)."""

EXIT_SERVER_ERROR = 5
"""The identity provider or portal returned a service exception."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_CONTRACT_ERROR = 8
"""A provider response was missing a field the client requires."""

EXIT_CANCELLED = 130
"""The login flow was cancelled by the user or timed out."""
