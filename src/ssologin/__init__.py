"""ssologin -- browser and device-code single sign-on for desktop clients.

This package signs a desktop client in to a cloud identity provider without an
embedded browser. A short-lived loopback HTTP server receives the provider's
redirect, the identity client exchanges the code (or a device code) for
tokens, and the portal client lists accounts and roles and fetches role
credentials with a bearer token injected per call.

Typical workflow::

    ssologin --start-url https://example.awsapps.com/start login
    ssologin --start-url https://example.awsapps.com/start accounts

Tokens are kept in memory only; persisting them is left to the caller.

Modules:
    app: Typer CLI entry point.
    models: Pydantic models for wire shapes, results and settings.
    config: XDG-aware settings resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting with Rich support.
    result: Two-variant result value used by the loopback server.
    auth: Loopback server, server registry, token providers and login flows.
    client: Identity provider and portal clients.
"""

__version__ = "0.1.0"
