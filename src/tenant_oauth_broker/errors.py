"""Error types shared across the broker."""

from __future__ import annotations

from starlette.responses import JSONResponse


class OAuthError(Exception):
    """OAuth 2.0 error surfaced to a program at the token endpoint."""

    def __init__(self, error: str, description: str, status_code: int = 400) -> None:
        super().__init__(description)
        self.error = error
        self.description = description
        self.status_code = status_code

    def to_response(self) -> JSONResponse:
        return oauth_error_response(self.error, self.description, self.status_code)


def oauth_error_response(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "error_description": description,
        },
        headers={"Cache-Control": "no-store"},
    )


class AuthenticationError(Exception):
    """Base class for request authentication failures.

    ``jsonrpc_code`` and ``error`` distinguish the two failure kinds for
    callers of the protected endpoint.
    """

    jsonrpc_code: int = -32001
    error: str = "unauthenticated"
    status_code: int = 401


class Unauthenticated(AuthenticationError):
    """The bearer token is missing, unknown or expired."""

    jsonrpc_code = -32001
    error = "invalid_token"


class ReauthorizationRequired(AuthenticationError):
    """The tenant connection is gone or can no longer be refreshed.

    The client has to run the authorization flow again; retrying the same
    request will not help.
    """

    jsonrpc_code = -32003
    error = "reauthorization_required"


class UpstreamTokenError(Exception):
    """The third party rejected a code exchange or refresh."""

    def __init__(self, message: str, status_code: int | None = None, error: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.error = error


class StorageUnavailableError(Exception):
    """Transient failure of the backing store."""


class LockTimeoutError(Exception):
    """A tenant lock could not be acquired within the configured wait."""

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {key!r}")
        self.key = key
        self.timeout = timeout
