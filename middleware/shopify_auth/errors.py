"""
Error types raised across the authentication middleware.

Everything that can go wrong at the identity-provider boundary is raised as
a single IdentityError carrying an ErrorKind, so callers switch on the kind
instead of on exception classes.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds produced by the identity client boundary."""

    INVALID_TOKEN = "invalid_token"
    MISSING_TOKEN = "missing_token"
    SESSION_NOT_FOUND = "session_not_found"
    COOKIE_NOT_FOUND = "cookie_not_found"
    INVALID_OAUTH = "invalid_oauth"
    INVALID_SHOP = "invalid_shop"
    HTTP_FAILURE = "http_failure"
    EXCHANGE_TIMEOUT = "exchange_timeout"
    INACTIVE_SESSION = "inactive_session"
    SESSION_STORAGE = "session_storage"
    OTHER = "other"


# Kinds meaning "the caller is not (or no longer) authenticated"
TOKEN_ERRORS = frozenset({ErrorKind.INVALID_TOKEN, ErrorKind.MISSING_TOKEN})

# OAuth callback failures the merchant can recover from by starting over
RECOVERABLE_CALLBACK_ERRORS = frozenset(
    {ErrorKind.COOKIE_NOT_FOUND, ErrorKind.SESSION_NOT_FOUND}
)


class IdentityError(Exception):
    """
    Failure reported by the identity client or the token exchange coordinator.

    Attributes:
        kind: ErrorKind tag
        message: Human-readable description (never contains secrets)
        code: HTTP status code for HTTP_FAILURE (None for transport errors)
        body: Upstream response body kept for diagnostics
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.body = body

    @property
    def is_auth_failure(self) -> bool:
        """True for upstream 401/403 responses, the only liveness failures we re-authorize on."""
        return self.kind is ErrorKind.HTTP_FAILURE and self.code in (401, 403)

    @property
    def is_token_error(self) -> bool:
        return self.kind in TOKEN_ERRORS

    @property
    def is_recoverable_callback_failure(self) -> bool:
        return self.kind in RECOVERABLE_CALLBACK_ERRORS

    def __repr__(self) -> str:
        return f"IdentityError(kind={self.kind.value!r}, message={self.message!r}, code={self.code!r})"


class InvalidAuthPathError(ValueError):
    """Raised at construction time when an auth route is not '/x' without trailing slash."""

    def __init__(self, path: str):
        super().__init__(
            f"Invalid auth path: '{path}'. "
            "Must be a relative path without a trailing slash (eg. '/auth')."
        )
        self.path = path


def validate_auth_path(path: str) -> str:
    """
    Validate an auth route prefix.

    Raises:
        InvalidAuthPathError: If the path does not start with '/' or ends with '/'
    """
    if not path or not path.startswith("/") or path.endswith("/"):
        raise InvalidAuthPathError(path)
    return path


__all__ = [
    "ErrorKind",
    "IdentityError",
    "InvalidAuthPathError",
    "validate_auth_path",
]
