from typing import Optional


class TransportError(RuntimeError):
    """A request never produced an HTTP response (DNS, connect, timeout, ...)."""


class AuthError(RuntimeError):
    """Base class for every failure surfaced by the authorization manager."""

    retryable = False


class InvalidGrantError(AuthError):
    """The authorization server rejected the code or refresh token.

    ``error`` and ``error_description`` are copied from the server's
    structured error body, e.g. ``{"error": "invalid_grant"}``.
    """

    def __init__(
        self,
        error: str,
        error_description: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
    ):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        message = error if not error_description else f"{error}: {error_description}"
        super().__init__(message)


class NoRefreshTokenError(AuthError):
    """A refresh was requested but there is no refresh token to use."""


class NetworkFailureError(AuthError):
    """The token request could not be completed; the caller may retry."""

    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class MalformedResponseError(AuthError):
    """The token endpoint answered with something that is not a token response."""

    def __init__(self, message: str, *, body: bytes = b"", status_code: Optional[int] = None):
        self.body = body
        self.status_code = status_code
        super().__init__(message)


class AuthorizationDeniedError(AuthError):
    """The redirect URI carried an ``error`` parameter (usually ``access_denied``)."""

    def __init__(self, error: str, state: Optional[str] = None):
        self.error = error
        self.state = state
        super().__init__(f"Authorization request failed: {error}")


class StateMismatchError(AuthError):
    def __init__(self, expected: Optional[str], received: Optional[str]):
        self.expected = expected
        self.received = received
        super().__init__(f"State mismatch: expected {expected!r}, received {received!r}")
