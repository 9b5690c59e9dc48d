"""Error classification shared by the Spotify accounts and Web API clients.

Every failure that leaves ``botm.spotify`` is a ``SpotifyApiError`` carrying
one of a closed set of kinds. Callers branch on ``kind``; they never inspect
status codes or messages.
"""

import enum


class ErrorKind(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"  # 401: access token rejected
    RATE_LIMITED = "rate_limited"  # 429 still returned after all retries
    TRANSIENT = "transient"        # network, timeout, 5xx after all retries
    PERMANENT = "permanent"        # other 4xx, malformed payloads

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.PERMANENT


class SpotifyApiError(Exception):
    """Raised by the Spotify clients once their own retry budget is spent."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        operation: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.operation = operation
        self.status_code = status_code
        self.retry_after = retry_after

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{self.operation or 'spotify'} [{self.status_code}]: {base}"
        return f"{self.operation or 'spotify'}: {base}"


class InvalidGrantError(SpotifyApiError):
    """The refresh token was revoked or is otherwise unusable."""

    def __init__(self, message: str = "refresh token rejected (invalid_grant)"):
        super().__init__(
            ErrorKind.PERMANENT, message, operation="refresh_token", status_code=400
        )
