from .auth import SpotifyAuthClient, TokenGrant
from .client import SpotifyClient, create_http_client
from .errors import ErrorKind, InvalidGrantError, SpotifyApiError

__all__ = [
    "SpotifyAuthClient",
    "TokenGrant",
    "SpotifyClient",
    "create_http_client",
    "ErrorKind",
    "InvalidGrantError",
    "SpotifyApiError",
]
