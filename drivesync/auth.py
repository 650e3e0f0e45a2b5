"""Access token providers.

The sync core never refreshes credentials. It asks a provider for a valid
token and fails the cycle with DriveAuthenticationError when none is available.
"""

from typing import Optional, Protocol

from .config import config
from .exceptions import DriveAuthenticationError


class TokenProvider(Protocol):
    """Supplies bearer tokens for the Drive API."""

    def get_valid_token(self) -> str:
        """Return a currently valid access token.

        Raises:
            DriveAuthenticationError: If no valid token can be obtained
        """
        ...


class StaticTokenProvider:
    """Token provider returning a fixed token (from arguments or config)."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def get_valid_token(self) -> str:
        token = self._token or config.token
        if not token:
            raise DriveAuthenticationError(
                "No access token configured. Run 'drivesync init' or set "
                "DRIVESYNC_TOKEN."
            )
        return token
