"""Provider client protocol.

The aggregator and the session refresher depend only on this interface,
never on the concrete WHOOP client, so tests can script provider behaviour.
"""

from typing import Any, Protocol, runtime_checkable

from leaderboard.domain.models import ProviderProfile, TokenGrant


@runtime_checkable
class ProviderClient(Protocol):
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Raises:
            CredentialRejectedError: the refresh token is permanently unusable.
            TransientProviderError: anything else.
        """
        ...

    async def fetch_resource(self, endpoint_path: str, access_token: str) -> Any:
        """Perform one authenticated read and return the decoded JSON payload."""
        ...

    async def fetch_profile(self, access_token: str) -> ProviderProfile | None:
        """Return the caller's profile, or None when it carries no user id."""
        ...
