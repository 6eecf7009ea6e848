"""WHOOP live client: OAuth refresh-token exchange and authenticated reads.

Every call is a single attempt. Failures are classified into the provider
error taxonomy (see http_client); retry policy belongs to the caller.
Tokens are never logged.
"""

from typing import Any

import httpx
import structlog

from leaderboard.adapters.http_client import (
    CredentialRejectedError,
    ProviderError,
    ResourceNotFoundError,
    TransientProviderError,
    endpoint_label,
    json_body,
    raise_for_resource_response,
    raise_for_token_response,
)
from leaderboard.adapters.whoop_mapper import parse_profile
from leaderboard.domain.models import ProviderProfile, TokenGrant
from shared.config import Settings
from shared.metrics import provider_api_duration_seconds, provider_requests_total

logger = structlog.get_logger()

TOKEN_ENDPOINT_LABEL = "/oauth/token"
PROFILE_PATH = "/v2/user/profile/basic"


def _outcome(exc: ProviderError) -> str:
    if isinstance(exc, CredentialRejectedError):
        return "rejected"
    if isinstance(exc, ResourceNotFoundError):
        return "not_found"
    return "transient"


class WhoopClient:
    """Live-mode WHOOP client. Pass ``http_client`` to share a connection pool or mock transport."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str,
        api_base_url: str,
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> "WhoopClient":
        return cls(
            client_id=settings.whoop_client_id,
            client_secret=settings.whoop_client_secret,
            token_url=settings.whoop_token_url,
            api_base_url=settings.whoop_api_base_url,
            timeout=settings.http_timeout_seconds,
            http_client=http_client,
        )

    async def _send(self, label: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            with provider_api_duration_seconds.labels(endpoint=label).time():
                if self._http_client is not None:
                    return await self._http_client.request(
                        method, url, timeout=self._timeout, **kwargs
                    )
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            provider_requests_total.labels(endpoint=label, outcome="transient").inc()
            logger.warning("provider_timeout", endpoint=label)
            raise TransientProviderError(f"Timed out calling {label}") from exc
        except httpx.TransportError as exc:
            provider_requests_total.labels(endpoint=label, outcome="transient").inc()
            logger.warning("provider_transport_error", endpoint=label, error=type(exc).__name__)
            raise TransientProviderError(f"Transport error calling {label}") from exc

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        response = await self._send(
            TOKEN_ENDPOINT_LABEL,
            "POST",
            self._token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": "offline",
            },
            headers={"Accept": "application/json"},
        )
        try:
            raise_for_token_response(response)
            body = json_body(response)
            if not isinstance(body, dict) or not body.get("access_token"):
                raise TransientProviderError(
                    "Token response carried no access_token", response.status_code
                )
        except ProviderError as exc:
            provider_requests_total.labels(
                endpoint=TOKEN_ENDPOINT_LABEL, outcome=_outcome(exc)
            ).inc()
            logger.warning(
                "token_refresh_failed",
                status_code=response.status_code,
                outcome=_outcome(exc),
            )
            raise

        provider_requests_total.labels(endpoint=TOKEN_ENDPOINT_LABEL, outcome="ok").inc()
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or None,
            expires_in=int(body.get("expires_in") or 3600),
        )

    async def fetch_resource(self, endpoint_path: str, access_token: str) -> Any:
        label = endpoint_label(endpoint_path)
        response = await self._send(
            label,
            "GET",
            f"{self._api_base_url}{endpoint_path}",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        try:
            raise_for_resource_response(response)
            payload = json_body(response)
        except ProviderError as exc:
            provider_requests_total.labels(endpoint=label, outcome=_outcome(exc)).inc()
            logger.info(
                "provider_read_failed",
                endpoint=label,
                status_code=response.status_code,
                outcome=_outcome(exc),
            )
            raise

        provider_requests_total.labels(endpoint=label, outcome="ok").inc()
        return payload

    async def fetch_profile(self, access_token: str) -> ProviderProfile | None:
        payload = await self.fetch_resource(PROFILE_PATH, access_token)
        return parse_profile(payload)
