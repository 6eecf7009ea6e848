"""Provider error taxonomy and response classification.

Failure classes:
- CredentialRejectedError: the provider confirmed the credential is dead
  (refresh grant: 401, or 400 with an invalid-grant body; resource reads: 401/403)
- ResourceNotFoundError: 404 on a read, i.e. nothing scored yet
- TransientProviderError: everything else (timeouts, 429, 5xx, malformed bodies)

The client itself never retries. Callers that want retries wrap reads in
``transient_retry``, which only retries TransientProviderError.
"""

import logging
import re
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = structlog.get_logger()

INVALID_GRANT_ERRORS = {"invalid_grant", "invalid_request"}

_ID_SEGMENT = re.compile(r"/(\d+|[0-9a-fA-F-]{32,36})(?=/|$)")


class ProviderError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CredentialRejectedError(ProviderError):
    """Raised when the provider reports a token as invalid, expired or revoked."""


class ResourceNotFoundError(ProviderError):
    """Raised when a read resource does not exist (yet)."""


class TransientProviderError(ProviderError):
    """Raised for provider failures that are safe to retry later."""


def endpoint_label(path: str) -> str:
    """Low-cardinality metric label: no query string, ids collapsed."""
    return _ID_SEGMENT.sub("/{id}", path.split("?", 1)[0])


def _error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return None


def is_invalid_grant(response: httpx.Response) -> bool:
    """True when a token-endpoint response says the refresh token is unusable."""
    if response.status_code == 401:
        return True
    return response.status_code == 400 and _error_code(response) in INVALID_GRANT_ERRORS


def raise_for_token_response(response: httpx.Response) -> None:
    if response.is_success:
        return
    if is_invalid_grant(response):
        raise CredentialRejectedError(
            f"Refresh token rejected ({_error_code(response) or response.status_code})",
            response.status_code,
        )
    raise TransientProviderError(
        f"Token endpoint returned HTTP {response.status_code}", response.status_code
    )


def raise_for_resource_response(response: httpx.Response) -> None:
    if response.is_success:
        return
    if response.status_code in (401, 403):
        raise CredentialRejectedError(
            f"Access token rejected (HTTP {response.status_code})", response.status_code
        )
    if response.status_code == 404:
        raise ResourceNotFoundError("Resource not found", 404)
    raise TransientProviderError(
        f"Resource read returned HTTP {response.status_code}", response.status_code
    )


def json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise TransientProviderError(
            "Provider returned a malformed JSON body", response.status_code
        ) from exc


def transient_retry(max_attempts: int, max_wait_seconds: float) -> AsyncRetrying:
    """A fresh retry controller for one caller-side operation."""
    return AsyncRetrying(
        retry=retry_if_exception_type(TransientProviderError),
        wait=wait_exponential(multiplier=0.5, max=max_wait_seconds)
        + wait_random(0, min(1.0, max_wait_seconds)),
        stop=stop_after_attempt(max_attempts),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
