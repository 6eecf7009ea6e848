"""Tests for the WHOOP client's failure classification, using httpx.MockTransport."""

import json
import warnings
from urllib.parse import parse_qs

import httpx
import pytest

from leaderboard.adapters.http_client import (
    CredentialRejectedError,
    ResourceNotFoundError,
    TransientProviderError,
    endpoint_label,
    transient_retry,
)
from leaderboard.adapters.whoop_client import WhoopClient

TOKEN_URL = "https://whoop.test/oauth/oauth2/token"
API_BASE = "https://whoop.test/developer"


def _client(handler) -> WhoopClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WhoopClient(
        client_id="cid",
        client_secret="csecret",
        token_url=TOKEN_URL,
        api_base_url=API_BASE,
        timeout=1.0,
        http_client=http_client,
    )


class TestRefreshAccessToken:
    async def test_success_with_rotation(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(
                200,
                json={"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 3600},
            )

        grant = await _client(handler).refresh_access_token("rt-1")
        assert grant.access_token == "at-2"
        assert grant.refresh_token == "rt-2"
        assert grant.expires_in == 3600
        assert grant.rotates("rt-1")
        assert seen["form"]["grant_type"] == ["refresh_token"]
        assert seen["form"]["refresh_token"] == ["rt-1"]
        assert seen["form"]["client_id"] == ["cid"]

    async def test_success_without_rotation(self):
        def handler(request):
            return httpx.Response(200, json={"access_token": "at-2", "expires_in": 1800})

        grant = await _client(handler).refresh_access_token("rt-1")
        assert grant.refresh_token is None
        assert grant.next_refresh_token("rt-1") == "rt-1"

    @pytest.mark.parametrize(
        ("status", "body"),
        [
            (400, {"error": "invalid_grant"}),
            (400, {"error": "invalid_request"}),
            (401, {"error": "unauthorized"}),
            (401, None),
        ],
    )
    async def test_invalid_grant_is_credential_rejected(self, status, body):
        def handler(request):
            if body is None:
                return httpx.Response(status, text="nope")
            return httpx.Response(status, json=body)

        with pytest.raises(CredentialRejectedError):
            await _client(handler).refresh_access_token("rt-dead")

    @pytest.mark.parametrize(
        ("status", "content"),
        [
            (400, json.dumps({"error": "unsupported_grant_type"})),
            (429, ""),
            (500, "upstream down"),
            (503, ""),
            (200, "<html>not json</html>"),
            (200, json.dumps({"token_type": "bearer"})),
        ],
    )
    async def test_everything_else_is_transient(self, status, content):
        def handler(request):
            return httpx.Response(status, content=content.encode())

        with pytest.raises(TransientProviderError):
            await _client(handler).refresh_access_token("rt-1")

    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientProviderError):
            await _client(handler).refresh_access_token("rt-1")

    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientProviderError):
            await _client(handler).refresh_access_token("rt-1")


class TestFetchResource:
    async def test_authenticated_read(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"records": [{"id": 1}]})

        payload = await _client(handler).fetch_resource("/v2/cycle?limit=1", "at-1")
        assert payload == {"records": [{"id": 1}]}
        assert seen["url"] == f"{API_BASE}/v2/cycle?limit=1"
        assert seen["auth"] == "Bearer at-1"

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (401, CredentialRejectedError),
            (403, CredentialRejectedError),
            (404, ResourceNotFoundError),
            (429, TransientProviderError),
            (502, TransientProviderError),
        ],
    )
    async def test_status_classification(self, status, error):
        def handler(request):
            return httpx.Response(status, json={})

        with pytest.raises(error):
            await _client(handler).fetch_resource("/v2/recovery", "at-1")

    async def test_no_internal_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        with pytest.raises(TransientProviderError):
            await _client(handler).fetch_resource("/v2/recovery", "at-1")
        assert len(calls) == 1


class TestFetchProfile:
    async def test_profile(self):
        def handler(request):
            assert request.url.path == "/developer/v2/user/profile/basic"
            return httpx.Response(
                200, json={"user_id": 10129, "first_name": "Ada", "last_name": "Lovelace"}
            )

        profile = await _client(handler).fetch_profile("at-1")
        assert profile.whoop_user_id == "10129"
        assert profile.display_name == "Ada Lovelace"


class TestCallerRetry:
    async def test_retries_only_transient_errors(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientProviderError("busy", 503)
            return "ok"

        result = None
        async for attempt in transient_retry(max_attempts=3, max_wait_seconds=0):
            with attempt:
                result = await flaky()
        assert result == "ok"
        assert len(attempts) == 3

    async def test_rejection_is_not_retried(self):
        attempts = []

        with pytest.raises(CredentialRejectedError):
            async for attempt in transient_retry(max_attempts=3, max_wait_seconds=0):
                with attempt:
                    attempts.append(1)
                    raise CredentialRejectedError("dead", 401)
        assert len(attempts) == 1

    async def test_gives_up_after_max_attempts(self):
        attempts = []

        with pytest.raises(TransientProviderError):
            async for attempt in transient_retry(max_attempts=2, max_wait_seconds=0):
                with attempt:
                    attempts.append(1)
                    raise TransientProviderError("busy", 503)
        assert len(attempts) == 2

    async def test_policy_raises_no_deprecation_warnings(self):
        attempts = []

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            async for attempt in transient_retry(max_attempts=2, max_wait_seconds=0):
                with attempt:
                    attempts.append(1)
                    if len(attempts) < 2:
                        raise TransientProviderError("busy", 503)
        assert len(attempts) == 2


class TestEndpointLabel:
    def test_strips_query_and_ids(self):
        assert endpoint_label("/v2/cycle/93845/recovery") == "/v2/cycle/{id}/recovery"
        assert endpoint_label("/v2/activity/sleep?start=x&end=y") == "/v2/activity/sleep"
