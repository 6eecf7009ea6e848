"""Shared test fixtures."""

import base64
import os
import sys
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

TEST_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
API_DB_PATH = Path(tempfile.gettempdir()) / f"leaderboard-api-test-{os.getpid()}.db"

# Must be set before shared.config is first imported
os.environ.setdefault("LB_ENCRYPTION_KEY", TEST_KEY)
os.environ.setdefault("LB_DATABASE_URL", f"sqlite+aiosqlite:///{API_DB_PATH}")
os.environ.setdefault("LB_LOG_JSON", "false")
os.environ.setdefault("LB_ADMIN_SECRET", "test-admin-secret")
API_DB_PATH.unlink(missing_ok=True)

from sqlalchemy.ext.asyncio import async_sessionmaker  # noqa: E402

from leaderboard.adapters.http_client import ResourceNotFoundError  # noqa: E402
from leaderboard.aggregator import TieredAggregator  # noqa: E402
from leaderboard.domain.models import ProviderProfile, TokenGrant  # noqa: E402
from leaderboard.repository import ensure_schema  # noqa: E402
from leaderboard.vault import SecretVault  # noqa: E402
from shared.database import build_engine  # noqa: E402

NOW = datetime(2026, 3, 14, 15, 0, tzinfo=UTC)


class FakeProvider:
    """Scripted provider client.

    Resources are keyed by (access token, path without query). Unscripted
    reads answer 404, unscripted refresh tokens are exchanged for
    ``at-<refresh token>`` without rotation.
    """

    def __init__(self) -> None:
        self.grants: dict[str, TokenGrant | Exception] = {}
        self.resources: dict[tuple[str, str], Any] = {}
        self.profiles: dict[str, ProviderProfile | Exception | None] = {}
        self.calls: list[tuple[str, ...]] = []

    def script(self, access_token: str, **routes: Any) -> None:
        paths = {
            "sleep": "/v2/activity/sleep",
            "recovery": "/v2/recovery",
            "cycle": "/v2/cycle",
        }
        for name, payload in routes.items():
            path = paths.get(name, name)
            self.resources[(access_token, path)] = payload

    def refreshes(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "refresh"]

    def reads(self, access_token: str | None = None) -> list[str]:
        return [
            call[1].split("?", 1)[0]
            for call in self.calls
            if call[0] == "fetch" and (access_token is None or call[2] == access_token)
        ]

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.calls.append(("refresh", refresh_token))
        result = self.grants.get(refresh_token, TokenGrant(access_token=f"at-{refresh_token}"))
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_resource(self, endpoint_path: str, access_token: str) -> Any:
        self.calls.append(("fetch", endpoint_path, access_token))
        route = endpoint_path.split("?", 1)[0]
        result = self.resources.get((access_token, route))
        if result is None:
            raise ResourceNotFoundError("Resource not found", 404)
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_profile(self, access_token: str) -> ProviderProfile | None:
        self.calls.append(("profile", access_token))
        result = self.profiles.get(access_token)
        if isinstance(result, Exception):
            raise result
        return result


def sleep_payload(perf: float, minutes: int = 420, consistency: float | None = None) -> dict:
    score: dict[str, Any] = {
        "sleep_performance_percentage": perf,
        "slow_wave_sleep_minutes": minutes // 4,
        "rem_sleep_minutes": minutes // 4,
        "light_sleep_minutes": minutes - 2 * (minutes // 4),
    }
    if consistency is not None:
        score["sleep_consistency_percentage"] = consistency
    return {"records": [{"id": "sleep-1", "score": score}]}


def cycle_payload(strain: float, cycle_id: int = 93845) -> dict:
    return {"records": [{"id": cycle_id, "score": {"strain": strain}}]}


@pytest.fixture
def vault():
    return SecretVault.from_base64(TEST_KEY)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with the schema applied."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'leaderboard.db'}")
    await ensure_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_aggregator(session_factory, vault, provider):
    def _make(now: datetime = NOW, **overrides) -> TieredAggregator:
        options = {"concurrency": 1, "retry_max_attempts": 1, "retry_max_wait_seconds": 0}
        options.update(overrides)
        return TieredAggregator(
            session_factory, vault, provider, clock=lambda: now, **options
        )

    return _make
