"""Background access-token renewal for interactive sessions.

One asyncio task per registered session wakes on a fixed period and
exchanges the session's latest refresh token. The registry is owned by the
application (created in the lifespan, torn down on shutdown); handles live
in process memory only and are lost on restart.

A failed tick is logged and the handle keeps its previous tokens and its
timer. Stopping is idempotent and cancels the task, so no refresh call
starts after stop() returns.
"""

import asyncio
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import BaseModel

from leaderboard.adapters.http_client import ProviderError
from leaderboard.adapters.protocol import ProviderClient
from shared.metrics import session_refresh_ticks_total

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class RefreshHandle:
    session_id: str
    refresh_token: str
    access_token: str | None = None
    expires_at: datetime | None = None
    last_refreshed_at: datetime | None = None
    consecutive_failures: int = 0
    task: asyncio.Task | None = field(default=None, repr=False)


class SessionRefreshStatus(BaseModel):
    session_id: str
    background_refresh: bool
    token_expiry: datetime | None = None
    seconds_until_expiry: float | None = None
    last_refreshed_at: datetime | None = None
    consecutive_failures: int = 0


class SessionRefreshRegistry:
    """Keyed by session id; at most one timer per session."""

    def __init__(
        self,
        client: ProviderClient,
        interval_seconds: float = 15 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._interval = interval_seconds
        self._clock = clock
        self._handles: dict[str, RefreshHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def start(
        self,
        session_id: str,
        refresh_token: str,
        access_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> RefreshHandle:
        """Register (or replace) the timer for ``session_id``. Must be called on the event loop."""
        previous = self._handles.pop(session_id, None)
        if previous is not None and previous.task is not None:
            previous.task.cancel()

        handle = RefreshHandle(
            session_id=session_id,
            refresh_token=refresh_token,
            access_token=access_token,
            expires_at=expires_at,
        )
        self._handles[session_id] = handle
        handle.task = asyncio.create_task(
            self._run(handle), name=f"session-refresh:{session_id}"
        )
        logger.info(
            "session_refresh_started",
            session_id=session_id,
            interval_seconds=self._interval,
            replaced=previous is not None,
        )
        return handle

    async def stop(self, session_id: str) -> bool:
        """Cancel and forget the session's timer. Returns False if none was registered."""
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return False
        if handle.task is not None:
            handle.task.cancel()
            with suppress(asyncio.CancelledError):
                await handle.task
        logger.info("session_refresh_stopped", session_id=session_id)
        return True

    def is_active(self, session_id: str) -> bool:
        return session_id in self._handles

    def get(self, session_id: str) -> RefreshHandle | None:
        return self._handles.get(session_id)

    def status(self, session_id: str) -> SessionRefreshStatus:
        handle = self._handles.get(session_id)
        if handle is None:
            return SessionRefreshStatus(session_id=session_id, background_refresh=False)

        remaining = None
        if handle.expires_at is not None:
            remaining = max(0.0, (handle.expires_at - self._clock()).total_seconds())
        return SessionRefreshStatus(
            session_id=session_id,
            background_refresh=True,
            token_expiry=handle.expires_at,
            seconds_until_expiry=remaining,
            last_refreshed_at=handle.last_refreshed_at,
            consecutive_failures=handle.consecutive_failures,
        )

    async def shutdown(self) -> None:
        for session_id in list(self._handles):
            await self.stop(session_id)

    async def _run(self, handle: RefreshHandle) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self._handles.get(handle.session_id) is not handle:
                return
            await self.tick(handle)

    async def tick(self, handle: RefreshHandle) -> bool:
        """Perform one renewal for ``handle``. Returns True on success."""
        log = logger.bind(session_id=handle.session_id)
        try:
            grant = await self._client.refresh_access_token(handle.refresh_token)
        except ProviderError as exc:
            handle.consecutive_failures += 1
            session_refresh_ticks_total.labels(outcome="failed").inc()
            log.warning(
                "session_refresh_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                consecutive_failures=handle.consecutive_failures,
            )
            return False
        except Exception:
            handle.consecutive_failures += 1
            session_refresh_ticks_total.labels(outcome="failed").inc()
            log.exception("session_refresh_error")
            return False

        now = self._clock()
        rotated = grant.rotates(handle.refresh_token)
        handle.access_token = grant.access_token
        handle.refresh_token = grant.next_refresh_token(handle.refresh_token)
        handle.expires_at = now + timedelta(seconds=grant.expires_in)
        handle.last_refreshed_at = now
        handle.consecutive_failures = 0
        session_refresh_ticks_total.labels(outcome="ok").inc()
        log.info("session_refreshed", expires_in=grant.expires_in, rotated=rotated)
        return True
