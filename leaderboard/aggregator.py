"""Tiered aggregator: per-member, per-metric-class reuse-or-refresh.

For one reference day, every enrolled member is processed as an independent
unit of work (bounded fan-out, own DB session). Within a unit the steps are
strictly sequential:

1. Read the cached daily_metrics row.
2. Decide per metric class whether its cached values are fresh enough.
   Strain goes stale after minutes, sleep/recovery after an hour.
3. Only if some class is due: decrypt the refresh token, exchange it, and
   commit a rotated refresh token before any resource read.
4. Run the fetch chain for each due class and merge-upsert what was obtained.

A rejected credential revokes the member. Transient failures fall back to
whatever is cached. Nothing a single member does can abort the pass.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leaderboard.adapters.http_client import (
    CredentialRejectedError,
    ProviderError,
    ResourceNotFoundError,
    TransientProviderError,
    transient_retry,
)
from leaderboard.adapters.protocol import ProviderClient
from leaderboard.adapters.whoop_mapper import (
    cycle_id,
    first_record,
    recovery_from_cycle,
    recovery_from_record,
    strain_from_cycle,
    summarize_sleep,
)
from leaderboard.domain.models import (
    ForceScope,
    Leaderboard,
    MetricClass,
    MetricFields,
    MetricSnapshot,
    RankEntry,
    RevocationReason,
    SleepRankEntry,
)
from leaderboard.repository import DailyMetricRepository, MemberRepository
from leaderboard.vault import SecretIntegrityError, SecretVault
from shared.config import Settings
from shared.metrics import (
    aggregation_duration_seconds,
    member_refresh_outcomes_total,
    metric_cache_decisions_total,
)

logger = structlog.get_logger()

SLEEP_PAGE_LIMIT = 25


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso_z(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z")


@dataclass
class ReferenceWindow:
    """The calendar day being aggregated and its [start, end) bounds as UTC ISO strings."""

    day: date
    start: str
    end: str

    @property
    def query(self) -> str:
        return f"start={self.start}&end={self.end}"


@dataclass
class MemberResult:
    """What one member contributes to the rank lists."""

    display_name: str
    avatar_url: str | None
    values: MetricFields
    outcome: str


@dataclass
class _FetchState:
    """Per-unit fetch scratch space: obtained values and which classes completed."""

    fields: dict = field(default_factory=dict)
    refreshed: set[MetricClass] = field(default_factory=set)
    cycle_loaded: bool = False
    cycle: dict | None = None
    cycle_recovery_loaded: bool = False
    cycle_recovery: float | None = None


class TieredAggregator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: SecretVault,
        client: ProviderClient,
        strain_stale_seconds: float = 5 * 60,
        sleep_recovery_stale_seconds: float = 60 * 60,
        concurrency: int = 4,
        reference_timezone: str = "UTC",
        retry_max_attempts: int = 2,
        retry_max_wait_seconds: float = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._client = client
        self._windows = {
            MetricClass.STRAIN: strain_stale_seconds,
            MetricClass.SLEEP_RECOVERY: sleep_recovery_stale_seconds,
        }
        self._concurrency = concurrency
        self._tz = ZoneInfo(reference_timezone)
        self._retry_max_attempts = retry_max_attempts
        self._retry_max_wait_seconds = retry_max_wait_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        vault: SecretVault,
        client: ProviderClient,
    ) -> "TieredAggregator":
        return cls(
            session_factory,
            vault,
            client,
            strain_stale_seconds=settings.strain_stale_seconds,
            sleep_recovery_stale_seconds=settings.sleep_recovery_stale_seconds,
            concurrency=settings.aggregation_concurrency,
            reference_timezone=settings.reference_timezone,
            retry_max_attempts=settings.retry_max_attempts,
            retry_max_wait_seconds=settings.retry_max_wait_seconds,
        )

    def reference_window(self, now: datetime) -> ReferenceWindow:
        day = now.astimezone(self._tz).date()
        start = datetime(day.year, day.month, day.day, tzinfo=self._tz)
        next_day = day + timedelta(days=1)
        end = datetime(next_day.year, next_day.month, next_day.day, tzinfo=self._tz)
        return ReferenceWindow(day=day, start=_iso_z(start), end=_iso_z(end))

    def is_due(
        self,
        metric_class: MetricClass,
        cached: MetricSnapshot | None,
        now: datetime,
        force: ForceScope | None = None,
    ) -> bool:
        """True when ``metric_class`` must be fetched rather than served from cache."""
        if force is not None and force.forces(metric_class):
            return True
        if cached is None:
            return True
        return cached.age_seconds(metric_class, now) > self._windows[metric_class]

    # --- Pass ---

    async def run(self, force: ForceScope | None = None) -> Leaderboard:
        """Run one aggregation pass and return the three rank lists for the reference day."""
        start_time = time.monotonic()
        now = self._clock()
        window = self.reference_window(now)

        async with self._session_factory() as session:
            member_ids = [m.id for m in await MemberRepository(session).list_members()]

        semaphore = asyncio.Semaphore(self._concurrency)

        async def bounded(member_id: int) -> MemberResult | None:
            async with semaphore:
                return await self._process_member_safely(member_id, window, now, force)

        results = await asyncio.gather(*(bounded(member_id) for member_id in member_ids))
        leaderboard = build_leaderboard(window.day, [r for r in results if r is not None])

        duration = time.monotonic() - start_time
        aggregation_duration_seconds.observe(duration)
        logger.info(
            "aggregation_pass_completed",
            date=window.day.isoformat(),
            members=len(member_ids),
            force=force.value if force else None,
            duration_ms=round(duration * 1000, 2),
        )
        return leaderboard

    async def _process_member_safely(
        self,
        member_id: int,
        window: ReferenceWindow,
        now: datetime,
        force: ForceScope | None,
    ) -> MemberResult | None:
        try:
            return await self.process_member(member_id, window, now, force)
        except Exception:
            member_refresh_outcomes_total.labels(outcome="failed").inc()
            logger.exception("member_refresh_failed", member_id=member_id)
            return None

    # --- Unit of work ---

    async def process_member(
        self,
        member_id: int,
        window: ReferenceWindow,
        now: datetime,
        force: ForceScope | None = None,
    ) -> MemberResult | None:
        """Refresh one member. Returns None when the member is gone or was revoked."""
        log = logger.bind(member_id=member_id)

        async with self._session_factory() as session:
            members = MemberRepository(session)
            metrics = DailyMetricRepository(session)

            member = await members.get(member_id)
            if member is None:
                return None
            display_name, avatar_url = member.display_name, member.avatar_url

            cached = await metrics.get(member_id, window.day)
            due = set()
            for metric_class in MetricClass:
                decision = "refresh" if self.is_due(metric_class, cached, now, force) else "reuse"
                metric_cache_decisions_total.labels(
                    metric_class=metric_class.value, decision=decision
                ).inc()
                if decision == "refresh":
                    due.add(metric_class)

            def fallback(outcome: str) -> MemberResult:
                member_refresh_outcomes_total.labels(outcome=outcome).inc()
                values = MetricFields(**cached.non_null()) if cached else MetricFields()
                return MemberResult(display_name, avatar_url, values, outcome)

            if not due:
                return fallback("cached")

            try:
                refresh_token = self._vault.decrypt(member.refresh_token_enc)
            except SecretIntegrityError:
                log.error("member_secret_unusable")
                return fallback("secret_unusable")

            try:
                grant = await self._client.refresh_access_token(refresh_token)
            except CredentialRejectedError:
                await members.revoke(member, RevocationReason.CREDENTIAL_REJECTED)
                await session.commit()
                member_refresh_outcomes_total.labels(outcome="revoked").inc()
                return None
            except TransientProviderError as exc:
                log.warning("member_token_refresh_transient", error=str(exc))
                return fallback("transient")

            # Durable before any read that could fail
            if grant.rotates(refresh_token):
                await members.rotate_secret(
                    member_id, self._vault.encrypt(grant.refresh_token), now=now
                )
                log.info("member_refresh_token_rotated")
            else:
                await members.touch_refreshed(member_id, now=now)
            await session.commit()

            state = _FetchState()
            if MetricClass.SLEEP_RECOVERY in due:
                await self._fetch_sleep_recovery(state, grant.access_token, window, log)
            if MetricClass.STRAIN in due:
                cached_recovery = cached.recovery_score if cached else None
                await self._fetch_strain(state, grant.access_token, window, cached_recovery, log)

            obtained = MetricFields(**state.fields)
            if not state.refreshed and not obtained.non_null():
                return fallback("transient")

            snapshot = await metrics.upsert_daily_metric(
                member_id,
                window.day,
                obtained,
                refreshed=state.refreshed,
                now=now,
                pending=due - state.refreshed,
            )
            await session.commit()

        outcome = "refreshed" if state.refreshed == due else "partial"
        member_refresh_outcomes_total.labels(outcome=outcome).inc()
        log.info(
            "member_refreshed",
            due=sorted(mc.value for mc in due),
            refreshed=sorted(mc.value for mc in state.refreshed),
            outcome=outcome,
        )
        return MemberResult(display_name, avatar_url, MetricFields(**snapshot.non_null()), outcome)

    # --- Fetch chains ---

    async def _read(self, path: str, access_token: str):
        """One resource read with caller-side retry. None when the resource does not exist yet."""
        try:
            async for attempt in transient_retry(
                self._retry_max_attempts, self._retry_max_wait_seconds
            ):
                with attempt:
                    return await self._client.fetch_resource(path, access_token)
        except ResourceNotFoundError:
            return None

    async def _load_cycle(
        self, state: _FetchState, access_token: str, window: ReferenceWindow
    ) -> dict | None:
        if not state.cycle_loaded:
            payload = await self._read(f"/v2/cycle?{window.query}&limit=1", access_token)
            state.cycle = first_record(payload)
            state.cycle_loaded = True
        return state.cycle

    async def _recovery_via_cycle(
        self, state: _FetchState, access_token: str, window: ReferenceWindow
    ) -> float | None:
        if state.cycle_recovery_loaded:
            return state.cycle_recovery
        cycle = await self._load_cycle(state, access_token, window)
        score = None
        if cycle is not None:
            score = recovery_from_cycle(cycle)
            cid = cycle_id(cycle)
            if score is None and cid is not None:
                payload = await self._read(f"/v2/cycle/{cid}/recovery", access_token)
                score = recovery_from_record(payload) if payload is not None else None
        state.cycle_recovery = score
        state.cycle_recovery_loaded = True
        return score

    async def _fetch_sleep_recovery(
        self, state: _FetchState, access_token: str, window: ReferenceWindow, log
    ) -> None:
        completed = True

        try:
            payload = await self._read(
                f"/v2/activity/sleep?{window.query}&limit={SLEEP_PAGE_LIMIT}", access_token
            )
            summary = summarize_sleep(payload)
            state.fields.update(
                sleep_total_sec=summary.total_sec,
                sleep_perf_pct=summary.perf_pct,
                sleep_consistency_pct=summary.consistency_pct,
            )
        except ProviderError as exc:
            completed = False
            log.warning("sleep_fetch_failed", error=str(exc))

        recovery = None
        try:
            payload = await self._read(f"/v2/recovery?{window.query}&limit=1", access_token)
            record = first_record(payload)
            recovery = recovery_from_record(record) if record is not None else None
        except ProviderError as exc:
            completed = False
            log.warning("recovery_fetch_failed", error=str(exc))

        if recovery is None:
            try:
                recovery = await self._recovery_via_cycle(state, access_token, window)
            except ProviderError as exc:
                completed = False
                log.warning("cycle_recovery_fetch_failed", error=str(exc))

        state.fields["recovery_score"] = recovery
        if completed:
            state.refreshed.add(MetricClass.SLEEP_RECOVERY)

    async def _fetch_strain(
        self,
        state: _FetchState,
        access_token: str,
        window: ReferenceWindow,
        cached_recovery: float | None,
        log,
    ) -> None:
        try:
            cycle = await self._load_cycle(state, access_token, window)
        except ProviderError as exc:
            log.warning("strain_fetch_failed", error=str(exc))
            return

        state.fields["strain_score"] = strain_from_cycle(cycle) if cycle is not None else None
        state.refreshed.add(MetricClass.STRAIN)

        # Backfill only; does not count as a sleep/recovery refresh
        if cycle is None or state.fields.get("recovery_score") is not None:
            return
        if cached_recovery is not None:
            return
        try:
            state.fields["recovery_score"] = await self._recovery_via_cycle(
                state, access_token, window
            )
        except ProviderError as exc:
            log.info("recovery_backfill_failed", error=str(exc))


def build_leaderboard(day: date, results: list[MemberResult]) -> Leaderboard:
    """Three rank lists, descending by value; members without a value are omitted."""
    sleep: list[SleepRankEntry] = []
    recovery: list[RankEntry] = []
    strain: list[RankEntry] = []

    for result in results:
        values = result.values
        if values.sleep_perf_pct is not None:
            sleep.append(
                SleepRankEntry(
                    name=result.display_name,
                    value=values.sleep_perf_pct,
                    avatar=result.avatar_url,
                    seconds=values.sleep_total_sec,
                    consistency=values.sleep_consistency_pct,
                )
            )
        if values.recovery_score is not None:
            recovery.append(
                RankEntry(name=result.display_name, value=values.recovery_score, avatar=result.avatar_url)
            )
        if values.strain_score is not None:
            strain.append(
                RankEntry(name=result.display_name, value=values.strain_score, avatar=result.avatar_url)
            )

    for board in (sleep, recovery, strain):
        board.sort(key=lambda entry: entry.value, reverse=True)
    return Leaderboard(date=day, sleep=sleep, recovery=recovery, strain=strain)
