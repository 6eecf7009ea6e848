"""Domain models for the leaderboard engine.

Metrics are grouped into two refresh classes with their own staleness
windows: strain follows the live physiological cycle and goes stale in
minutes, while sleep and recovery are settled once per night and only need
an hourly look.

Nullable metric fields mean "unknown", never zero.
"""

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class MetricClass(StrEnum):
    STRAIN = "strain"
    SLEEP_RECOVERY = "sleep_recovery"


class ForceScope(StrEnum):
    ALL = "all"
    STRAIN = "strain"
    SLEEP = "sleep"
    RECOVERY = "recovery"

    def forces(self, metric_class: MetricClass) -> bool:
        if self is ForceScope.ALL:
            return True
        if self is ForceScope.STRAIN:
            return metric_class is MetricClass.STRAIN
        return metric_class is MetricClass.SLEEP_RECOVERY


class RevocationReason(StrEnum):
    CREDENTIAL_REJECTED = "credential_rejected"
    UNLINKED = "unlinked"
    ADMIN_REMOVED = "admin_removed"


class TokenGrant(BaseModel):
    """Result of a refresh-token exchange."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int = Field(3600, ge=0)

    def rotates(self, previous: str) -> bool:
        """True when the provider issued a refresh token different from ``previous``."""
        return bool(self.refresh_token) and self.refresh_token != previous

    def next_refresh_token(self, previous: str) -> str:
        return self.refresh_token or previous


class ProviderProfile(BaseModel):
    whoop_user_id: str
    display_name: str
    avatar_url: str | None = None


class MetricFields(BaseModel):
    """A (possibly partial) set of daily metric values."""

    sleep_total_sec: int | None = Field(None, ge=0)
    sleep_perf_pct: float | None = None
    sleep_consistency_pct: float | None = None
    recovery_score: float | None = Field(None, ge=0, le=100)
    strain_score: float | None = Field(None, ge=0)

    def non_null(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class MetricSnapshot(MetricFields):
    """A cached daily_metrics row with its freshness stamps."""

    member_id: int
    date: date
    updated_at: datetime
    strain_refreshed_at: datetime | None = None
    sleep_recovery_refreshed_at: datetime | None = None

    @property
    def is_legacy(self) -> bool:
        """Written before per-class stamps existed: no class stamp at all."""
        return self.strain_refreshed_at is None and self.sleep_recovery_refreshed_at is None

    def refreshed_at(self, metric_class: MetricClass) -> datetime | None:
        """When ``metric_class`` last completed a fetch; None if it never has."""
        stamp = (
            self.strain_refreshed_at
            if metric_class is MetricClass.STRAIN
            else self.sleep_recovery_refreshed_at
        )
        if stamp is None and self.is_legacy:
            stamp = self.updated_at
        return as_utc(stamp) if stamp is not None else None

    def age_seconds(self, metric_class: MetricClass, now: datetime) -> float:
        refreshed = self.refreshed_at(metric_class)
        if refreshed is None:
            return float("inf")
        return (as_utc(now) - refreshed).total_seconds()


class RankEntry(BaseModel):
    name: str
    value: float
    avatar: str | None = None


class SleepRankEntry(RankEntry):
    seconds: int | None = None
    consistency: float | None = None


class Leaderboard(BaseModel):
    date: date
    sleep: list[SleepRankEntry] = Field(default_factory=list)
    recovery: list[RankEntry] = Field(default_factory=list)
    strain: list[RankEntry] = Field(default_factory=list)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
