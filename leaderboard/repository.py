"""Member and daily metric repositories: all DB access for the engine.

Upserts use the dialect's INSERT ... ON CONFLICT DO UPDATE so a row is
never observed half-written. The daily metric upsert is an explicit
merge-non-null: only fields the caller actually obtained are placed in the
UPDATE clause, so a partial refresh cannot erase previously known values.

Schema self-migration is additive only: missing tables are created and
missing nullable columns are added in place.
"""

from collections.abc import Iterable
from datetime import UTC, date, datetime

import structlog
from sqlalchemy import delete, func, inspect, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.schema import CreateColumn

from leaderboard.domain.models import (
    MetricClass,
    MetricFields,
    MetricSnapshot,
    RevocationReason,
)
from leaderboard.domain.orm import Base, DailyMetricModel, MemberModel
from shared.metrics import members_revoked_total

logger = structlog.get_logger()

_REFRESH_STAMP_COLUMNS = {
    MetricClass.STRAIN: "strain_refreshed_at",
    MetricClass.SLEEP_RECOVERY: "sleep_recovery_refreshed_at",
}


# Stamp for a class that was due but did not complete; always stale
NEVER_REFRESHED = datetime(1970, 1, 1, tzinfo=UTC)


class SchemaMigrationError(Exception):
    """The live schema needs a change that cannot be applied additively."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _insert_for(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert is not implemented for dialect {dialect!r}")


# --- Schema ---


def _migrate(conn: Connection) -> list[str]:
    Base.metadata.create_all(conn)
    inspector = inspect(conn)
    added: list[str] = []
    for table in Base.metadata.sorted_tables:
        existing = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing:
                continue
            if not column.nullable:
                raise SchemaMigrationError(
                    f"Column {table.name}.{column.name} is missing and NOT NULL; "
                    "it cannot be added in place"
                )
            column_ddl = CreateColumn(column).compile(dialect=conn.dialect)
            table_name = conn.dialect.identifier_preparer.quote(table.name)
            conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_ddl}"))
            added.append(f"{table.name}.{column.name}")
    return added


async def ensure_schema(engine: AsyncEngine) -> list[str]:
    """Create missing tables and add missing nullable columns. Returns added columns."""
    async with engine.begin() as conn:
        added = await conn.run_sync(_migrate)
    if added:
        logger.info("schema_columns_added", columns=added)
    else:
        logger.debug("schema_up_to_date")
    return added


# --- Members ---


class MemberRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_members(self) -> list[MemberModel]:
        result = await self.session.execute(select(MemberModel).order_by(MemberModel.id))
        return list(result.scalars().all())

    async def get(self, member_id: int) -> MemberModel | None:
        return await self.session.get(MemberModel, member_id)

    async def get_by_whoop_user_id(self, whoop_user_id: str) -> MemberModel | None:
        result = await self.session.execute(
            select(MemberModel).where(MemberModel.whoop_user_id == whoop_user_id)
        )
        return result.scalar_one_or_none()

    async def upsert_member(
        self,
        whoop_user_id: str,
        display_name: str,
        avatar_url: str | None,
        refresh_token_enc: str,
    ) -> int:
        """Insert or update a member by external id. Returns the member id."""
        stmt = _insert_for(self.session, MemberModel).values(
            whoop_user_id=whoop_user_id,
            display_name=display_name,
            avatar_url=avatar_url,
            refresh_token_enc=refresh_token_enc,
            created_at=_utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["whoop_user_id"],
            set_={
                "display_name": stmt.excluded.display_name,
                "avatar_url": stmt.excluded.avatar_url,
                "refresh_token_enc": stmt.excluded.refresh_token_enc,
            },
        )
        await self.session.execute(stmt)
        result = await self.session.execute(
            select(MemberModel.id).where(MemberModel.whoop_user_id == whoop_user_id)
        )
        return result.scalar_one()

    async def rotate_secret(
        self, member_id: int, refresh_token_enc: str, now: datetime | None = None
    ) -> None:
        await self.session.execute(
            update(MemberModel)
            .where(MemberModel.id == member_id)
            .values(refresh_token_enc=refresh_token_enc, last_refreshed_at=now or _utcnow())
        )

    async def touch_refreshed(self, member_id: int, now: datetime | None = None) -> None:
        await self.session.execute(
            update(MemberModel)
            .where(MemberModel.id == member_id)
            .values(last_refreshed_at=now or _utcnow())
        )

    async def delete(
        self, member_id: int | None = None, whoop_user_id: str | None = None
    ) -> bool:
        """Delete a member and all of its daily metric rows. Returns False if absent."""
        if member_id is None and whoop_user_id is None:
            raise ValueError("member_id or whoop_user_id is required")

        if member_id is None:
            result = await self.session.execute(
                select(MemberModel.id).where(MemberModel.whoop_user_id == whoop_user_id)
            )
            member_id = result.scalar_one_or_none()
            if member_id is None:
                return False

        # Explicit cascade so dialects without FK enforcement behave the same
        await self.session.execute(
            delete(DailyMetricModel).where(DailyMetricModel.member_id == member_id)
        )
        result = await self.session.execute(delete(MemberModel).where(MemberModel.id == member_id))
        return result.rowcount > 0

    async def revoke(self, member: MemberModel, reason: RevocationReason) -> bool:
        """Remove a member from the store for a named reason."""
        member_id, whoop_user_id = member.id, member.whoop_user_id
        removed = await self.delete(member_id=member_id)
        if removed:
            members_revoked_total.labels(reason=reason.value).inc()
            logger.warning(
                "member_revoked",
                member_id=member_id,
                whoop_user_id=whoop_user_id,
                reason=reason.value,
            )
        return removed


# --- Daily metrics ---


def _to_snapshot(row: DailyMetricModel) -> MetricSnapshot:
    return MetricSnapshot(
        member_id=row.member_id,
        date=row.date,
        sleep_total_sec=row.sleep_total_sec,
        sleep_perf_pct=row.sleep_perf_pct,
        sleep_consistency_pct=row.sleep_consistency_pct,
        recovery_score=row.recovery_score,
        strain_score=row.strain_score,
        updated_at=row.updated_at,
        strain_refreshed_at=row.strain_refreshed_at,
        sleep_recovery_refreshed_at=row.sleep_recovery_refreshed_at,
    )


class DailyMetricRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, member_id: int, day: date) -> MetricSnapshot | None:
        result = await self.session.execute(
            select(DailyMetricModel)
            .where(
                DailyMetricModel.member_id == member_id,
                DailyMetricModel.date == day,
            )
            # Upserts bypass the identity map
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _to_snapshot(row) if row is not None else None

    async def upsert_daily_metric(
        self,
        member_id: int,
        day: date,
        fields: MetricFields,
        refreshed: Iterable[MetricClass] = (),
        now: datetime | None = None,
        pending: Iterable[MetricClass] = (),
    ) -> MetricSnapshot:
        """Merge the non-null ``fields`` into the (member, day) row, creating it if needed.

        ``refreshed`` names the metric classes whose fetch completed in this
        write; their freshness stamps move to ``now``. ``pending`` names classes
        that were attempted but did not complete: an existing stamp is kept,
        a missing one becomes ``NEVER_REFRESHED`` so the class stays due.
        """
        now = now or _utcnow()
        changes = fields.non_null()
        changes.update({_REFRESH_STAMP_COLUMNS[mc]: now for mc in refreshed})
        unstamped = {
            _REFRESH_STAMP_COLUMNS[mc]
            for mc in pending
            if _REFRESH_STAMP_COLUMNS[mc] not in changes
        }

        stmt = _insert_for(self.session, DailyMetricModel).values(
            member_id=member_id,
            date=day,
            updated_at=now,
            **changes,
            **{name: NEVER_REFRESHED for name in unstamped},
        )
        set_ = {name: stmt.excluded[name] for name in changes}
        for name in unstamped:
            set_[name] = func.coalesce(stmt.table.c[name], NEVER_REFRESHED)
        set_["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(index_elements=["member_id", "date"], set_=set_)
        await self.session.execute(stmt)

        snapshot = await self.get(member_id, day)
        assert snapshot is not None
        return snapshot
