"""SQLAlchemy ORM models.

Tables:
- members: enrolled people and their encrypted refresh token
- daily_metrics: one row per (member, reference date), every metric nullable
"""

from datetime import datetime

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class MemberModel(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    whoop_user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # AES-GCM "nonce.tag.ciphertext"; plaintext never stored
    refresh_token_enc: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    daily_metrics: Mapped[list["DailyMetricModel"]] = relationship(
        back_populates="member",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<MemberModel(id={self.id}, whoop_user_id={self.whoop_user_id!r})>"


class DailyMetricModel(Base):
    __tablename__ = "daily_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    date = mapped_column(Date, nullable=False)

    # Sleep / recovery class
    sleep_total_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sleep_perf_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    sleep_consistency_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    recovery_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Strain class
    strain_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    # Per-class freshness; both NULL on rows from older deployments (updated_at applies)
    strain_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sleep_recovery_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    member: Mapped[MemberModel] = relationship(back_populates="daily_metrics")

    __table_args__ = (
        UniqueConstraint("member_id", "date", name="uq_daily_metrics_member_date"),
        Index("idx_daily_metrics_date", "date"),
    )
