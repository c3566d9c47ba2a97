"""
Database models (SQLAlchemy 2.0 declarative mapping).
"""

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""

    pass


class PlanSnapshotDB(Base):
    """Last known good plan listing per query, served when the upstream is down."""

    __tablename__ = "plan_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(
        String(500), unique=True, nullable=False, index=True
    )
    territory_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    usage: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    plans_json: Mapped[str] = mapped_column(Text, nullable=False)
    plan_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lowest_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("idx_territory_captured", "territory_id", "captured_at"),)

    def __repr__(self) -> str:
        return (
            f"<PlanSnapshot(key={self.cache_key[:50]}, plans={self.plan_count}, "
            f"captured_at={self.captured_at})>"
        )
