"""
Repository layer - data access for plan snapshots.
"""

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from powerplans.datastore.models import PlanSnapshotDB


class PlanSnapshotRepository:
    """Plan snapshot repository."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(
        self,
        cache_key: str,
        territory_id: str,
        usage: int,
        plans_json: str,
        plan_count: int,
        lowest_rate: float | None,
        captured_at: datetime | None = None,
    ) -> PlanSnapshotDB:
        """Insert or replace the snapshot for cache_key."""
        captured_at = captured_at or datetime.utcnow()
        result = await self.session.execute(
            select(PlanSnapshotDB).where(PlanSnapshotDB.cache_key == cache_key)
        )
        snapshot = result.scalar_one_or_none()

        if snapshot:
            snapshot.plans_json = plans_json
            snapshot.plan_count = plan_count
            snapshot.lowest_rate = lowest_rate
            snapshot.captured_at = captured_at
        else:
            snapshot = PlanSnapshotDB(
                cache_key=cache_key,
                territory_id=territory_id,
                usage=usage,
                plans_json=plans_json,
                plan_count=plan_count,
                lowest_rate=lowest_rate,
                captured_at=captured_at,
            )
            self.session.add(snapshot)

        await self.session.flush()
        logger.debug(f"Saved snapshot for {cache_key[:50]} ({plan_count} plans)")
        return snapshot

    async def latest_for_key(self, cache_key: str) -> PlanSnapshotDB | None:
        result = await self.session.execute(
            select(PlanSnapshotDB).where(PlanSnapshotDB.cache_key == cache_key)
        )
        return result.scalar_one_or_none()

    async def latest_for_territory(
        self, territory_id: str, usage: int | None = None
    ) -> PlanSnapshotDB | None:
        """Most recent non-empty snapshot for the territory, same usage preferred."""
        stmt = select(PlanSnapshotDB).where(
            PlanSnapshotDB.territory_id == territory_id,
            PlanSnapshotDB.plan_count > 0,
        )
        if usage is not None:
            stmt = stmt.order_by((PlanSnapshotDB.usage == usage).desc())
        stmt = stmt.order_by(PlanSnapshotDB.captured_at.desc()).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_for_territory(self, territory_id: str) -> int:
        result = await self.session.execute(
            delete(PlanSnapshotDB).where(PlanSnapshotDB.territory_id == territory_id)
        )
        return result.rowcount or 0

    async def cleanup_older_than(self, days: int) -> int:
        """Delete snapshots captured more than ``days`` ago."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await self.session.execute(
            delete(PlanSnapshotDB).where(PlanSnapshotDB.captured_at < cutoff)
        )
        deleted = result.rowcount or 0
        if deleted > 0:
            logger.debug(f"Cleaned up {deleted} old plan snapshots")
        return deleted

    async def get_stats(self) -> dict[str, int]:
        result = await self.session.execute(
            select(
                func.count(PlanSnapshotDB.id),
                func.count(func.distinct(PlanSnapshotDB.territory_id)),
                func.coalesce(func.sum(PlanSnapshotDB.plan_count), 0),
            )
        )
        snapshots, territories, plans = result.one()
        return {"snapshots": snapshots, "territories": territories, "plans": plans}
