"""
SnapshotStore - persists the last good plan listing per query.

Snapshots are the last line of the plans fallback chain, so the store
itself never raises on database trouble: failures are logged and reported
as "no snapshot".
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from powerplans.datastore.engine import Database
from powerplans.datastore.repositories import PlanSnapshotRepository
from powerplans.models import PlanQuery, PlanRecord

_plans_adapter = TypeAdapter(list[PlanRecord])


@dataclass
class PlanSnapshot:
    plans: list[PlanRecord]
    captured_at: datetime
    exact: bool  # False when borrowed from another query for the same territory
    cache_key: str = ""


class SnapshotStore:
    def __init__(self, db: Database):
        self._db = db

    async def save(self, query: PlanQuery, plans: list[PlanRecord]) -> bool:
        rates = [p.pricing.rate_per_kwh for p in plans if p.pricing.rate_per_kwh > 0]
        try:
            async with self._db.session() as session:
                await PlanSnapshotRepository(session).save(
                    cache_key=query.cache_key(),
                    territory_id=query.territory_id,
                    usage=query.usage,
                    plans_json=_plans_adapter.dump_json(plans).decode(),
                    plan_count=len(plans),
                    lowest_rate=min(rates) if rates else None,
                )
        except (SQLAlchemyError, RuntimeError) as e:
            logger.warning(f"Failed to save plan snapshot for {query.territory_id}: {e}")
            return False
        return True

    async def load(self, query: PlanQuery) -> PlanSnapshot | None:
        """Snapshot for the exact query, else the newest one for its territory."""
        try:
            async with self._db.session() as session:
                repo = PlanSnapshotRepository(session)
                row = await repo.latest_for_key(query.cache_key())
                exact = row is not None
                if row is None:
                    row = await repo.latest_for_territory(query.territory_id, query.usage)
                if row is None:
                    return None
                cache_key, captured_at, plans_json = (
                    row.cache_key,
                    row.captured_at,
                    row.plans_json,
                )
        except (SQLAlchemyError, RuntimeError) as e:
            logger.warning(f"Failed to load plan snapshot for {query.territory_id}: {e}")
            return None

        try:
            plans = _plans_adapter.validate_json(plans_json)
        except ValidationError as e:
            logger.warning(f"Discarding corrupt plan snapshot {cache_key[:50]}: {e}")
            return None

        return PlanSnapshot(
            plans=plans, captured_at=captured_at, exact=exact, cache_key=cache_key
        )

    async def cleanup(self, days: int) -> int:
        try:
            async with self._db.session() as session:
                return await PlanSnapshotRepository(session).cleanup_older_than(days)
        except (SQLAlchemyError, RuntimeError) as e:
            logger.warning(f"Snapshot cleanup failed: {e}")
            return 0

    async def invalidate_territory(self, territory_id: str) -> int:
        try:
            async with self._db.session() as session:
                return await PlanSnapshotRepository(session).delete_for_territory(
                    territory_id
                )
        except (SQLAlchemyError, RuntimeError) as e:
            logger.warning(f"Snapshot invalidation failed for {territory_id}: {e}")
            return 0

    async def get_stats(self) -> dict[str, Any]:
        try:
            async with self._db.session() as session:
                return await PlanSnapshotRepository(session).get_stats()
        except (SQLAlchemyError, RuntimeError) as e:
            logger.warning(f"Snapshot stats unavailable: {e}")
            return {"error": str(e)}

