"""Tests for the plan snapshot store (SQLite under tmp_path)."""

from datetime import datetime, timedelta

from conftest import ONCOR, TNMP, make_plan_payload
from powerplans.datasource.pricing import transform_plan
from powerplans.datastore.engine import Database
from powerplans.datastore.repositories import PlanSnapshotRepository
from powerplans.datastore.snapshots import SnapshotStore
from powerplans.models import PlanQuery


def plans_for(territory_id: str, count: int = 2):
    return [
        transform_plan(make_plan_payload(f"plan-{i}", avg_cents=10 + i), territory_id)
        for i in range(count)
    ]


class TestSnapshotStore:
    async def test_save_and_load_exact(self, database):
        store = SnapshotStore(database)
        query = PlanQuery(territory_id=ONCOR)

        assert await store.save(query, plans_for(ONCOR))
        snapshot = await store.load(query)

        assert snapshot.exact
        assert [p.id for p in snapshot.plans] == ["plan-0", "plan-1"]
        assert snapshot.cache_key == query.cache_key()

    async def test_save_replaces_existing(self, database):
        store = SnapshotStore(database)
        query = PlanQuery(territory_id=ONCOR)
        await store.save(query, plans_for(ONCOR, 3))
        await store.save(query, plans_for(ONCOR, 1))

        snapshot = await store.load(query)
        assert len(snapshot.plans) == 1
        assert (await store.get_stats())["snapshots"] == 1

    async def test_territory_fallback_prefers_same_usage(self, database):
        store = SnapshotStore(database)
        await store.save(PlanQuery(territory_id=ONCOR, usage=500), plans_for(ONCOR, 1))
        await store.save(PlanQuery(territory_id=ONCOR, usage=1000, term_months=12), plans_for(ONCOR, 2))

        snapshot = await store.load(PlanQuery(territory_id=ONCOR, usage=1000, term_months=24))

        assert not snapshot.exact
        assert len(snapshot.plans) == 2

    async def test_empty_snapshots_are_not_borrowed(self, database):
        store = SnapshotStore(database)
        await store.save(PlanQuery(territory_id=ONCOR, term_months=6), [])

        assert await store.load(PlanQuery(territory_id=ONCOR)) is None

    async def test_other_territory_is_not_used(self, database):
        store = SnapshotStore(database)
        await store.save(PlanQuery(territory_id=TNMP), plans_for(TNMP))

        assert await store.load(PlanQuery(territory_id=ONCOR)) is None

    async def test_invalidate_territory(self, database):
        store = SnapshotStore(database)
        await store.save(PlanQuery(territory_id=ONCOR), plans_for(ONCOR))
        await store.save(PlanQuery(territory_id=TNMP), plans_for(TNMP))

        assert await store.invalidate_territory(ONCOR) == 1
        stats = await store.get_stats()
        assert stats["territories"] == 1

    async def test_cleanup_removes_old_snapshots(self, database):
        async with database.session() as session:
            await PlanSnapshotRepository(session).save(
                cache_key="old",
                territory_id=ONCOR,
                usage=1000,
                plans_json="[]",
                plan_count=0,
                lowest_rate=None,
                captured_at=datetime.utcnow() - timedelta(days=40),
            )
        store = SnapshotStore(database)
        await store.save(PlanQuery(territory_id=ONCOR), plans_for(ONCOR))

        assert await store.cleanup(days=30) == 1
        assert (await store.get_stats())["snapshots"] == 1

    async def test_corrupt_snapshot_is_discarded(self, database):
        query = PlanQuery(territory_id=ONCOR)
        async with database.session() as session:
            await PlanSnapshotRepository(session).save(
                cache_key=query.cache_key(),
                territory_id=ONCOR,
                usage=1000,
                plans_json='[{"id": 1}]',
                plan_count=1,
                lowest_rate=None,
            )

        assert await SnapshotStore(database).load(query) is None

    async def test_uninitialized_database_reports_no_snapshot(self, tmp_path):
        store = SnapshotStore(Database(f"sqlite+aiosqlite:///{tmp_path / 'never.db'}"))
        query = PlanQuery(territory_id=ONCOR)

        assert not await store.save(query, plans_for(ONCOR))
        assert await store.load(query) is None
        assert await store.cleanup(30) == 0
