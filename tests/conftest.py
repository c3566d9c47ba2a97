"""Pytest configuration and shared fixtures.

Organization:
    - Clock Fixtures: controllable time for breaker, limiter and cache tests
    - Cache Fixtures: in-memory Redis stand-ins
    - Upstream Fixtures: pricing / ESIID payloads served via httpx.MockTransport
    - Service Fixtures: settings, database and a wired ServiceContainer
"""

import fnmatch
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import pytest

from powerplans.container import ServiceContainer
from powerplans.datastore.engine import Database
from powerplans.resolver.reference import TerritoryReference
from powerplans.settings import Settings

ONCOR = "1039940674000"
TNMP = "007929441"
CENTERPOINT = "957877905"


# ============================================================================
# Clock Fixtures
# ============================================================================


class FakeClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateTimeClock:
    """datetime clock for the circuit breaker."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dt_clock() -> FakeDateTimeClock:
    return FakeDateTimeClock()


async def no_sleep(delay: float) -> None:
    """Sleep replacement so retry backoff does not slow tests down."""


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def recording_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleep


# ============================================================================
# Cache Fixtures
# ============================================================================


class FakeRedis:
    """The subset of redis.asyncio.Redis used by the cache tier (decoded strings)."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def setex(self, key: str, seconds: int, value: str) -> bool:
        self.values[key] = value
        self.ttls[key] = seconds
        return True

    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    async def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            elif self.sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str = "*"):
        for key in list(self.values) + list(self.sets):
            if fnmatch.fnmatch(key, match):
                yield key

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True


class FailingRedis(FakeRedis):
    """Every command fails like a dropped connection."""

    async def get(self, key: str) -> str | None:
        raise ConnectionError("redis down")

    async def setex(self, key: str, seconds: int, value: str) -> bool:
        raise ConnectionError("redis down")

    async def smembers(self, key: str) -> set[str]:
        raise ConnectionError("redis down")

    async def ping(self) -> bool:
        raise ConnectionError("redis down")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ============================================================================
# Upstream Fixtures
# ============================================================================


def make_plan_payload(
    plan_id: str = "plan-1",
    name: str = "Simple Saver 12",
    brand: str = "Gexa Energy",
    avg_cents: float = 12.5,
    term: int = 12,
    percent_green: int = 0,
    headline: str | None = None,
    time_of_use: bool = False,
) -> dict[str, Any]:
    """One plan row as returned by the pricing API."""
    return {
        "_id": plan_id,
        "product": {
            "name": name,
            "brand": {"name": brand},
            "term": term,
            "percent_green": percent_green,
            "headline": headline,
            "is_time_of_use": time_of_use,
            "early_termination_fee": 150,
            "is_pre_pay": False,
        },
        "display_pricing_500": {"avg_cents": avg_cents + 2, "total": 78.0},
        "display_pricing_1000": {"avg_cents": avg_cents, "total": 125.0},
        "display_pricing_2000": {"avg_cents": avg_cents - 1, "total": 230.0},
    }


def make_esiid_row(
    esiid: str = "10443720000000001",
    address: str = "123 MAIN ST",
    zip_code: str = "75034",
    tdsp_duns: str = ONCOR,
    tdsp_name: str = "Oncor Electric Delivery",
) -> dict[str, Any]:
    return {
        "esiid": esiid,
        "address": address,
        "city": "FRISCO",
        "state": "TX",
        "zip_code": zip_code,
        "county": "COLLIN",
        "tdsp_duns": tdsp_duns,
        "tdsp_name": tdsp_name,
    }


class UpstreamStub:
    """Scriptable MockTransport handler that records every request."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response] | None = None):
        self.requests: list[httpx.Request] = []
        self.responder = responder or (lambda request: httpx.Response(200, json=[]))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def pricing_stub() -> UpstreamStub:
    return UpstreamStub(
        lambda request: httpx.Response(
            200,
            json=[
                make_plan_payload("plan-1", avg_cents=12.5),
                make_plan_payload("plan-2", name="Green Choice 24", term=24, percent_green=100),
            ],
        )
    )


@pytest.fixture
def esiid_stub() -> UpstreamStub:
    return UpstreamStub(lambda request: httpx.Response(200, json=[make_esiid_row()]))


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def reference() -> TerritoryReference:
    return TerritoryReference.load()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        pricing_api_url="https://pricing.test",
        esiid_api_url="https://esiid.test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'plans.db'}",
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        zip_validation_plan_timeout=1.0,
    )


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'snapshots.db'}")
    await db.init()
    yield db
    await db.close()


@pytest.fixture
async def container(settings, reference, pricing_stub, esiid_stub):
    services = ServiceContainer.build(
        settings,
        reference=reference,
        pricing_http=pricing_stub.client(),
        esiid_http=esiid_stub.client(),
    )
    await services.start()
    yield services
    await services.close()
