"""
Plan domain models shared by the pricing client, cache and snapshot store.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from powerplans.services.cache import make_cache_key


class RateType(str, Enum):
    FIXED = "fixed"
    VARIABLE = "variable"
    INDEXED = "indexed"


class PlanSource(str, Enum):
    CACHE = "cache"
    UPSTREAM = "upstream"
    SNAPSHOT = "snapshot"


class PlanQuery(BaseModel):
    """What plans to fetch. Immutable; equal queries share one cache key."""

    model_config = ConfigDict(frozen=True)

    territory_id: str = Field(min_length=1)
    usage: int = Field(default=1000, gt=0, le=10000)
    term_months: int | None = Field(default=None, gt=0, le=60)
    rate_type: RateType | None = None
    green_percent: int | None = Field(default=None, ge=0, le=100)

    @field_validator("territory_id")
    @classmethod
    def _strip_territory(cls, value: str) -> str:
        return value.strip()

    def cache_key(self) -> str:
        return make_cache_key(
            "plans",
            {
                "tdsp": self.territory_id,
                "usage": self.usage,
                "term": self.term_months,
                "rate": self.rate_type.value if self.rate_type else None,
                "green": self.green_percent,
            },
        )

    def tags(self) -> list[str]:
        return ["plans", territory_tag(self.territory_id)]

    def to_api_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "group": "default",
            "tdsp_duns": self.territory_id,
            "display_usage": self.usage,
        }
        if self.term_months is not None:
            params["term"] = self.term_months
        if self.green_percent is not None:
            params["percent_green"] = self.green_percent
        return params


def territory_tag(territory_id: str) -> str:
    return f"territory:{territory_id}"


class Provider(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    rating: float = 0.0


class Pricing(BaseModel):
    """Average rates in cents/kWh, totals in dollars."""

    model_config = ConfigDict(frozen=True)

    rate_500_kwh: float = 0.0
    rate_1000_kwh: float = 0.0
    rate_2000_kwh: float = 0.0
    rate_per_kwh: float = 0.0
    total_500_kwh: float = 0.0
    total_1000_kwh: float = 0.0
    total_2000_kwh: float = 0.0


class Contract(BaseModel):
    model_config = ConfigDict(frozen=True)

    term_months: int = 0
    type: RateType = RateType.FIXED
    early_termination_fee: float = 0.0


class FreeTimeWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: str
    end: str
    weekends_only: bool = False


class Features(BaseModel):
    model_config = ConfigDict(frozen=True)

    green_energy_percent: int = 0
    bill_credit: float = 0.0
    deposit_required: bool = False
    time_of_use: bool = False
    free_time: FreeTimeWindow | None = None


class PlanRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: Provider
    pricing: Pricing
    contract: Contract
    features: Features
    territory_id: str


class PlanFetchResult(BaseModel):
    """Plans plus where they came from."""

    query: PlanQuery
    plans: list[PlanRecord]
    source: PlanSource
    degraded: bool = False
    warnings: list[str] = Field(default_factory=list)
    captured_at: datetime | None = None

    @property
    def plan_count(self) -> int:
        return len(self.plans)
