"""
ComparePower-style pricing API data source.

GET {base}/api/plans/current?group=default&tdsp_duns=...&display_usage=...
returns a JSON list of plan objects; each is transformed into a PlanRecord.
"""

import re
from typing import Any

from loguru import logger
from pydantic import ValidationError

from powerplans.datasource.base import BaseDataSource
from powerplans.models import (
    Contract,
    Features,
    FreeTimeWindow,
    PlanQuery,
    PlanRecord,
    Pricing,
    Provider,
    RateType,
)
from powerplans.services.errors import ApiInvalidResponse

PLANS_PATH = "/api/plans/current"

_TIME_WINDOW = re.compile(
    r"(\d{1,2}:\d{2}\s*(?:am|pm))\s*to\s*(\d{1,2}:\d{2}\s*(?:am|pm))", re.IGNORECASE
)


def _cents(display: dict[str, Any] | None) -> float:
    """Average rate in cents/kWh, preferring avg_cents over avg (dollars)."""
    if not display:
        return 0.0
    if display.get("avg_cents"):
        return float(display["avg_cents"])
    if display.get("avg"):
        return round(float(display["avg"]) * 100, 4)
    return 0.0


def _total(display: dict[str, Any] | None) -> float:
    return float(display.get("total") or 0) if display else 0.0


def infer_rate_type(name: str, headline: str | None) -> RateType:
    text = f"{name} {headline or ''}".lower()
    if "variable" in text:
        return RateType.VARIABLE
    if "indexed" in text:
        return RateType.INDEXED
    return RateType.FIXED


def parse_free_time(headline: str | None) -> FreeTimeWindow | None:
    """Extract e.g. 'FREE electricity from 9:00 pm to 6:00 am' windows."""
    if not headline:
        return None
    match = _TIME_WINDOW.search(headline)
    if not match:
        return None
    return FreeTimeWindow(
        start=match.group(1),
        end=match.group(2),
        weekends_only="weekend" in headline.lower(),
    )


def transform_plan(raw: dict[str, Any], territory_id: str) -> PlanRecord:
    product = raw["product"]
    if not isinstance(product, dict):
        raise TypeError(f"product is {type(product).__name__}, expected an object")
    headline = product.get("headline")
    time_of_use = bool(product.get("is_time_of_use"))
    return PlanRecord(
        id=str(raw["_id"]),
        name=product["name"],
        provider=Provider(name=product["brand"]["name"]),
        pricing=Pricing(
            rate_500_kwh=_cents(raw.get("display_pricing_500")),
            rate_1000_kwh=_cents(raw.get("display_pricing_1000")),
            rate_2000_kwh=_cents(raw.get("display_pricing_2000")),
            rate_per_kwh=_cents(raw.get("display_pricing_1000")),
            total_500_kwh=_total(raw.get("display_pricing_500")),
            total_1000_kwh=_total(raw.get("display_pricing_1000")),
            total_2000_kwh=_total(raw.get("display_pricing_2000")),
        ),
        contract=Contract(
            term_months=int(product.get("term") or 0),
            type=infer_rate_type(product["name"], headline),
            early_termination_fee=float(product.get("early_termination_fee") or 0),
        ),
        features=Features(
            green_energy_percent=int(product.get("percent_green") or 0),
            bill_credit=float(product.get("bill_credit") or 0),
            deposit_required=bool(product.get("is_pre_pay")),
            time_of_use=time_of_use,
            free_time=parse_free_time(headline) if time_of_use else None,
        ),
        territory_id=territory_id,
    )


class PricingSource(BaseDataSource):
    """Fetches and normalizes plan listings for one territory."""

    def is_configured(self) -> bool:
        return bool(self.client.config.base_url)

    async def fetch_plans(self, query: PlanQuery) -> list[PlanRecord]:
        """
        Fetch plans for query from the upstream.

        Malformed plan rows are skipped with a warning. A body that is not a
        list is an ApiInvalidResponse (retryable).
        """
        data = await self.client.get_json(PLANS_PATH, params=query.to_api_params())
        if not isinstance(data, list):
            raise ApiInvalidResponse(
                f"Expected a list of plans, got {type(data).__name__}",
                service_id=self.service_id,
            )

        plans: list[PlanRecord] = []
        for raw in data:
            try:
                plan = transform_plan(raw, query.territory_id)
            except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as e:
                logger.warning(f"[{self.service_id}] Skipping malformed plan: {e}")
                continue
            if query.rate_type and plan.contract.type != query.rate_type:
                continue
            plans.append(plan)

        logger.debug(
            f"[{self.service_id}] {len(plans)} plans for territory {query.territory_id}"
        )
        return plans
