"""
ESIID lookup data source (ERCOT premise registry proxy).

Search: GET {base}/api/esiids?address=...&zip_code=...
Each result row identifies one metered premise and the TDSP that serves it.
"""

from collections import Counter
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError, field_validator

from powerplans.datasource.base import BaseDataSource
from powerplans.services.errors import ApiInvalidResponse

SEARCH_PATH = "/api/esiids"


class EsiidRecord(BaseModel):
    """One premise returned by an ESIID search."""

    esiid: str
    address: str
    city: str = ""
    state: str = "TX"
    zip_code: str
    county: str = ""
    tdsp_duns: str
    tdsp_name: str

    @field_validator("esiid", "address", "tdsp_duns", "tdsp_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class TerritoryTally(BaseModel):
    duns: str
    name: str
    count: int
    esiid: str


def rank_territories(records: list[EsiidRecord]) -> list[TerritoryTally]:
    """Distinct territories among records, most frequent first."""
    counts = Counter(r.tdsp_duns for r in records)
    first_seen: dict[str, EsiidRecord] = {}
    for record in records:
        first_seen.setdefault(record.tdsp_duns, record)
    return [
        TerritoryTally(
            duns=duns,
            name=first_seen[duns].tdsp_name,
            count=count,
            esiid=first_seen[duns].esiid,
        )
        for duns, count in counts.most_common()
    ]


class EsiidSource(BaseDataSource):
    """Address to premise lookups."""

    def is_configured(self) -> bool:
        return bool(self.client.config.base_url)

    async def search(self, address: str, zip_code: str) -> list[EsiidRecord]:
        data = await self.client.get_json(
            SEARCH_PATH, params={"address": address, "zip_code": zip_code}
        )
        if not isinstance(data, list):
            raise ApiInvalidResponse(
                f"Expected a list of ESIID results, got {type(data).__name__}",
                service_id=self.service_id,
            )

        records: list[EsiidRecord] = []
        for row in data:
            record = self._parse(row)
            if record is not None:
                records.append(record)

        logger.debug(
            f"[{self.service_id}] {len(records)} ESIID results for {address}, {zip_code}"
        )
        return records

    def _parse(self, row: Any) -> EsiidRecord | None:
        if not isinstance(row, dict):
            return None
        try:
            return EsiidRecord.model_validate(row)
        except ValidationError as e:
            logger.debug(f"[{self.service_id}] Dropping invalid ESIID row: {e}")
            return None
