"""
Territory reference data loaded from territories.yaml.
"""

from collections import Counter
from functools import cached_property
from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field, model_validator

from powerplans.resolver.models import BoundaryGranularity, SplitZipInfo, TdspInfo

DEFAULT_REFERENCE_PATH = Path(__file__).with_name("territories.yaml")


class TdspEntry(BaseModel):
    duns: str
    name: str
    zone: str


class ServiceArea(BaseModel):
    state: str = "TX"
    zip_min: int = 75000
    zip_max: int = 79999
    suggestions: list[str] = Field(default_factory=list)


class ZipRange(BaseModel):
    start: str
    end: str
    city: str


class SplitZipEntry(BaseModel):
    primary: str
    alternatives: list[str]
    granularity: BoundaryGranularity = BoundaryGranularity.STREET
    notes: str = ""


class ReferenceConfig(BaseModel):
    """Shape of territories.yaml."""

    tdsps: dict[str, TdspEntry]
    service_area: ServiceArea = Field(default_factory=ServiceArea)
    not_deregulated_cities: list[str] = Field(default_factory=list)
    cities: dict[str, list[str]] = Field(default_factory=dict)
    zip_ranges: list[ZipRange] = Field(default_factory=list)
    zip_codes: dict[str, str] = Field(default_factory=dict)
    split_zips: dict[str, SplitZipEntry] = Field(default_factory=dict)
    zip_prefixes: dict[str, str] = Field(default_factory=dict)
    city_heuristics: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_codes(self) -> "ReferenceConfig":
        referenced = set(self.cities) | set(self.zip_prefixes.values())
        referenced |= set(self.city_heuristics.values())
        for entry in self.split_zips.values():
            referenced.add(entry.primary)
            referenced.update(entry.alternatives)
        unknown = referenced - set(self.tdsps)
        if unknown:
            raise ValueError(f"Unknown TDSP codes in reference data: {sorted(unknown)}")
        return self


class TerritoryReference:
    """
    Lookup tables for ZIPs, cities and territories.

    Usage:
        reference = TerritoryReference.load()
        tdsp = reference.territory_for_zip("75201")
    """

    def __init__(self, config: ReferenceConfig):
        self.config = config
        self._tdsps = {
            code: TdspInfo(code=code, duns=e.duns, name=e.name, zone=e.zone)
            for code, e in config.tdsps.items()
        }
        self._by_duns = {t.duns: t for t in self._tdsps.values()}
        self._city_tdsp = {
            slug: code for code, slugs in config.cities.items() for slug in slugs
        }

    @classmethod
    def load(cls, path: str | Path | None = None) -> "TerritoryReference":
        path = Path(path) if path else DEFAULT_REFERENCE_PATH
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        reference = cls(ReferenceConfig(**data))
        logger.info(
            f"Loaded territory reference from {path}: {len(reference.known_zips)} ZIPs, "
            f"{len(data.get('split_zips', {}))} split ZIPs"
        )
        return reference

    # Territories

    def tdsp(self, code: str) -> TdspInfo:
        return self._tdsps[code]

    def by_duns(self, duns: str) -> TdspInfo | None:
        return self._by_duns.get(duns)

    def all_tdsps(self) -> list[TdspInfo]:
        return list(self._tdsps.values())

    # ZIPs and cities

    @cached_property
    def known_zips(self) -> dict[str, str]:
        """Every ZIP with a known city slug, explicit entries overriding ranges."""
        zips: dict[str, str] = {}
        for zip_range in self.config.zip_ranges:
            for value in range(int(zip_range.start), int(zip_range.end) + 1):
                zips[f"{value:05d}"] = zip_range.city
        zips.update(self.config.zip_codes)
        return zips

    def city_for_zip(self, zip_code: str) -> str | None:
        return self.known_zips.get(zip_code)

    def tdsp_for_city(self, city_slug: str) -> TdspInfo | None:
        code = self._city_tdsp.get(city_slug)
        return self._tdsps[code] if code else None

    def territory_for_zip(self, zip_code: str) -> TdspInfo | None:
        """Territory of a known single-territory ZIP (split ZIPs give their primary)."""
        split = self.config.split_zips.get(zip_code)
        if split:
            return self._tdsps[split.primary]
        city = self.city_for_zip(zip_code)
        return self.tdsp_for_city(city) if city else None

    def default_city_for(self, tdsp: TdspInfo) -> str | None:
        slugs = self.config.cities.get(tdsp.code)
        return slugs[0] if slugs else None

    def is_in_service_area(self, zip_code: str) -> bool:
        area = self.config.service_area
        return zip_code.isdigit() and area.zip_min <= int(zip_code) <= area.zip_max

    def is_deregulated_city(self, city_slug: str | None) -> bool:
        return city_slug not in self.config.not_deregulated_cities

    @property
    def suggestions(self) -> list[str]:
        return list(self.config.service_area.suggestions)

    # Split ZIPs

    def split_zip(self, zip_code: str) -> SplitZipInfo | None:
        entry = self.config.split_zips.get(zip_code)
        if entry is None:
            return None
        return SplitZipInfo(
            boundary_granularity=entry.granularity,
            notes=entry.notes,
            candidates=[self._tdsps[entry.primary]]
            + [self._tdsps[code] for code in entry.alternatives],
        )

    # Geographic heuristics

    def zip_prefix_tdsp(self, zip_code: str) -> TdspInfo | None:
        code = self.config.zip_prefixes.get(zip_code[:2])
        return self._tdsps[code] if code else None

    def city_heuristic_tdsp(self, city: str | None) -> TdspInfo | None:
        """Territory for a free-text city name, longest known name contained wins."""
        if not city:
            return None
        name = " ".join(city.lower().replace("-", " ").split())
        matches = [key for key in self.config.city_heuristics if key in name]
        if not matches:
            return None
        return self._tdsps[self.config.city_heuristics[max(matches, key=len)]]

    @cached_property
    def _regional_counts(self) -> dict[str, Counter[str]]:
        counts: dict[str, Counter[str]] = {}
        for zip_code in set(self.known_zips) | set(self.config.split_zips):
            tdsp = self.territory_for_zip(zip_code)
            if tdsp is not None:
                counts.setdefault(zip_code[:3], Counter())[tdsp.code] += 1
        return counts

    def regional_majority(self, zip_code: str) -> TdspInfo | None:
        """Most common territory among known ZIPs sharing the 3-digit region."""
        counts = self._regional_counts.get(zip_code[:3])
        if not counts:
            return None
        code, _ = counts.most_common(1)[0]
        return self._tdsps[code]
