"""
Resolution data models.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolutionMethod(str, Enum):
    EXACT_MATCH = "exact-match"
    SINGLE_CANDIDATE = "single-candidate"
    MULTI_CANDIDATE_HEURISTIC = "multi-candidate-heuristic"
    GEOGRAPHIC_FALLBACK = "geographic-fallback"


class BoundaryGranularity(str, Enum):
    STREET = "street"
    BLOCK = "block"
    ZIP4 = "zip4"


# Confidence levels each method may claim
ALLOWED_CONFIDENCE: dict[ResolutionMethod, frozenset[Confidence]] = {
    ResolutionMethod.EXACT_MATCH: frozenset({Confidence.HIGH}),
    ResolutionMethod.SINGLE_CANDIDATE: frozenset({Confidence.HIGH, Confidence.MEDIUM}),
    ResolutionMethod.MULTI_CANDIDATE_HEURISTIC: frozenset(
        {Confidence.MEDIUM, Confidence.LOW}
    ),
    ResolutionMethod.GEOGRAPHIC_FALLBACK: frozenset({Confidence.MEDIUM, Confidence.LOW}),
}


class TdspInfo(BaseModel):
    """A transmission and distribution service provider (territory)."""

    model_config = ConfigDict(frozen=True)

    code: str
    duns: str
    name: str
    zone: str


class TdspCandidate(BaseModel):
    """An alternative territory offered alongside a result."""

    tdsp: TdspInfo
    confidence: Confidence
    esiid: str | None = None
    address: str | None = None


class SplitZipInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_known_ambiguous: bool = True
    boundary_granularity: BoundaryGranularity
    notes: str = ""
    candidates: list[TdspInfo] = Field(default_factory=list)


class ApiParams(BaseModel):
    """Query parameters the pricing API expects for a territory."""

    model_config = ConfigDict(frozen=True)

    tdsp_duns: str
    display_usage: int = 1000
    group: str = "default"


class ResolutionResult(BaseModel):
    """
    Outcome of one resolution attempt.

    Confidence is bounded by the method that produced the result:
    exact-match is always high, single-candidate is medium or high, and the
    heuristic and geographic methods are never high.
    """

    model_config = ConfigDict(frozen=True)

    zip_code: str
    tdsp: TdspInfo
    confidence: Confidence
    method: ResolutionMethod
    city_slug: str | None = None
    matched_address: str | None = None
    esiid: str | None = None
    alternatives: list[TdspCandidate] = Field(default_factory=list)
    requires_address: bool = False
    requires_selection: bool = False
    split_zip_info: SplitZipInfo | None = None
    fallback_strategy: str | None = None
    warnings: list[str] = Field(default_factory=list)
    api_params: ApiParams

    @model_validator(mode="after")
    def _check_confidence(self) -> "ResolutionResult":
        if self.confidence not in ALLOWED_CONFIDENCE[self.method]:
            raise ValueError(
                f"{self.method.value} results cannot have {self.confidence.value} confidence"
            )
        if self.api_params.tdsp_duns != self.tdsp.duns:
            raise ValueError("api_params.tdsp_duns must match the resolved territory")
        return self

    @property
    def is_ambiguous(self) -> bool:
        return self.requires_address or self.requires_selection

    def candidate_duns(self) -> list[str]:
        return [self.tdsp.duns] + [c.tdsp.duns for c in self.alternatives]

    def to_public(self) -> dict[str, Any]:
        """camelCase rendering for the HTTP surface."""
        return {
            "zipCode": self.zip_code,
            "tdsp": self.tdsp.model_dump(),
            "confidence": self.confidence.value,
            "method": self.method.value,
            "citySlug": self.city_slug,
            "matchedAddress": self.matched_address,
            "esiid": self.esiid,
            "requiresAddress": self.requires_address,
            "requiresSelection": self.requires_selection,
            "fallbackStrategy": self.fallback_strategy,
            "warnings": list(self.warnings),
        }
