"""
Geographic fallback chain for territory resolution.

Used when address-level resolution fails or the ZIP is unknown. Strategies
run in order and the first that yields a territory wins:

1. zip-prefix         first two ZIP digits -> territory          (medium)
2. city-name          known city name in the address             (medium)
3. regional-majority  most common territory in the ZIP3 region   (low)
4. default-territory  configured default                         (low)

Every result is tagged with the strategy that produced it and carries a
warning explaining the estimate.
"""

from collections.abc import Callable, Iterable
from enum import Enum

from loguru import logger

from powerplans.resolver.models import (
    ApiParams,
    Confidence,
    ResolutionMethod,
    ResolutionResult,
    TdspInfo,
)
from powerplans.resolver.reference import TerritoryReference
from powerplans.services.errors import ResolutionFailed, ServiceError


class FallbackStrategy(str, Enum):
    ZIP_PREFIX = "zip-prefix"
    CITY_NAME = "city-name"
    REGIONAL_MAJORITY = "regional-majority"
    DEFAULT_TERRITORY = "default-territory"


class TerritoryFallbackChain:
    def __init__(self, reference: TerritoryReference, default_duns: str | None = None):
        self.reference = reference
        self.default_tdsp = reference.by_duns(default_duns) if default_duns else None
        if default_duns and self.default_tdsp is None:
            logger.warning(f"Default territory {default_duns} is not in reference data")
        self._usage: dict[FallbackStrategy, int] = {s: 0 for s in FallbackStrategy}

    def _strategies(
        self, zip_code: str, city: str | None
    ) -> list[tuple[FallbackStrategy, Callable[[], TdspInfo | None], Confidence, str]]:
        return [
            (
                FallbackStrategy.ZIP_PREFIX,
                lambda: self.reference.zip_prefix_tdsp(zip_code),
                Confidence.MEDIUM,
                f"Provider estimated from the {zip_code[:2]}xxx ZIP region. "
                "Enter your full address to confirm.",
            ),
            (
                FallbackStrategy.CITY_NAME,
                lambda: self.reference.city_heuristic_tdsp(city),
                Confidence.MEDIUM,
                f"Provider estimated from the city name '{city}'. "
                "Enter your full address to confirm.",
            ),
            (
                FallbackStrategy.REGIONAL_MAJORITY,
                lambda: self.reference.regional_majority(zip_code),
                Confidence.LOW,
                "Provider estimated as the most common one near your ZIP code. "
                "Enter your full address to confirm.",
            ),
            (
                FallbackStrategy.DEFAULT_TERRITORY,
                lambda: self.default_tdsp,
                Confidence.LOW,
                "We couldn't determine your provider and are showing the default "
                "service area. Enter your full address for accurate plans.",
            ),
        ]

    def resolve(
        self,
        zip_code: str,
        city: str | None = None,
        usage: int = 1000,
        cause: ServiceError | None = None,
        warnings: Iterable[str] = (),
    ) -> ResolutionResult:
        """
        Estimate a territory for zip_code.

        Raises:
            ResolutionFailed: Every strategy came up empty (chained to cause)
        """
        for strategy, find, confidence, warning in self._strategies(zip_code, city):
            tdsp = find()
            if tdsp is None:
                continue
            self._usage[strategy] += 1
            logger.info(
                f"Fallback '{strategy.value}' resolved {zip_code} to {tdsp.name}"
                + (f" after {cause.code}" if cause else "")
            )
            return ResolutionResult(
                zip_code=zip_code,
                tdsp=tdsp,
                confidence=confidence,
                method=ResolutionMethod.GEOGRAPHIC_FALLBACK,
                city_slug=self.reference.city_for_zip(zip_code)
                or self.reference.default_city_for(tdsp),
                fallback_strategy=strategy.value,
                warnings=[*warnings, warning],
                api_params=ApiParams(tdsp_duns=tdsp.duns, display_usage=usage),
            )

        raise ResolutionFailed(
            f"No fallback strategy could resolve ZIP {zip_code}"
        ) from cause

    def get_stats(self) -> dict[str, int]:
        return {strategy.value: count for strategy, count in self._usage.items()}
