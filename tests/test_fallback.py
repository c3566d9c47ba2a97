"""Tests for reference data lookups and the geographic fallback chain."""

import pytest

from conftest import CENTERPOINT, ONCOR, TNMP
from powerplans.resolver.fallback import FallbackStrategy, TerritoryFallbackChain
from powerplans.resolver.models import Confidence, ResolutionMethod
from powerplans.resolver.reference import ReferenceConfig, TerritoryReference
from powerplans.services.errors import ApiTimeout, ResolutionFailed


@pytest.fixture
def chain(reference) -> TerritoryFallbackChain:
    return TerritoryFallbackChain(reference, default_duns=ONCOR)


class TestTerritoryReference:
    def test_known_single_territory_zip(self, reference):
        assert reference.territory_for_zip("75201").duns == ONCOR
        assert reference.city_for_zip("75201") == "dallas-tx"
        assert reference.split_zip("75201") is None

    def test_split_zip_candidates(self, reference):
        split = reference.split_zip("75034")

        assert split.is_known_ambiguous
        assert [t.duns for t in split.candidates] == [ONCOR, TNMP]
        assert split.boundary_granularity.value == "street"

    def test_service_area(self, reference):
        assert reference.is_in_service_area("75201")
        assert not reference.is_in_service_area("12345")
        assert not reference.is_deregulated_city("san-antonio-tx")
        assert reference.suggestions

    def test_city_heuristic_prefers_longest_name(self, reference):
        assert reference.city_heuristic_tdsp("Sugar Land").duns == CENTERPOINT
        assert reference.city_heuristic_tdsp("Fort-Worth").duns == ONCOR
        assert reference.city_heuristic_tdsp("Nowhere") is None

    def test_unknown_tdsp_code_rejected(self):
        with pytest.raises(ValueError):
            ReferenceConfig(
                tdsps={"ONCOR": {"duns": ONCOR, "name": "Oncor", "zone": "North"}},
                service_area={"zip_min": 75000, "zip_max": 79999},
                zip_prefixes={"77": "CENTERPOINT"},
            )


class TestFallbackChain:
    def test_zip_prefix_is_medium_confidence(self, chain):
        result = chain.resolve("75999")

        assert result.method == ResolutionMethod.GEOGRAPHIC_FALLBACK
        assert result.confidence == Confidence.MEDIUM
        assert result.fallback_strategy == FallbackStrategy.ZIP_PREFIX.value
        assert result.tdsp.duns == ONCOR
        assert result.api_params.tdsp_duns == ONCOR
        assert result.warnings

    def test_city_name_when_prefix_unknown(self, reference):
        reference = TerritoryReference(
            reference.config.model_copy(update={"zip_prefixes": {}})
        )
        result = TerritoryFallbackChain(reference, ONCOR).resolve("77999", city="Katy")

        assert result.fallback_strategy == FallbackStrategy.CITY_NAME.value
        assert result.tdsp.duns == CENTERPOINT
        assert result.confidence == Confidence.MEDIUM

    def test_regional_majority_is_low_confidence(self, reference):
        reference = TerritoryReference(
            reference.config.model_copy(update={"zip_prefixes": {}})
        )
        result = TerritoryFallbackChain(reference, ONCOR).resolve("77099")

        assert result.fallback_strategy == FallbackStrategy.REGIONAL_MAJORITY.value
        assert result.confidence == Confidence.LOW

    def test_default_territory_last(self, reference):
        reference = TerritoryReference(
            reference.config.model_copy(update={"zip_prefixes": {}})
        )
        result = TerritoryFallbackChain(reference, ONCOR).resolve("79999")

        assert result.fallback_strategy == FallbackStrategy.DEFAULT_TERRITORY.value
        assert result.tdsp.duns == ONCOR
        assert result.confidence == Confidence.LOW

    def test_exhausted_chain_raises_with_cause(self, reference):
        reference = TerritoryReference(
            reference.config.model_copy(update={"zip_prefixes": {}})
        )
        cause = ApiTimeout("esiid", 5.0)

        with pytest.raises(ResolutionFailed) as exc_info:
            TerritoryFallbackChain(reference).resolve("79999", cause=cause)
        assert exc_info.value.__cause__ is cause

    def test_usage_counted(self, chain):
        chain.resolve("75999")
        chain.resolve("76999")
        assert chain.get_stats()["zip-prefix"] == 2
