"""Tests for TerritoryResolver: ZIP analysis, address lookup and selection."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import ONCOR, TNMP, make_esiid_row, no_sleep
from powerplans.datasource.esiid import EsiidSource
from powerplans.resolver.address import AddressInfo, normalize_address
from powerplans.resolver.fallback import TerritoryFallbackChain
from powerplans.resolver.models import Confidence, ResolutionMethod
from powerplans.resolver.resolver import TerritoryResolver
from powerplans.services.cache import MemoryCache
from powerplans.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from powerplans.services.client import UpstreamClient, UpstreamConfig
from powerplans.services.errors import (
    ApiUnauthorized,
    ConfigurationMissing,
    IncompleteAddress,
    InvalidSelection,
    InvalidZipCode,
    OutOfServiceArea,
    is_fatal,
)
from powerplans.services.retry import RetryPolicy
from powerplans.services.tiered_cache import CacheTierManager

FRISCO = AddressInfo(street="123 Main St", city="Frisco", zip_code="75034")


def two_territories(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json=[
            make_esiid_row(esiid="1"),
            make_esiid_row(esiid="2", tdsp_duns=TNMP, tdsp_name="Texas-New Mexico Power"),
        ],
    )


@pytest.fixture
def make_resolver(reference, esiid_stub, dt_clock, clock):
    def factory(
        base_url: str = "https://esiid.test", lookup_timeout: float = 5.0
    ) -> TerritoryResolver:
        esiid = EsiidSource(
            UpstreamClient(
                UpstreamConfig(service_id="esiid", base_url=base_url),
                http_client=esiid_stub.client(),
            )
        )
        return TerritoryResolver(
            reference=reference,
            esiid=esiid,
            breaker=CircuitBreaker(
                "esiid",
                CircuitBreakerConfig(failure_threshold=2, reset_timeout=timedelta(seconds=30)),
                clock=dt_clock,
            ),
            fallback=TerritoryFallbackChain(reference, ONCOR),
            cache=CacheTierManager(MemoryCache(clock=clock)),
            retry_policy=RetryPolicy(max_retries=0),
            lookup_timeout=lookup_timeout,
            sleep=no_sleep,
        )

    return factory


class TestZipOnly:
    async def test_single_territory_zip(self, make_resolver, esiid_stub):
        result = await make_resolver().resolve("75201")

        assert result.tdsp.duns == ONCOR
        assert result.method == ResolutionMethod.SINGLE_CANDIDATE
        assert result.confidence == Confidence.HIGH
        assert result.city_slug == "dallas-tx"
        assert not result.is_ambiguous
        assert result.api_params.tdsp_duns == ONCOR
        assert esiid_stub.calls == 0

    async def test_split_zip_asks_for_address(self, make_resolver, esiid_stub):
        result = await make_resolver().resolve("75034")

        assert result.confidence == Confidence.LOW
        assert result.method == ResolutionMethod.MULTI_CANDIDATE_HEURISTIC
        assert result.requires_address
        assert result.candidate_duns() == [ONCOR, TNMP]
        assert result.split_zip_info.is_known_ambiguous
        assert esiid_stub.calls == 0

    async def test_unknown_zip_uses_fallback(self, make_resolver):
        result = await make_resolver().resolve("75999")

        assert result.method == ResolutionMethod.GEOGRAPHIC_FALLBACK
        assert result.fallback_strategy == "zip-prefix"

    async def test_out_of_service_area(self, make_resolver):
        with pytest.raises(OutOfServiceArea) as exc_info:
            await make_resolver().resolve("12345")

        assert exc_info.value.zip_code == "12345"
        assert exc_info.value.suggestions

    async def test_municipal_utility_area(self, make_resolver):
        with pytest.raises(OutOfServiceArea) as exc_info:
            await make_resolver().resolve("78205")
        assert not exc_info.value.deregulated

    async def test_invalid_zip(self, make_resolver):
        with pytest.raises(InvalidZipCode):
            await make_resolver().resolve("ABCDE")

    async def test_zip_plus_four_accepted(self, make_resolver):
        result = await make_resolver().resolve("75201-4321")
        assert result.zip_code == "75201"


class TestAddressLookup:
    async def test_split_zip_with_address_is_exact_match(self, make_resolver, esiid_stub):
        result = await make_resolver().resolve("75034", address=FRISCO)

        assert result.method == ResolutionMethod.EXACT_MATCH
        assert result.confidence == Confidence.HIGH
        assert result.tdsp.duns == ONCOR
        assert result.esiid == "10443720000000001"
        assert result.matched_address == "123 Main Street, Frisco, TX 75034"
        assert not result.is_ambiguous

        params = esiid_stub.requests[0].url.params
        assert params["address"] == "123 Main Street"
        assert params["zip_code"] == "75034"

    async def test_exact_match_is_cached(self, make_resolver, esiid_stub):
        resolver = make_resolver()
        await resolver.resolve("75034", address=FRISCO)
        again = await resolver.resolve(
            "75034", address=AddressInfo(street="123 MAIN STREET", city="frisco", zip_code="75034")
        )

        assert again.method == ResolutionMethod.EXACT_MATCH
        assert esiid_stub.calls == 1

    async def test_cached_match_carries_current_warnings(self, make_resolver, esiid_stub):
        resolver = make_resolver()
        await resolver.resolve("75034", address=FRISCO)

        key = f"{normalize_address(FRISCO).cache_key()}|1000"
        cached, hit = await resolver.cache.get(key)
        assert hit
        await resolver.cache.set(key, {**cached, "warnings": ["stale notice"]})

        again = await resolver.resolve("75034", address=FRISCO)

        assert again.method == ResolutionMethod.EXACT_MATCH
        assert again.warnings == []
        assert esiid_stub.calls == 1

    async def test_known_zip_skips_lookup_even_with_address(self, make_resolver, esiid_stub):
        result = await make_resolver().resolve(
            "75201", address=AddressInfo(street="1 Main St", city="Dallas", zip_code="75201")
        )
        assert result.method == ResolutionMethod.SINGLE_CANDIDATE
        assert esiid_stub.calls == 0

    async def test_multiple_territories_require_selection(self, make_resolver, esiid_stub):
        esiid_stub.responder = two_territories
        result = await make_resolver().resolve("75034", address=FRISCO)

        assert result.confidence == Confidence.LOW
        assert result.requires_selection
        assert result.candidate_duns() == [ONCOR, TNMP]
        assert result.method != ResolutionMethod.EXACT_MATCH

    async def test_invalid_address_is_ignored_with_warning(self, make_resolver, esiid_stub):
        result = await make_resolver().resolve(
            "75034", address=AddressInfo(street="Main", city="Frisco", zip_code="75034")
        )

        assert result.requires_address
        assert any("ZIP code 75034 only" in w for w in result.warnings)
        assert esiid_stub.calls == 0

    async def test_mismatched_zip_is_ignored(self, make_resolver, esiid_stub):
        result = await make_resolver().resolve(
            "75034", address=AddressInfo(street="123 Main St", city="Dallas", zip_code="75201")
        )
        assert result.requires_address
        assert esiid_stub.calls == 0

    async def test_resolve_address_is_strict(self, make_resolver):
        with pytest.raises(IncompleteAddress):
            await make_resolver().resolve_address(
                AddressInfo(street="", city="Frisco", zip_code="75034")
            )

    async def test_resolve_address(self, make_resolver):
        result = await make_resolver().resolve_address(FRISCO)
        assert result.method == ResolutionMethod.EXACT_MATCH


class TestLookupFailures:
    async def test_upstream_error_on_split_zip_offers_candidates(self, make_resolver, esiid_stub):
        esiid_stub.responder = lambda request: httpx.Response(502)
        result = await make_resolver().resolve("75034", address=FRISCO)

        assert result.requires_selection
        assert result.confidence == Confidence.LOW
        assert result.candidate_duns() == [ONCOR, TNMP]
        assert result.warnings

    async def test_no_premises_on_unknown_zip_falls_back(self, make_resolver, esiid_stub):
        esiid_stub.responder = lambda request: httpx.Response(200, json=[])
        result = await make_resolver().resolve(
            "77999", address=AddressInfo(street="9 Oak Ln", city="Katy", zip_code="77999")
        )

        assert result.method == ResolutionMethod.GEOGRAPHIC_FALLBACK
        assert result.confidence in (Confidence.MEDIUM, Confidence.LOW)

    async def test_timeout_degrades(self, make_resolver, esiid_stub):
        async def hang(request):
            await asyncio.sleep(10)
            return httpx.Response(200, json=[])

        esiid_stub.responder = hang
        resolver = make_resolver(lookup_timeout=0.05)
        result = await resolver.resolve("75034", address=FRISCO)

        assert result.requires_selection
        assert resolver.get_stats()["lookup_failures"] == 1

    async def test_missing_configuration_is_raised(self, make_resolver, esiid_stub):
        resolver = make_resolver(base_url="")

        with pytest.raises(ConfigurationMissing):
            await resolver.resolve("75034", address=FRISCO)
        assert esiid_stub.calls == 0
        assert resolver.get_stats()["lookup_failures"] == 1

    async def test_unauthorized_is_raised_without_retry(self, make_resolver, esiid_stub):
        esiid_stub.responder = lambda request: httpx.Response(401)

        with pytest.raises(ApiUnauthorized):
            await make_resolver().resolve("75034", address=FRISCO)
        assert esiid_stub.calls == 1

    async def test_fatal_error_on_unknown_zip_skips_fallback(self, make_resolver, esiid_stub):
        esiid_stub.responder = lambda request: httpx.Response(403)

        with pytest.raises(ApiUnauthorized):
            await make_resolver().resolve(
                "77999", address=AddressInfo(street="9 Oak Ln", city="Katy", zip_code="77999")
            )

    async def test_open_breaker_skips_lookup(self, make_resolver, esiid_stub):
        esiid_stub.responder = lambda request: httpx.Response(500)
        resolver = make_resolver()
        await resolver.resolve("75034", address=FRISCO)
        await resolver.resolve("75034", address=FRISCO)
        calls = esiid_stub.calls

        await resolver.resolve("75034", address=FRISCO)
        assert esiid_stub.calls == calls


class TestSelection:
    async def test_selection_is_medium_never_exact(self, make_resolver):
        resolver = make_resolver()
        result = await resolver.resolve("75034")

        selected = resolver.select_alternative(result, TNMP)

        assert selected.tdsp.duns == TNMP
        assert selected.confidence == Confidence.MEDIUM
        assert selected.method == ResolutionMethod.MULTI_CANDIDATE_HEURISTIC
        assert selected.api_params.tdsp_duns == TNMP
        assert [c.tdsp.duns for c in selected.alternatives] == [ONCOR]
        assert not selected.is_ambiguous

    async def test_selecting_primary(self, make_resolver):
        resolver = make_resolver()
        result = await resolver.resolve("75034")
        assert resolver.select_alternative(result, ONCOR).tdsp.duns == ONCOR

    async def test_unknown_selection(self, make_resolver):
        resolver = make_resolver()
        result = await resolver.resolve("75034")

        with pytest.raises(InvalidSelection):
            resolver.select_alternative(result, "999")


class TestConfigurationErrors:
    async def test_without_esiid_source(self, reference, dt_clock):
        resolver = TerritoryResolver(
            reference=reference,
            esiid=None,
            breaker=CircuitBreaker("esiid", clock=dt_clock),
            fallback=TerritoryFallbackChain(reference, ONCOR),
        )

        with pytest.raises(ConfigurationMissing):
            await resolver.resolve("75034", address=FRISCO)
        assert resolver.get_stats()["lookup_failures"] == 1

    async def test_zip_only_needs_no_esiid_source(self, reference, dt_clock):
        resolver = TerritoryResolver(
            reference=reference,
            esiid=None,
            breaker=CircuitBreaker("esiid", clock=dt_clock),
            fallback=TerritoryFallbackChain(reference, ONCOR),
        )

        result = await resolver.resolve("75034")
        assert result.requires_address

    def test_configuration_missing_is_fatal(self):
        assert is_fatal(ConfigurationMissing("x"))
