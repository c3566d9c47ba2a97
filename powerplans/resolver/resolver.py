"""
TerritoryResolver - ZIP code / address to TDSP resolution.

Escalation:
1. ZIP analysis against reference data. A known single-territory ZIP is
   answered immediately. A known split ZIP without an address is answered
   with a low-confidence guess plus every candidate, and asks for an address.
2. Address-level lookup through the ESIID upstream, only when the ZIP alone
   cannot decide. One territory among the premises is an exact match;
   several are returned for the user to choose from, never auto-picked.
3. Lookup failures and unknown ZIPs fall back to TerritoryFallbackChain.
   Authorization and configuration errors are raised instead.
"""

import asyncio
from collections import Counter
from typing import Any

from loguru import logger
from pydantic import ValidationError

from powerplans.datasource.esiid import EsiidSource, TerritoryTally, rank_territories
from powerplans.resolver.address import (
    AddressInfo,
    NormalizedAddress,
    normalize_address,
    validate_zip,
)
from powerplans.resolver.fallback import TerritoryFallbackChain
from powerplans.resolver.models import (
    ApiParams,
    Confidence,
    ResolutionMethod,
    ResolutionResult,
    SplitZipInfo,
    TdspCandidate,
    TdspInfo,
)
from powerplans.resolver.reference import TerritoryReference
from powerplans.services.circuit_breaker import CircuitBreaker
from powerplans.services.errors import (
    AddressValidationFailed,
    ConfigurationMissing,
    InvalidSelection,
    OutOfServiceArea,
    ResolutionFailed,
    ResolutionTimeout,
    ServiceError,
    is_fatal,
)
from powerplans.services.retry import RetryPolicy, Sleep, call_through_breaker
from powerplans.services.tiered_cache import CacheTierManager, ContentType


class TerritoryResolver:
    """
    Usage:
        resolver = TerritoryResolver(reference, esiid_source, breaker, fallback)
        result = await resolver.resolve("75034")
        if result.requires_address:
            result = await resolver.resolve("75034", address=AddressInfo(...))
    """

    def __init__(
        self,
        reference: TerritoryReference,
        esiid: EsiidSource | None,
        breaker: CircuitBreaker,
        fallback: TerritoryFallbackChain,
        cache: CacheTierManager | None = None,
        retry_policy: RetryPolicy | None = None,
        lookup_timeout: float = 5.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.reference = reference
        self.esiid = esiid
        self.breaker = breaker
        self.fallback = fallback
        self.cache = cache
        self._retry_policy = retry_policy or RetryPolicy(max_retries=1)
        self._lookup_timeout = lookup_timeout
        self._sleep = sleep
        self._methods: Counter[str] = Counter()
        self._lookup_failures = 0

    async def resolve(
        self,
        zip_code: str,
        address: AddressInfo | None = None,
        usage: int = 1000,
    ) -> ResolutionResult:
        """
        Resolve a ZIP code, optionally refined by an address.

        An address that fails validation is ignored with a warning and the
        ZIP is resolved on its own.

        Raises:
            InvalidZipCode: zip_code is malformed
            OutOfServiceArea: zip_code is outside the served region
            ResolutionFailed: Nothing, including the fallback chain, resolved it
            ApiUnauthorized / ConfigurationMissing: Address lookup is unusable
        """
        zip5 = validate_zip(zip_code)
        warnings: list[str] = []
        normalized = None

        if address is not None:
            try:
                normalized = normalize_address(address)
            except AddressValidationFailed as e:
                warnings.append(
                    f"{e.user_message} Showing results for ZIP code {zip5} only."
                )
            else:
                if normalized.zip_code != zip5:
                    warnings.append(
                        f"Address ZIP {normalized.zip_code} does not match {zip5}; "
                        "the address was ignored."
                    )
                    normalized = None

        result = await self._resolve(zip5, normalized, usage, warnings)
        self._methods[result.method.value] += 1
        return result

    async def resolve_address(
        self, address: AddressInfo, usage: int = 1000
    ) -> ResolutionResult:
        """
        Resolve a full address. Unlike resolve(), validation errors are raised.

        Raises:
            IncompleteAddress / InvalidZipCode: Address failed validation
            ApiUnauthorized / ConfigurationMissing: Address lookup is unusable
        """
        normalized = normalize_address(address)
        result = await self._resolve(normalized.zip_code, normalized, usage, [])
        self._methods[result.method.value] += 1
        return result

    async def _resolve(
        self,
        zip5: str,
        normalized: NormalizedAddress | None,
        usage: int,
        warnings: list[str],
    ) -> ResolutionResult:
        if not self.reference.is_in_service_area(zip5):
            raise OutOfServiceArea(zip5, self.reference.suggestions)

        split = self.reference.split_zip(zip5)
        city_slug = self.reference.city_for_zip(zip5)
        if split is None and not self.reference.is_deregulated_city(city_slug):
            raise OutOfServiceArea(zip5, self.reference.suggestions, deregulated=False)

        if split is None:
            tdsp = self.reference.territory_for_zip(zip5)
            if tdsp is not None:
                return ResolutionResult(
                    zip_code=zip5,
                    tdsp=tdsp,
                    confidence=Confidence.HIGH,
                    method=ResolutionMethod.SINGLE_CANDIDATE,
                    city_slug=city_slug,
                    warnings=warnings,
                    api_params=ApiParams(tdsp_duns=tdsp.duns, display_usage=usage),
                )
            if normalized is None:
                return self.fallback.resolve(zip5, usage=usage, warnings=warnings)
        elif normalized is None:
            return self._split_candidates(
                zip5,
                split,
                city_slug,
                usage,
                [*warnings, "This ZIP code is served by more than one provider. "
                 "Enter your address to find yours."],
                requires_address=True,
            )

        try:
            return await self._resolve_by_address(zip5, normalized, city_slug, usage, warnings)
        except ServiceError as e:
            self._lookup_failures += 1
            if is_fatal(e):
                logger.error(f"Address lookup unavailable for {zip5}: {e.code}: {e}")
                raise
            logger.warning(f"Address lookup failed for {zip5}: {e.code}: {e}")
            degraded = [
                *warnings,
                "We couldn't verify your address right now; "
                "the provider shown is an estimate.",
            ]
            if split is not None:
                return self._split_candidates(
                    zip5, split, city_slug, usage, degraded, requires_address=False
                )
            return self.fallback.resolve(
                zip5, city=normalized.city, usage=usage, cause=e, warnings=degraded
            )

    def _split_candidates(
        self,
        zip5: str,
        split: SplitZipInfo,
        city_slug: str | None,
        usage: int,
        warnings: list[str],
        requires_address: bool,
    ) -> ResolutionResult:
        primary, *others = split.candidates
        return ResolutionResult(
            zip_code=zip5,
            tdsp=primary,
            confidence=Confidence.LOW,
            method=ResolutionMethod.MULTI_CANDIDATE_HEURISTIC,
            city_slug=city_slug,
            alternatives=[
                TdspCandidate(tdsp=t, confidence=Confidence.LOW) for t in others
            ],
            requires_address=requires_address,
            requires_selection=not requires_address,
            split_zip_info=split,
            warnings=warnings,
            api_params=ApiParams(tdsp_duns=primary.duns, display_usage=usage),
        )

    async def _resolve_by_address(
        self,
        zip5: str,
        normalized: NormalizedAddress,
        city_slug: str | None,
        usage: int,
        warnings: list[str],
    ) -> ResolutionResult:
        cache_key = f"{normalized.cache_key()}|{usage}"
        if self.cache is not None:
            cached, hit = await self.cache.get(cache_key)
            if hit:
                try:
                    result = ResolutionResult.model_validate(cached)
                except ValidationError:
                    await self.cache.invalidate(cache_key)
                else:
                    # Warnings belong to the request, not the cached match
                    return result.model_copy(update={"warnings": list(warnings)})

        if self.esiid is None or not self.esiid.is_configured():
            raise ConfigurationMissing("ESIID lookup is not configured", service_id="esiid")

        try:
            records = await asyncio.wait_for(
                call_through_breaker(
                    self.breaker,
                    lambda: self.esiid.search(normalized.street_line, zip5),
                    self._retry_policy,
                    operation_name=f"esiid_search[{zip5}]",
                    sleep=self._sleep,
                ),
                timeout=self._lookup_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ResolutionTimeout(self._lookup_timeout, service_id="esiid") from e

        if not records:
            raise ResolutionFailed(
                f"No premises found for {normalized.full_address}", service_id="esiid"
            )

        ranked = rank_territories(records)
        primary = ranked[0]
        tdsp = self._tdsp_for(primary)
        split = self.reference.split_zip(zip5)

        if len(ranked) == 1:
            result = ResolutionResult(
                zip_code=zip5,
                tdsp=tdsp,
                confidence=Confidence.HIGH,
                method=ResolutionMethod.EXACT_MATCH,
                city_slug=city_slug or self.reference.default_city_for(tdsp),
                matched_address=normalized.full_address,
                esiid=primary.esiid,
                split_zip_info=split,
                warnings=warnings,
                api_params=ApiParams(tdsp_duns=tdsp.duns, display_usage=usage),
            )
            if self.cache is not None:
                await self.cache.set(
                    cache_key,
                    result.model_dump(mode="json"),
                    content=ContentType.RESOLUTION,
                    tags=["resolution"],
                )
            return result

        return ResolutionResult(
            zip_code=zip5,
            tdsp=tdsp,
            confidence=Confidence.LOW,
            method=ResolutionMethod.MULTI_CANDIDATE_HEURISTIC,
            city_slug=city_slug or self.reference.default_city_for(tdsp),
            matched_address=normalized.full_address,
            esiid=primary.esiid,
            alternatives=[
                TdspCandidate(
                    tdsp=self._tdsp_for(tally),
                    confidence=Confidence.LOW,
                    esiid=tally.esiid,
                    address=normalized.full_address,
                )
                for tally in ranked[1:]
            ],
            requires_selection=True,
            split_zip_info=split,
            warnings=[
                *warnings,
                "More than one provider serves this address. Please choose yours.",
            ],
            api_params=ApiParams(tdsp_duns=tdsp.duns, display_usage=usage),
        )

    def _tdsp_for(self, tally: TerritoryTally) -> TdspInfo:
        known = self.reference.by_duns(tally.duns)
        if known is not None:
            return known
        return TdspInfo(code=tally.duns, duns=tally.duns, name=tally.name, zone="Unknown")

    def select_alternative(self, result: ResolutionResult, duns: str) -> ResolutionResult:
        """
        Commit to one of result's candidate territories.

        The selection is the user's, not a verified match: it comes back as
        medium confidence and never as exact-match.

        Raises:
            InvalidSelection: duns is not among the result's candidates
        """
        candidates = [
            TdspCandidate(
                tdsp=result.tdsp, confidence=Confidence.LOW, esiid=result.esiid
            ),
            *result.alternatives,
        ]
        chosen = next((c for c in candidates if c.tdsp.duns == duns), None)
        if chosen is None:
            raise InvalidSelection(
                f"Territory {duns} is not a candidate for ZIP {result.zip_code}"
            )

        others = [
            TdspCandidate(tdsp=c.tdsp, confidence=Confidence.LOW, esiid=c.esiid, address=c.address)
            for c in candidates
            if c.tdsp.duns != duns
        ]
        self._methods["selection"] += 1
        return ResolutionResult(
            zip_code=result.zip_code,
            tdsp=chosen.tdsp,
            confidence=Confidence.MEDIUM,
            method=ResolutionMethod.MULTI_CANDIDATE_HEURISTIC,
            city_slug=result.city_slug,
            matched_address=result.matched_address,
            esiid=chosen.esiid,
            alternatives=others,
            split_zip_info=result.split_zip_info,
            warnings=[*result.warnings, f"Provider selected: {chosen.tdsp.name}."],
            api_params=ApiParams(
                tdsp_duns=chosen.tdsp.duns,
                display_usage=result.api_params.display_usage,
            ),
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "methods": dict(self._methods),
            "lookup_failures": self._lookup_failures,
            "fallback_strategies": self.fallback.get_stats(),
            "esiid_breaker": self.breaker.get_status(),
        }
