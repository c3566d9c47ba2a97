"""
Territory resolution - maps a ZIP code or postal address to its TDSP.

Provides:
- TerritoryResolver: Staged ZIP analysis, address lookup and fallback
- TerritoryFallbackChain: Geographic estimates when resolution fails
- TerritoryReference: ZIP, city and split-ZIP reference tables
"""

from powerplans.resolver.address import AddressInfo, NormalizedAddress, normalize_address
from powerplans.resolver.fallback import FallbackStrategy, TerritoryFallbackChain
from powerplans.resolver.models import (
    Confidence,
    ResolutionMethod,
    ResolutionResult,
    SplitZipInfo,
    TdspInfo,
)
from powerplans.resolver.reference import TerritoryReference
from powerplans.resolver.resolver import TerritoryResolver

__all__ = [
    # Address
    "AddressInfo",
    "NormalizedAddress",
    "normalize_address",
    # Models
    "Confidence",
    "ResolutionMethod",
    "ResolutionResult",
    "SplitZipInfo",
    "TdspInfo",
    # Resolution
    "FallbackStrategy",
    "TerritoryFallbackChain",
    "TerritoryReference",
    "TerritoryResolver",
]
