"""Request and response bodies for the HTTP API (camelCase on the wire)."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from powerplans.resolver.address import AddressInfo
from powerplans.resolver.models import ResolutionResult


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ZipValidationRequest(ApiModel):
    zip_code: str = Field(alias="zipCode", pattern=r"^\d{5}$")
    city_slug: str = Field(alias="citySlug", min_length=1)
    session_id: str | None = Field(default=None, alias="sessionId")


class TdspPayload(ApiModel):
    code: str
    duns: str
    name: str
    zone: str


class ZipValidationResponse(ApiModel):
    zip_code: str = Field(serialization_alias="zipCode")
    is_valid: bool = Field(serialization_alias="isValid")
    tdsp: TdspPayload | None = None
    city_slug: str | None = Field(default=None, serialization_alias="citySlug")
    redirect_target: str | None = Field(default=None, serialization_alias="redirectTarget")
    available_plan_count: int | None = Field(
        default=None, serialization_alias="availablePlanCount"
    )
    confidence: str | None = None
    requires_address: bool = Field(default=False, serialization_alias="requiresAddress")
    alternatives: list[TdspPayload] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class AddressPayload(ApiModel):
    street: str
    city: str
    state: str = "TX"
    zip_code: str = Field(alias="zipCode")
    zip4: str | None = None
    unit: str | None = None

    def to_address_info(self) -> AddressInfo:
        return AddressInfo(
            street=self.street,
            city=self.city,
            state=self.state,
            zip_code=self.zip_code,
            zip4=self.zip4,
            unit=self.unit,
        )


class ResolveRequest(ApiModel):
    zip_code: str = Field(alias="zipCode")
    address: AddressPayload | None = None
    usage: int = Field(default=1000, gt=0, le=10000)
    return_alternatives: bool = Field(default=True, alias="returnAlternatives")


class SelectRequest(ApiModel):
    zip_code: str = Field(alias="zipCode")
    address: AddressPayload | None = None
    duns_id: str = Field(alias="dunsId")
    usage: int = Field(default=1000, gt=0, le=10000)


def resolution_response(
    result: ResolutionResult, include_alternatives: bool = True
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": True,
        "resolution": result.to_public(),
        "apiParams": result.api_params.model_dump(),
        "splitZipInfo": None,
        "alternatives": [],
    }
    if result.split_zip_info is not None:
        info = result.split_zip_info
        body["splitZipInfo"] = {
            "isKnownSplit": info.is_known_ambiguous,
            "boundaryType": info.boundary_granularity.value,
            "notes": info.notes,
            "candidates": [t.model_dump() for t in info.candidates],
        }
    if include_alternatives:
        body["alternatives"] = [
            {
                "tdsp": c.tdsp.model_dump(),
                "confidence": c.confidence.value,
                "esiid": c.esiid,
                "address": c.address,
            }
            for c in result.alternatives
        ]
    return body
