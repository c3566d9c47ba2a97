"""FastAPI server for ZIP validation, territory resolution and plan listings."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from loguru import logger

from powerplans.api.schemas import (
    ResolveRequest,
    SelectRequest,
    TdspPayload,
    ZipValidationRequest,
    ZipValidationResponse,
    resolution_response,
)
from powerplans.container import ServiceContainer
from powerplans.exceptions import register_exception_handlers
from powerplans.models import PlanQuery, RateType
from powerplans.resolver.models import ResolutionResult


def redirect_target(city_slug: Optional[str]) -> Optional[str]:
    if not city_slug:
        return None
    return f"/electricity-plans/{city_slug}/"


class PlansServer:
    """HTTP server exposing the resolver and plan client."""

    def __init__(self, container: ServiceContainer, manage_lifecycle: bool = True):
        self.container = container
        self.app = FastAPI(
            title="Power Plans API",
            lifespan=self._lifespan if manage_lifecycle else None,
        )
        register_exception_handlers(self.app)

        # Register routes
        self.app.post(
            "/api/zip/validate", dependencies=[Depends(self.check_zip_rate_limit)]
        )(self.validate_zip)
        self.app.post("/api/resolve")(self.resolve)
        self.app.post("/api/resolve/select")(self.select)
        self.app.get("/api/plans")(self.list_plans)
        self.app.get("/health")(self.health_check)
        self.app.get("/admin/cache/stats")(self.cache_stats)
        self.app.post("/admin/cache/clear")(self.clear_cache)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.container.start()
        logger.info("Power plans API started")
        try:
            yield
        finally:
            await self.container.close()

    async def check_zip_rate_limit(self, request: Request) -> None:
        """Per-client sliding window; raises ApiRateLimited (429) when exhausted."""
        client_key = request.client.host if request.client else "unknown"
        self.container.zip_limiter.acquire(client_key)

    async def validate_zip(self, body: ZipValidationRequest):
        """Resolve a ZIP to its territory and city page.

        The plan count is best effort: it is omitted when the plan lookup
        does not finish within the configured budget.
        """
        result = await self.container.resolver.resolve(
            body.zip_code, usage=self.container.settings.default_usage
        )
        city_slug = result.city_slug or body.city_slug
        plan_count = await self.container.plans.count_plans(
            PlanQuery(
                territory_id=result.tdsp.duns,
                usage=self.container.settings.default_usage,
            ),
            timeout=self.container.settings.zip_validation_plan_timeout,
        )
        logger.debug(
            f"ZIP {result.zip_code} -> {result.tdsp.code} "
            f"({result.confidence.value}, {result.method.value})"
        )
        response = ZipValidationResponse(
            zip_code=result.zip_code,
            is_valid=True,
            tdsp=TdspPayload(**result.tdsp.model_dump()),
            city_slug=city_slug,
            redirect_target=redirect_target(city_slug),
            available_plan_count=plan_count,
            confidence=result.confidence.value,
            requires_address=result.requires_address,
            alternatives=[TdspPayload(**c.tdsp.model_dump()) for c in result.alternatives],
            warnings=list(result.warnings),
        )
        return response.model_dump(by_alias=True)

    async def _resolve_request(self, zip_code: str, body) -> ResolutionResult:
        address = body.address.to_address_info() if body.address else None
        return await self.container.resolver.resolve(zip_code, address=address, usage=body.usage)

    async def resolve(self, body: ResolveRequest):
        """Resolve a ZIP code, refined by an address when one is given."""
        result = await self._resolve_request(body.zip_code, body)
        return resolution_response(result, include_alternatives=body.return_alternatives)

    async def select(self, body: SelectRequest):
        """Re-resolve the request and commit to the user's chosen territory."""
        result = await self._resolve_request(body.zip_code, body)
        selected = self.container.resolver.select_alternative(result, body.duns_id)
        return resolution_response(selected)

    async def list_plans(
        self,
        tdsp: str = Query(..., min_length=1),
        usage: int = Query(1000, gt=0, le=10000),
        term: Optional[int] = Query(None, gt=0, le=60),
        rate_type: Optional[RateType] = Query(None, alias="rateType"),
        green: Optional[int] = Query(None, ge=0, le=100),
    ):
        query = PlanQuery(
            territory_id=tdsp,
            usage=usage,
            term_months=term,
            rate_type=rate_type,
            green_percent=green,
        )
        result = await self.container.plans.fetch_plans(query)
        return {
            "success": True,
            "source": result.source.value,
            "degraded": result.degraded,
            "warnings": list(result.warnings),
            "capturedAt": result.captured_at.isoformat() if result.captured_at else None,
            "count": result.plan_count,
            "plans": [plan.model_dump(mode="json") for plan in result.plans],
        }

    async def health_check(self):
        """Health check endpoint."""
        return await self.container.health()

    async def cache_stats(self):
        return self.container.cache.stats()

    async def clear_cache(self, tag: Optional[str] = None):
        removed = await self.container.plans.clear_cache(tag)
        logger.info(f"Cache cleared ({tag or 'all'}): {removed} entries")
        return {"cleared": removed, "tag": tag}


def create_app(container: ServiceContainer, manage_lifecycle: bool = True) -> FastAPI:
    """Create the FastAPI app.

    Args:
        container: Wired services
        manage_lifecycle: Start and close the container with the app

    Returns:
        FastAPI app
    """
    server = PlansServer(container, manage_lifecycle=manage_lifecycle)
    return server.app
