"""FastAPI server exposing the unfurl endpoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import ValidationError

from linkpeek.config import Settings, get_settings
from linkpeek.fetch import SafeFetcher
from linkpeek.models import HealthResponse, UnfurlRequest, UnfurlResponse
from linkpeek.ratelimit import RATE_LIMITS, SlidingWindowLimiter
from linkpeek.unfurl import (
    FetchFailed,
    SSRFBlocked,
    UnfurlEngine,
    Unfurled,
    ValidationFailed,
)

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("linkpeek.server")

UNFURL_RULE = RATE_LIMITS["unfurl"]

router = APIRouter()


def get_engine(request: Request) -> UnfurlEngine:
    return request.app.state.engine


def get_limiter(request: Request) -> SlidingWindowLimiter:
    return request.app.state.limiter


def current_user(request: Request) -> str:
    """Resolve the caller from an ``Authorization: Bearer`` token."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = request.app.state.settings.api_tokens.get(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse()


@router.post("/unfurl", response_model=UnfurlResponse)
async def unfurl(
    request: Request,
    user_id: str = Depends(current_user),
    engine: UnfurlEngine = Depends(get_engine),
    limiter: SlidingWindowLimiter = Depends(get_limiter),
) -> UnfurlResponse:
    limit = limiter.check_rule(UNFURL_RULE, user_id)
    if not limit.success:
        retry_after = limit.retry_after_seconds(limiter.now())
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers={"Retry-After": str(retry_after)},
        )

    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body.") from exc
    try:
        req = UnfurlRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="URL is required.") from exc

    try:
        outcome = await engine.attempt(req.url)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected unfurl error for user %s", user_id)
        raise HTTPException(status_code=500, detail="An unexpected error occurred.") from exc

    if isinstance(outcome, Unfurled):
        return UnfurlResponse.from_result(outcome.result)
    if isinstance(outcome, ValidationFailed):
        raise HTTPException(status_code=400, detail=outcome.message)
    if isinstance(outcome, SSRFBlocked):
        # The reason stays in the logs; callers must not learn what was probed.
        raise HTTPException(status_code=422, detail="Could not fetch URL.")
    if isinstance(outcome, FetchFailed):
        raise HTTPException(status_code=422, detail=outcome.message)

    logger.error("Unhandled unfurl outcome %r", outcome)
    raise HTTPException(status_code=500, detail="An unexpected error occurred.")


def create_app(
    app_settings: Settings | None = None,
    *,
    engine: UnfurlEngine | None = None,
    limiter: SlidingWindowLimiter | None = None,
) -> FastAPI:
    """Build the application with its own engine and limiter."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.limiter.start()
        try:
            yield
        finally:
            await app.state.limiter.stop()

    app = FastAPI(title="LinkPeek", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.engine = engine or UnfurlEngine(SafeFetcher.from_settings(app_settings))
    app.state.limiter = limiter or SlidingWindowLimiter(sweep_interval_s=app_settings.sweep_interval_s)
    app.include_router(router)
    return app


app = create_app()
