"""FastAPI application exposing response recovery and the asset cache."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studio_core import json_repair, maintenance
from studio_core.asset_cache import AssetCache, asset_fingerprint
from studio_core.config import Settings
from studio_core.json_repair import ParseFailure
from studio_core.schemas import (
    AssetPayload,
    AssetResponse,
    CacheStats,
    FingerprintRequest,
    FingerprintResponse,
    NormalizeResponse,
    RawTextRequest,
    ScriptAnalysis,
)
from studio_core.script_analysis import parse_script_analysis

logger = logging.getLogger(__name__)

SETTINGS = Settings.from_env()


def _startup_validate_settings() -> None:
    """Log settings the selected cache backend needs but lacks."""
    missing = SETTINGS.missing_backend_fields()
    if missing:
        logger.warning(
            "Asset cache backend '%s' is missing configuration: %s. "
            "Cache operations will degrade to misses until configured.",
            SETTINGS.asset_cache_backend,
            ", ".join(missing),
        )


def get_asset_cache(request: Request) -> AssetCache:
    """Return the cache opened for this application instance."""
    cache = getattr(request.app.state, "asset_cache", None)
    if cache is None:
        raise HTTPException(503, "Asset cache is not initialized")
    return cache


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: open cache, start sweep scheduler. Shutdown: stop both."""
    _startup_validate_settings()
    cache = AssetCache.from_settings(SETTINGS)
    await cache.open()
    app.state.asset_cache = cache
    if SETTINGS.enable_asset_cache_sweep:
        maintenance.setup_scheduler(cache, SETTINGS.asset_cache_sweep_interval_minutes)
    try:
        yield
    finally:
        maintenance.shutdown_scheduler()
        await cache.close()
        app.state.asset_cache = None


app = FastAPI(
    title="Studio Core API",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_allow_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ParseFailure)
async def parse_failure_handler(request: Request, exc: ParseFailure) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": exc.to_dict()})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/normalize", response_model=NormalizeResponse)
async def normalize_response(body: RawTextRequest):
    """Clean raw model output and return the recovered JSON value."""
    cleaned = json_repair.normalize(body.text)
    data = json_repair.parse_with_repair(
        cleaned,
        original_length=len(body.text),
        max_iterations=SETTINGS.json_repair_max_iterations,
    )
    return NormalizeResponse(cleaned=cleaned, data=data)


@app.post("/script-analysis", response_model=ScriptAnalysis)
async def script_analysis(body: RawTextRequest):
    """Recover a script breakdown with defaults for missing sections."""
    return parse_script_analysis(body.text, max_iterations=SETTINGS.json_repair_max_iterations)


@app.post("/assets/fingerprint", response_model=FingerprintResponse)
async def compute_fingerprint(body: FingerprintRequest):
    return FingerprintResponse(
        fingerprint=asset_fingerprint(
            body.prompt,
            body.style,
            body.resolution,
            body.aspect_ratio,
            body.seed,
        )
    )


@app.get("/assets/stats", response_model=CacheStats)
async def cache_stats(cache: AssetCache = Depends(get_asset_cache)):
    return await cache.stats()


@app.get("/assets/{fingerprint}", response_model=AssetResponse)
async def get_asset(fingerprint: str, cache: AssetCache = Depends(get_asset_cache)):
    """Return a cached asset payload, refreshing its recency."""
    payload = await cache.get(fingerprint)
    if payload is None:
        raise HTTPException(404, "Asset not cached")
    return AssetResponse(fingerprint=fingerprint, payload=payload)


@app.put("/assets/{fingerprint}", status_code=204)
async def put_asset(
    fingerprint: str,
    body: AssetPayload,
    cache: AssetCache = Depends(get_asset_cache),
):
    await cache.put(fingerprint, body.payload)
    return Response(status_code=204)


@app.delete("/assets", status_code=204)
async def clear_assets(cache: AssetCache = Depends(get_asset_cache)):
    await cache.clear()
    return Response(status_code=204)
