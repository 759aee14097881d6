"""FastAPI app exposing staging loads, fuzzy matching and cache controls.

The app owns one ``QueryCache``; its background sweep runs for the lifetime
of the process. Writes (table loads, applied matches) invalidate the cached
results of the tables they touch.
"""
from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .cache import QueryCache
from .config import settings
from .db import get_session, get_session_maker
from .logging_config import setup_logging
from .models import ContractorUeiMapping
from .pipelines.fuzzy_matching import (
    FuzzyMatchingError,
    get_mapping_stats,
    get_sample_matches,
    run_fuzzy_matching_process,
)
from .pipelines.staging import StagingFileError
from .pipelines.tables import TABLES, get_table_spec, load_table

logger = logging.getLogger(__name__)

MAPPING_STATS_QUERY = "fuzzy_matching.mapping_stats"
MAPPINGS_TABLE = ContractorUeiMapping.__tablename__


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class TableInfo(BaseModel):
    """Registered staging table."""
    key: str
    label: str
    table_name: str
    staging_glob: str


class LoadRequest(BaseModel):
    """Table load options."""
    batch_size: int | None = Field(default=None, ge=1, le=50000)


class LoadResponse(BaseModel):
    """Table load summary."""
    status: str
    table_name: str
    total_processed: int
    total_inserted: int
    total_skipped: int
    total_failed: int
    success: bool
    errors: list[str] = Field(default_factory=list)


class MappingStatsDTO(BaseModel):
    """UEI mapping coverage."""
    total_ueis: int
    mapped_ueis: int
    unmapped_ueis: int
    mapping_percentage: int


class MatchDTO(BaseModel):
    """Single fuzzy match candidate."""
    uei: str
    contractor_name: str
    profile_id: str
    profile_name: str
    similarity: float
    confidence: int
    match_method: str


class FuzzyMatchRequest(BaseModel):
    """Fuzzy matching run options; defaults come from settings."""
    min_similarity: float | None = Field(default=None, ge=0.0, le=1.0)
    min_confidence: int | None = Field(default=None, ge=0, le=100)
    limit: int | None = Field(default=None, ge=1)


class FuzzyMatchResponse(BaseModel):
    """Fuzzy matching run summary."""
    status: str
    found_matches: int
    applied_matches: int
    average_confidence: int
    review_matches: list[MatchDTO] = Field(default_factory=list)
    stats: MappingStatsDTO | None = None


class InvalidateRequest(BaseModel):
    """Cache invalidation; neither field clears everything."""
    pattern: str | None = None
    table: str | None = None


class InvalidateResponse(BaseModel):
    removed: int


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    cache = QueryCache.from_settings(settings.cache)
    cache.start()
    app.state.cache = cache
    logger.info("Application starting up")

    yield

    # Shutdown
    await cache.stop()
    logger.info("Application shutting down")


app = FastAPI(
    title="Contractor Data Loader",
    version="0.1.0",
    description="Staging loads, UEI reconciliation and query caching",
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_cache(request: Request) -> QueryCache:
    """Shared cache; created on demand when the lifespan did not run."""
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        cache = QueryCache.from_settings(settings.cache)
        request.app.state.cache = cache
    return cache


# Exception handlers
@app.exception_handler(StagingFileError)
async def staging_error_handler(request, exc: StagingFileError):
    """Handle unreadable or missing staging files."""
    logger.error(f"Staging file error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="staging_file_error",
            detail=str(exc),
        ).model_dump(),
    )


@app.exception_handler(FuzzyMatchingError)
async def fuzzy_matching_error_handler(request, exc: FuzzyMatchingError):
    """Handle fuzzy matching pipeline errors."""
    logger.error(f"Fuzzy matching error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="fuzzy_matching_error",
            detail=str(exc),
        ).model_dump(),
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=settings.version,
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "tables": "/etl/tables",
            "load_table": "/etl/load/{table_key}",
            "mapping_stats": "/fuzzy-matching/stats",
            "run_fuzzy_matching": "/fuzzy-matching/run",
            "sample_matches": "/fuzzy-matching/sample",
            "cache_stats": "/cache/stats",
            "cache_invalidate": "/cache/invalidate",
            "docs": "/docs",
        },
    }


@app.get("/etl/tables", response_model=list[TableInfo])
async def list_tables() -> list[TableInfo]:
    """List the staging tables that can be loaded."""
    return [
        TableInfo(key=spec.key, label=spec.label, table_name=spec.table_name, staging_glob=spec.staging_glob)
        for spec in TABLES.values()
    ]


@app.post("/etl/load/{table_key}", response_model=LoadResponse)
async def load_staging_table(
    table_key: str,
    request: LoadRequest = LoadRequest(),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    cache: QueryCache = Depends(get_cache),
) -> LoadResponse:
    """Load one table from its staging exports.

    Partial failures are reported in the body, not as an error status.
    """
    try:
        spec = get_table_spec(table_key)
    except KeyError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e.args[0]))

    logger.info(f"Loading table {table_key}")
    progress = await load_table(table_key, session_maker, batch_size=request.batch_size, count_rows=False)
    cache.invalidate_by_table(spec.table_name)

    return LoadResponse(
        status="success" if progress.success else "partial_failure",
        **{k: v for k, v in progress.to_dict().items() if k != "errors"},
        errors=progress.errors[:20],
    )


@app.get("/fuzzy-matching/stats", response_model=MappingStatsDTO)
async def mapping_stats(
    session: AsyncSession = Depends(get_session),
    cache: QueryCache = Depends(get_cache),
) -> MappingStatsDTO:
    """UEI mapping coverage, served from cache while fresh."""
    cached = cache.get(MAPPING_STATS_QUERY)
    if cached is not None:
        return MappingStatsDTO(**cached["data"])

    stats = await get_mapping_stats(session)
    payload = {"data": stats.__dict__.copy(), "metadata": {"table": MAPPINGS_TABLE}}
    cache.set(MAPPING_STATS_QUERY, payload)
    return MappingStatsDTO(**payload["data"])


@app.post("/fuzzy-matching/run", response_model=FuzzyMatchResponse)
async def run_fuzzy_matching(
    request: FuzzyMatchRequest = FuzzyMatchRequest(),
    session: AsyncSession = Depends(get_session),
    cache: QueryCache = Depends(get_cache),
) -> FuzzyMatchResponse:
    """Find and auto-apply fuzzy UEI matches; low-confidence ones are returned for review."""
    run = await run_fuzzy_matching_process(
        session,
        min_similarity=request.min_similarity if request.min_similarity is not None else settings.fuzzy.min_similarity,
        min_confidence=request.min_confidence if request.min_confidence is not None else settings.fuzzy.min_confidence,
        limit=request.limit or settings.fuzzy.limit,
    )
    if run.applied_matches:
        cache.invalidate_by_table(MAPPINGS_TABLE)

    return FuzzyMatchResponse(
        status="success",
        found_matches=run.found_matches,
        applied_matches=run.applied_matches,
        average_confidence=run.average_confidence,
        review_matches=[MatchDTO(**m.__dict__) for m in run.review_matches[:100]],
        stats=MappingStatsDTO(**run.after.__dict__) if run.after else None,
    )


@app.get("/fuzzy-matching/sample", response_model=list[MatchDTO])
async def sample_matches(
    count: int = 20,
    session: AsyncSession = Depends(get_session),
) -> list[MatchDTO]:
    """Preview candidate matches without applying them."""
    if count < 1 or count > 500:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="count must be between 1 and 500")
    matches = await get_sample_matches(session, count)
    return [MatchDTO(**m.__dict__) for m in matches]


@app.get("/cache/stats")
async def cache_stats(cache: QueryCache = Depends(get_cache)) -> dict:
    """Cache size and hit rate."""
    return cache.stats()


@app.post("/cache/invalidate", response_model=InvalidateResponse)
async def cache_invalidate(
    request: InvalidateRequest,
    cache: QueryCache = Depends(get_cache),
) -> InvalidateResponse:
    """Invalidate by table, by pattern, or everything."""
    if request.table:
        return InvalidateResponse(removed=cache.invalidate_by_table(request.table))
    try:
        removed = cache.invalidate(request.pattern)
    except re.error as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid pattern: {e}")
    return InvalidateResponse(removed=removed)
