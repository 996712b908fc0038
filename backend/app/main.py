import logging
import sys
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .errors import error_body, setup_error_handlers
from .db import db
from .config import Settings, settings
from .entries import router as entries_router
from .photos import router as photos_router
from .stats import router as stats_router
from .schemas import HealthResponse
from .tasks import background_tasks
from .observability import (
    REQUEST_ID_HEADER,
    reset_request_context,
    set_request_context,
    duration_ms,
    generate_request_id,
    log_ctx,
    log_ctx_json,
    validate_request_id,
)

SERVICE_NAME = "snapmeal-api"
SERVICE_VERSION = "0.1.0"

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("snapmeal-api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting SnapMeal API...")
    logger.info(
        "Startup CORS config: origins=%s origin_regex=%s credentials=%s",
        settings.get_cors_allow_origins(),
        settings.get_cors_allow_origin_regex() or "",
        settings.cors_allows_credentials(),
    )
    logger.info(
        "Startup auth mode: %s",
        "local_jwt" if settings.uses_local_jwt_verification() else "remote_supabase",
    )
    await db.create_pool()
    yield
    logger.info("Shutting down SnapMeal API, waiting for %s analysis task(s)...", background_tasks.pending_count)
    await background_tasks.drain(timeout=settings.BACKGROUND_DRAIN_TIMEOUT_SEC)
    await db.close_pool()

app = FastAPI(
    title="SnapMeal API",
    description="Food photo upload with background nutrition analysis",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


def cors_options(config: Settings) -> dict:
    # Browser preflights are answered here, so a narrowed allowlist also
    # applies to /v1/analyze-food-photo. Only bare OPTIONS reach the route.
    return {
        "allow_origins": config.get_cors_allow_origins(),
        "allow_origin_regex": config.get_cors_allow_origin_regex(),
        "allow_credentials": config.cors_allows_credentials(),
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Authorization", "Content-Type", "X-Client-Info", "apikey", "X-Request-Id"],
        "expose_headers": [REQUEST_ID_HEADER],
    }


app.add_middleware(CORSMiddleware, **cors_options(settings))


@app.middleware("http")
async def request_observability_middleware(request: Request, call_next):
    started_at = time.monotonic()

    incoming_request_id = request.headers.get(REQUEST_ID_HEADER)
    if incoming_request_id is None:
        request_id = generate_request_id()
    else:
        if not validate_request_id(incoming_request_id):
            request_id = generate_request_id()
            request.state.request_id = request_id
            response = JSONResponse(
                status_code=400,
                content=error_body(
                    "Invalid X-Request-Id header",
                    "VALIDATION_FAILED",
                    {
                        "fieldErrors": [
                            {
                                "field": "header.X-Request-Id",
                                "issue": "must be non-empty and <= 128 chars",
                            }
                        ]
                    },
                ),
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.warning(
                "REQUEST_REJECTED context=%s",
                log_ctx_json(
                    log_ctx(
                        request,
                        extra={
                            "status_code": 400,
                            "duration_ms": duration_ms(started_at),
                            "reason": "invalid_x_request_id",
                        },
                    )
                ),
            )
            return response
        request_id = incoming_request_id.strip()

    request.state.request_id = request_id
    context_tokens = set_request_context(request_id=request_id, path=request.url.path)
    try:
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "REQUEST_DONE context=%s",
            log_ctx_json(
                log_ctx(
                    request,
                    extra={
                        "status_code": response.status_code,
                        "duration_ms": duration_ms(started_at),
                    },
                )
            ),
        )
        return response
    finally:
        reset_request_context(context_tokens)

setup_error_handlers(app)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
@app.get("/v1/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    db_status = await db.db_check()
    return HealthResponse(
        status="ok",
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        db=db_status,
    )

app.include_router(photos_router)
app.include_router(entries_router)
app.include_router(stats_router)
