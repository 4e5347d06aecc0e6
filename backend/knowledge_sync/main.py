# ============================================================================
# Knowledge Sync - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for Knowledge Sync.

This module sets up the FastAPI application with:
- CORS middleware configuration for cross-origin requests
- Application startup/shutdown event handlers
- Error handlers returning ErrorResponse bodies
- API router integration

Usage:
    Direct: python -m knowledge_sync.main
    Docker: uvicorn knowledge_sync.main:app --host 0.0.0.0 --port 8000

Background work (sync runs, downloads) runs in Celery workers:
    celery -A knowledge_sync.celery_app worker -Q sync,downloads
"""

import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .api.v1 import api_router
from .config import settings
from .core.shared.database_service import database_service
from .models import ErrorResponse

logger = logging.getLogger("knowledge_sync.api")

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Knowledge Sync API\n\n"
        "Mirrors remote document trees, manages subscriptions and downloads "
        "subscribed files into object storage with optional text extraction."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# ============================================================================
# MIDDLEWARE CONFIGURATION
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# ============================================================================
# APPLICATION EVENT HANDLERS
# ============================================================================

@app.on_event("startup")
async def startup_event() -> None:
    """
    Configure logging and make sure the schema exists.

    Raises:
        Exception: If the database cannot be initialized
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"Starting Knowledge Sync {settings.api_version} (debug={settings.debug})")

    try:
        await database_service.init_db()
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down Knowledge Sync...")
    try:
        await database_service.close()
    except Exception as e:
        logger.warning(f"Shutdown cleanup warning: {e}")


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies and parameters become a 422 ErrorResponse."""
    error_response = ErrorResponse(
        error="Validation Error",
        detail=str(exc.errors()),
        timestamp=datetime.now(),
    )
    return JSONResponse(status_code=422, content=error_response.model_dump(mode="json"))


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    error_response = ErrorResponse(
        error="Validation Error",
        detail=str(exc),
        timestamp=datetime.now(),
    )
    return JSONResponse(status_code=422, content=error_response.model_dump(mode="json"))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error_response = ErrorResponse(
        error=f"HTTP {exc.status_code}",
        detail=str(exc.detail),
        timestamp=datetime.now(),
    )
    return JSONResponse(status_code=exc.status_code, content=error_response.model_dump(mode="json"))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all for unexpected errors.

    The exception text is only exposed in debug mode.
    """
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    error_response = ErrorResponse(
        error="Internal Server Error",
        detail=str(exc) if settings.debug else "An unexpected error occurred",
        timestamp=datetime.now(),
    )
    return JSONResponse(status_code=500, content=error_response.model_dump(mode="json"))


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

app.include_router(api_router, prefix="/api/v1")

# ============================================================================
# ROOT ENDPOINT
# ============================================================================

@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
        "docs_url": "/docs",
        "health_check": "/api/v1/health",
        "timestamp": datetime.now(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "knowledge_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
