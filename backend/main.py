#!/usr/bin/env python3
"""
Harbormaster Backend - Compose stack deployment for Docker endpoints

Stacks come from inline content, an uploaded file or a git repository and
are deployed with `docker compose` onto the endpoint they belong to. Regular
users are held to each endpoint's security settings; administrators and
endpoint administrators are not.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.paths import ensure_data_dirs
from config.settings import AppConfig, HealthCheckFilter, setup_logging
from database import get_database_manager
from deployment import stack_routes
from deployment.errors import StackError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()
    setup_logging()
    ensure_data_dirs()

    logger.info("Starting Harbormaster backend...")

    # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    # Open the database (creates tables on first run)
    db = await asyncio.to_thread(get_database_manager)
    logger.info(f"Database ready at {db.db_path}")

    yield

    logger.info("Shutting down Harbormaster backend...")
    try:
        await asyncio.to_thread(db.engine.dispose)
        logger.info("SQLAlchemy engine disposed")
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")


app = FastAPI(
    title="Harbormaster API",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS - Production ready with environment-based configuration
cors_config = AppConfig.CORS_ORIGINS
if cors_config:
    # Specific origins configured
    origins_list = [origin.strip() for origin in cors_config.split(',')]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    # Allow all origins (API key still required for all endpoints)
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )


@app.exception_handler(StackError)
async def stack_error_handler(request: Request, exc: StackError):
    """Render stack failures as {"message": ..., "details": ...}."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Query and path parameter errors, in the same shape as stack errors."""
    problems = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    logger.warning(f"Invalid query parameters for {request.url.path}: {problems}")

    return JSONResponse(
        status_code=400,
        content={"message": "Invalid query parameter", "details": "; ".join(problems)},
    )


# ==================== API Routes ====================

app.include_router(stack_routes.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for Docker health checks - no authentication required"""
    return {"status": "healthy", "service": "harbormaster-backend"}


if __name__ == "__main__":
    uvicorn.run(app, host=AppConfig.HOST, port=AppConfig.PORT)
