"""
FastAPI Server for the Coin Advisor review pipeline
Serves review control endpoints and the recommendation feeds
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from config.config import (
    ALLOWED_ORIGINS,
    API_RATE_LIMIT,
    REVIEW_SCHEDULER_IN_API,
    validate_config,
)
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import dispose_engine
from src.api.reviews import router as reviews_router, recommendations_router
from src.services.review.factory import build_pipeline

# Setup logging at module level (must run before app creation)
# This ensures logging works when uvicorn imports the module
setup_logging("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events
    """
    # Startup
    logger.info("Starting Coin Advisor API Server...")
    init_sentry()

    # NOTE: Database tables managed by Alembic migrations
    # Run: alembic upgrade head

    pipeline = build_pipeline()
    app.state.review_pipeline = pipeline

    if REVIEW_SCHEDULER_IN_API:
        await pipeline.controller.restore()
        pipeline.scheduler.start()
        logger.info("Review scheduler started in API process")

    yield

    # Shutdown
    logger.info("Shutting down Coin Advisor API Server...")

    pipeline.scheduler.stop()
    await pipeline.controller.wait_idle()

    close = getattr(pipeline.market, "close", None)
    if close is not None:
        await close()

    await dispose_engine()
    logger.info("Database connections closed")


# Rate limiter per IP address
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[API_RATE_LIMIT],
    storage_uri="memory://",
)

app = FastAPI(
    title="Coin Advisor Review API",
    description="Adaptive review pipeline: BUY discoveries and portfolio SELL advice",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """
    Add security headers to every response
    """
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    if os.getenv("ENVIRONMENT") == "production" and request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


app.include_router(reviews_router, prefix="/api")
app.include_router(recommendations_router, prefix="/api")


# Root endpoint
@app.get("/")
async def root():
    return {
        "service": "Coin Advisor Review API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


# Health check endpoint
@app.get("/health")
async def health():
    return {"status": "healthy"}


# Error handler for HTTPException (must be before generic Exception handler)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTPException properly - return correct status code and detail
    """
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")

    content = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


# Error handler for unexpected exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    validate_config()
    logger.info("Configuration validated successfully")

    uvicorn.run(
        "api_server:app",
        host="127.0.0.1",
        port=8003,
        log_level="info",
    )
