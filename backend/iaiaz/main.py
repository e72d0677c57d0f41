"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .api.routes import router
from .api.organizations import router as organizations_router
from .api.billing import router as billing_router, webhook_router
from .api.admin import router as admin_router
from .core.config import get_settings
from .core.security import SecurityHeadersMiddleware, RequestLoggingMiddleware, limiter
from .db.database import init_db, close_db

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(f"Starting iaiaz in {settings.environment} mode")

    # Validate API keys
    if not any([
        settings.anthropic_api_key,
        settings.google_api_key,
        settings.openai_api_key,
        settings.mistral_api_key,
    ]):
        logger.warning("No AI provider API keys configured. Please set at least one in .env file.")

    if not settings.auth_enabled:
        logger.warning("SUPABASE_JWT_SECRET not set: running without authentication (dev user)")

    # Creates missing tables; in production with PostgreSQL, use Alembic migrations instead
    if settings.auto_migrate:
        logger.info("Initializing database...")
        await init_db()
        logger.info("Database initialized")

    yield

    # Cleanup
    logger.info("Shutting down iaiaz")
    await close_db()


# Create FastAPI app
app = FastAPI(
    title="iaiaz - Pay-per-use AI chat",
    description="Chat with models from several AI providers, paying per token from personal or organization credits.",
    version=VERSION,
    lifespan=lifespan,
)

# Add rate limiter state and exception handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add security middleware (before CORS)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# Configure CORS using settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

# Include API routes
app.include_router(router, prefix="/api/v1", tags=["chat"])
app.include_router(organizations_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")
app.include_router(webhook_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "iaiaz",
        "version": VERSION,
        "description": "Pay-per-use AI chat",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    current = get_settings()

    providers_available = {
        "anthropic": bool(current.anthropic_api_key),
        "google": bool(current.google_api_key),
        "openai": bool(current.openai_api_key),
        "mistral": bool(current.mistral_api_key),
    }

    return {
        "status": "healthy",
        "providers": providers_available,
    }
