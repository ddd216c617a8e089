from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import logging
import os

from app.core.config import settings
from app.core.csrf import InMemorySessionStore
from app.core.database import engine
from app.core.exceptions import (
    BulletinException,
    ConfigurationError,
    TokenError,
    TokenGenerationError,
)
from app.core.rate_limit import limiter
from app.core.security import TokenCodec
from app.core.timeutils import utcnow
from app.services.revocation_ledger import RevocationCache
from app.api.routes.auth import router as auth_router
from app.api.routes.admin import router as admin_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations():
    """Run database migrations on startup."""
    from alembic.config import Config
    from alembic import command

    logger.info("Running database migrations...")
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Bulletin API...")

    errors = settings.validate_required_secrets()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ConfigurationError("; ".join(errors))

    # A mismatched key pair fails here, before any request is served
    app.state.token_codec = TokenCodec.from_settings()
    app.state.revocation_cache = RevocationCache.from_settings()
    app.state.session_store = InMemorySessionStore()

    # Run migrations in production
    if IS_PRODUCTION:
        run_migrations()

    from app.core.scheduler import start_scheduler, shutdown_scheduler
    if settings.ENABLE_SCHEDULER:
        start_scheduler(app.state.token_codec)

    logger.info("Bulletin API started successfully")
    yield
    # Shutdown
    shutdown_scheduler()
    logger.info("Shutting down Bulletin API...")

# Determine if running in production
IS_PRODUCTION = os.getenv("ENVIRONMENT", "development") == "production"

app = FastAPI(
    title="Bulletin API",
    description="Token lifecycle and revocation service",
    version="1.0.0",
    lifespan=lifespan,
    # Disable docs in production
    docs_url=None if IS_PRODUCTION else "/docs",
    redoc_url=None if IS_PRODUCTION else "/redoc",
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Exception handlers
@app.exception_handler(BulletinException)
async def bulletin_exception_handler(request: Request, exc: BulletinException):
    """Handle custom Bulletin exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error_code": exc.error_code,
        },
        headers=exc.headers,
    )


@app.exception_handler(TokenError)
async def token_exception_handler(request: Request, exc: TokenError):
    """Token errors that reach the boundary. Clients never learn which check failed."""
    if isinstance(exc, (ConfigurationError, TokenGenerationError)):
        logger.error(f"Token infrastructure error: {exc.message}")
        return JSONResponse(
            status_code=500,
            content={
                "detail": "An unexpected error occurred",
                "error_code": "INTERNAL_ERROR",
            },
        )

    logger.info(f"Authentication failed: {exc.error_code}")
    return JSONResponse(
        status_code=401,
        content={
            "detail": "Invalid or expired credentials",
            "error_code": "INVALID_CREDENTIALS",
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    """Handle database errors."""
    logger.error(f"Database error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "A database error occurred",
            "error_code": "DATABASE_ERROR",
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An unexpected error occurred",
            "error_code": "INTERNAL_ERROR",
        },
    )

# Configure CORS with tightened settings
allowed_origins = [settings.FRONTEND_URL]
if not IS_PRODUCTION:
    # Allow localhost variations in development
    allowed_origins.extend([
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-CSRF-Token",
        "X-Device-Id",
    ],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    max_age=600,  # Cache preflight requests for 10 minutes
)

# Include routers
app.include_router(auth_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/")
def root():
    return {"message": "Welcome to Bulletin API"}


@app.get("/health")
def health_check():
    """Health check endpoint for load balancers and monitoring."""
    health_status = {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": "1.0.0",
    }

    # Check database connectivity
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"

    return health_status
