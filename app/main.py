"""
Sol Numérique - Main Application Entry Point
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import IntegrityError
from app.api import auth_routes, users, sols, tours, transfers, payments, admin, export
from app.config import settings
from app.core.exceptions import SolNumeriqueError
from app.db import init_db, close_db
from app.db import connection
from app.services.storage_service import get_storage_service
from app.services.tour_scheduler import periodic_tour_check_task
from app.services.user_service import UserService
from app.version import __version__
import logging
import asyncio
import re

APP_NAME = "Sol Numérique"


# Custom logging filter to redact sensitive data
class SensitiveDataFilter(logging.Filter):
    """Filter to redact sensitive data from logs"""

    def filter(self, record):
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # Redact JWT tokens
            if 'eyJ' in msg:
                msg = re.sub(r'eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*', '[JWT_REDACTED]', msg)

            # Redact Stripe secret / webhook keys
            msg = re.sub(r'\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]{8,}\b', '[STRIPE_KEY_REDACTED]', msg)

            # Redact IBAN-like account numbers (keep the last 4 characters)
            msg = re.sub(r'\b([A-Z]{2}\d{2}[A-Z0-9]{6,26})([A-Z0-9]{4})\b', r'****\2', msg)

            record.msg = msg
        return True


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Add filter to all loggers
for handler in logging.root.handlers:
    handler.addFilter(SensitiveDataFilter())

logger = logging.getLogger(__name__)


async def _ensure_bootstrap_admin():
    """Create or promote the ADMIN_EMAIL account when configured."""
    if not (settings.admin_email and settings.admin_password):
        return
    try:
        async with connection.session_scope() as db:
            await UserService.ensure_admin(db, settings.admin_email, settings.admin_password)
    except Exception as e:
        logger.error(f"❌ Failed to ensure bootstrap admin: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown"""
    # Startup
    logger.info(f"🚀 Starting {APP_NAME}")
    logger.info(f"📦 Version: {__version__}")
    logger.info(f"📝 Environment: {settings.environment}")

    await init_db()

    # Receipts directory
    try:
        upload_dir = get_storage_service().ensure_directory()
        logger.info(f"✅ Upload directory ready: {upload_dir}")
    except OSError as e:
        logger.error(f"❌ Failed to create upload directory: {e}")
        # Non-fatal - retried on first upload

    await _ensure_bootstrap_admin()

    tour_task = None
    if settings.tour_check_interval_seconds > 0:
        tour_task = asyncio.create_task(periodic_tour_check_task(settings.tour_check_interval_seconds))
        logger.info("✅ Tour check task started")

    if not settings.stripe_enabled:
        logger.warning("⚠️  STRIPE_SECRET_KEY not set - online payments disabled")
    if not settings.email_enabled:
        logger.warning("⚠️  SMTP_HOST not set - emails will be logged, not sent")

    logger.info("✅ Configuration loaded successfully")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if tour_task:
        tour_task.cancel()
        try:
            await tour_task
        except asyncio.CancelledError:
            logger.info("✅ Tour check task cancelled")

    await close_db()


app = FastAPI(
    title=APP_NAME,
    description="Rotating savings groups (sols): contributions, tours and payouts",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)


# ============================================
# CORS Middleware Configuration
# ============================================

# Development origins (local frontend dev server)
dev_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",  # Vite dev server
]

# Set CORS_ORIGINS env var as comma-separated list: "https://example.com,https://www.example.com"
production_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]

allowed_origins = dev_origins + production_origins
if settings.frontend_url not in allowed_origins:
    allowed_origins.append(settings.frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)

logger.info(f"✅ CORS configured for origins: {allowed_origins}")


# ============================================
# Error handlers
# ============================================
# Every error body has the shape {"error": "<message>"}

@app.exception_handler(SolNumeriqueError)
async def service_exception_handler(request: Request, exc: SolNumeriqueError):
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
    content = {"error": exc.message}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(IntegrityError)
async def integrity_exception_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity error on {request.method} {request.url.path}: {exc.orig}")
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"error": "Duplicate entry"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors and answer 400 with field-level details"""
    logger.warning(f"Validation error for {request.method} {request.url.path}: {exc.errors()}")
    details = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Validation failed", "details": details}
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if exc.status_code == status.HTTP_404_NOT_FOUND and detail == "Not Found":
        detail = "Route not found"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": detail},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"}
    )


# ============================================
# Routes
# ============================================

app.include_router(auth_routes.router, prefix="/api", tags=["auth"])
app.include_router(users.router, prefix="/api", tags=["users"])
app.include_router(sols.router, prefix="/api", tags=["sols"])
app.include_router(tours.router, prefix="/api", tags=["tours"])
app.include_router(transfers.router, prefix="/api", tags=["transfers"])
app.include_router(payments.router, prefix="/api", tags=["payments"])
app.include_router(admin.router, prefix="/api", tags=["admin"])
app.include_router(export.router, prefix="/api", tags=["export"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "app": APP_NAME,
        "version": __version__,
        "status": "running",
        "environment": settings.environment,
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment
    }


@app.get("/health/db")
async def database_health_check():
    """Runs SELECT 1; 503 when the database is unreachable."""
    if await connection.check_db_connection():
        return {"status": "healthy", "database": "connected"}
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "unhealthy", "database": "disconnected"}
    )
