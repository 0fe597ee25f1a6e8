import logging
import sys
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import admin, auth, csrf, mfa
from config import AppMode, get_settings
from db.database import init_db
from db.redis import close_redis_clients
from middleware.security import SecurityHeadersMiddleware
from services.maintenance import start_maintenance_task, stop_maintenance_task

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Silence noisy loggers
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown"""

    logger.info(f"Starting PICORTEX security service in {settings.APP_MODE.value} mode...")

    await init_db()
    logger.info("Database initialized")

    if settings.REDIS_URL:
        logger.info("Rate limits and CSRF tokens stored in Redis")
    else:
        logger.info("Rate limits and CSRF tokens stored in process memory")

    # Periodic cleanup is skipped under pytest; tests call run_maintenance() directly
    if "pytest" not in sys.modules:
        start_maintenance_task(settings.MAINTENANCE_INTERVAL_SECONDS)

    yield

    if "pytest" not in sys.modules:
        stop_maintenance_task()
    await close_redis_clients()
    logger.info("Shutting down PICORTEX security service...")


app = FastAPI(
    title="PICORTEX AI Security Service",
    description="Sessions, MFA, CSRF, rate limiting and audit for the PICORTEX AI platform",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.DEBUG,
)

# Middleware order: first added = last executed
app.add_middleware(SecurityHeadersMiddleware)

if settings.APP_MODE == AppMode.DEV:
    from middleware.logging import RequestLoggingMiddleware, configure_request_logging

    configure_request_logging(settings.LOG_LEVEL)
    app.add_middleware(RequestLoggingMiddleware)

# CORS must be last (first to process incoming requests)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", settings.CSRF_HEADER_NAME, settings.SESSION_HEADER_NAME, "Authorization"],
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
        settings.CSRF_HEADER_NAME,
        settings.SESSION_HEADER_NAME,
    ],
)

api_router = APIRouter(prefix="/api")
api_router.include_router(auth.router)
api_router.include_router(csrf.router)
api_router.include_router(mfa.router)
api_router.include_router(admin.router)
app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "mode": settings.APP_MODE.value,
        "shared_store": "redis" if settings.REDIS_URL else "memory",
    }
