"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Features:
- Structured JSON logging with per-instance tagging
- Redis-backed rate limiting, per user for verified tokens and per IP otherwise
- Signed session cookie for display preferences and cookie consent
- Request ID and timing headers
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from config.database import close_db, init_db, ping_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from shared.utils.security import verify_access_token

# Service routers
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.availability.router import router as availability_router
from services.city.router import router as city_router
from services.content.router import router as content_router
from services.conversation.router import router as conversation_router
from services.guide.router import router as guide_router
from services.preferences.router import router as preferences_router
from services.report.router import router as report_router
from services.reservation.router import router as reservation_router
from services.review.router import router as review_router
from services.traveler.router import router as traveler_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    handlers=[handler],
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── Rate Limiting ─────────────────────────────────────────────

def rate_limit_bucket(request: Request) -> tuple[str, int]:
    """
    Pick the rate-limit key and limit for a request.
    Only a token that verifies earns the per-user limit; a malformed or
    forged bearer token shares the IP's anonymous bucket.
    """
    client_ip = request.client.host if request.client else "unknown"
    authorization = request.headers.get("Authorization", "")
    if authorization.startswith("Bearer "):
        try:
            payload = verify_access_token(authorization[len("Bearer "):])
        except JWTError:
            logger.debug(f"Unverified bearer token from {client_ip}, using anonymous limit")
        else:
            return f"rate:auth:{payload['sub']}", settings.RATE_LIMIT_PER_MINUTE
    return f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Rainbow Tour Guides API

LGBTQ+-friendly local guide marketplace:
- **Availability**: guide slots in 4, 6 or 8 hour tiers, calendar view per guide timezone
- **Pricing**: hourly base rate with duration discounts, recomputed on every read
- **Reservations**: priced requests with slot holds, accept/cancel/complete lifecycle
- **Reviews & loyalty**: published reviews drive guide ratings and traveler points
- **Preferences & consent**: language, display currency and cookie categories
- **Admin**: moderation, verification and an audit log

### Authentication
Protected endpoints require `Authorization: Bearer <access_token>`.
Development builds issue tokens through `/api/auth/demo-login`.

### Roles
- `traveler`: reserve tours, message guides, write reviews
- `guide`: publish availability, accept reservations, respond to reviews
- `admin` / `support` / `moderator`: platform staff
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (last added runs first) ───────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # Preferences and consent live in this cookie
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SECRET_KEY,
        session_cookie="rtg_session",
        same_site="lax",
        https_only=settings.is_production,
    )

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed window. Verified tokens are limited per user, everything else per IP.
        Operational paths are never limited.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)

        from config.redis_client import redis_client
        if redis_client:
            key, limit = rate_limit_bucket(request)
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(key, limit)
            except RedisError as e:
                # fail open
                logger.error(f"Rate limit check failed: {e}")
            else:
                if not allowed:
                    logger.warning(f"Rate limit exceeded for {key}")
                    return JSONResponse(
                        status_code=429,
                        content={"detail": "Rate limit exceeded. Please slow down."},
                        headers={"Retry-After": "60"},
                    )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            await ping_db()
            checks["database"] = "ok"
        except SQLAlchemyError:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except RedisError:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(auth_router)
    app.include_router(availability_router)
    app.include_router(guide_router)
    app.include_router(traveler_router)
    app.include_router(city_router)
    app.include_router(reservation_router)
    app.include_router(conversation_router)
    app.include_router(review_router)
    app.include_router(report_router)
    app.include_router(admin_router)
    app.include_router(content_router)
    app.include_router(preferences_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

SEED_CITIES = [
    {"name": "Lisbon", "slug": "lisbon", "country_code": "PT", "country": "Portugal", "timezone": "Europe/Lisbon"},
    {"name": "Berlin", "slug": "berlin", "country_code": "DE", "country": "Germany", "timezone": "Europe/Berlin"},
    {"name": "Mexico City", "slug": "mexico-city", "country_code": "MX", "country": "Mexico", "timezone": "America/Mexico_City"},
    {"name": "Bangkok", "slug": "bangkok", "country_code": "TH", "country": "Thailand", "timezone": "Asia/Bangkok"},
]


async def seed_initial_data():
    """Seed cities, one guide per city and demo accounts on first run (development only)."""
    from sqlalchemy import func, select

    from config.database import get_db_context
    from shared.models.models import City, GuideProfile, TravelerProfile, User, UserRole
    from shared.utils.pricing import calculate_all_duration_prices

    async with get_db_context() as db:
        count = await db.scalar(select(func.count(City.id)))
        if count and count > 0:
            return  # Already seeded

        for data in SEED_CITIES:
            city = City(**data)
            db.add(city)
            await db.flush()

            guide = User(display_name=f"{data['name']} Guide", role=UserRole.GUIDE, verified=True)
            db.add(guide)
            await db.flush()

            prices = {k: float(v.total) for k, v in calculate_all_duration_prices(50).items()}
            prices["currency"] = "USD"
            db.add(GuideProfile(
                uid=guide.id,
                handle=f"{data['slug']}-guide",
                display_name=guide.display_name,
                city=data["name"],
                city_slug=data["slug"],
                city_id=city.id,
                country=data["country"],
                timezone=data["timezone"],
                bio=f"Queer-friendly walking tours around {data['name']}.",
                languages=["en"],
                prices=prices,
                base_rate_hour=50,
                verified=True,
            ))

        traveler = User(display_name="Demo Traveler", role=UserRole.TRAVELER)
        admin = User(display_name="Demo Admin", role=UserRole.ADMIN)
        db.add_all([traveler, admin])
        await db.flush()
        db.add(TravelerProfile(uid=traveler.id, display_name=traveler.display_name))

        logger.info(f"Seeded {len(SEED_CITIES)} cities with demo guides")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
