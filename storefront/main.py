import asyncio
import contextlib
import time
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.utils import get_db_client, settings, HealthResponse, ErrorResponse
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware

from storefront import auth, banners, cart, catalog, offers, orders, reviews, stats, users, wishlist
from storefront.database import create_indexes
from storefront.notifications import EmailService
from storefront.scheduler import run_low_stock_loop

SERVICE_NAME = "storefront"
VERSION = "1.0.0"

# Setup Logging
logger = setup_logging(SERVICE_NAME, settings.LOG_LEVEL)

app = FastAPI(title="Storefront API", version=VERSION)

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(catalog.router)
app.include_router(reviews.router)
app.include_router(cart.router)
app.include_router(wishlist.router)
app.include_router(offers.router)
app.include_router(orders.router)
app.include_router(stats.router)
app.include_router(banners.router)

app.state.started_at = time.time()
app.state.email_service = EmailService(
    api_url=settings.EMAIL_API_URL,
    api_key=settings.EMAIL_API_KEY,
    sender=settings.EMAIL_FROM,
    timeout=settings.EMAIL_TIMEOUT_SECONDS,
)
app.state.low_stock_task = None


@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.DATABASE_NAME]
    await create_indexes(app.mongodb)

    if settings.LOW_STOCK_SCHEDULER_ENABLED:
        app.state.low_stock_task = asyncio.create_task(run_low_stock_loop(app.mongodb, app.state.email_service))
    logger.info("Storefront started")


@app.on_event("shutdown")
async def shutdown_db_client():
    task = app.state.low_stock_task
    if task:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    app.mongodb_client.close()


async def ping_database() -> bool:
    try:
        await app.mongodb.command("ping")
        return True
    except Exception:
        logger.warning("Database ping failed", exc_info=True)
        return False


@app.get("/health", response_model=HealthResponse)
async def health_check():
    connected = await ping_database()
    health = HealthResponse(
        service=SERVICE_NAME,
        status="healthy" if connected else "unhealthy",
        timestamp=datetime.utcnow(),
        version=VERSION,
        uptime_seconds=round(time.time() - app.state.started_at, 3),
        database="connected" if connected else "disconnected",
    )
    if not connected:
        return JSONResponse(status_code=503, content=health.model_dump(mode="json"))
    return health


@app.get("/health/ready")
async def readiness():
    if not await ping_database():
        body = ErrorResponse(error="Service Unavailable", details={"database": "disconnected"})
        return JSONResponse(status_code=503, content=body.model_dump())
    return {"status": "ready"}
