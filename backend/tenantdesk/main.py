"""TenantDesk FastAPI application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging

from tenantdesk.config import settings
from tenantdesk.database import async_engine, AsyncSessionLocal
from tenantdesk.services.audit_service import get_audit_writer

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def run_expiry_sweep():
    """Expire access requests that have been pending too long."""
    from tenantdesk.services.expiry_sweep import run_expiry_sweep as sweep

    summary = await sweep(AsyncSessionLocal)
    logger.info("Expiry sweep: %s", summary)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting TenantDesk API...")

    # Verify DB connection
    try:
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("SELECT 1")
        logger.info("Database connection verified")
    except Exception as e:
        logger.error(f"Database connection failed: {e}")

    if settings.AUTO_CREATE_SCHEMA:
        from tenantdesk.bootstrap import create_schema, seed_defaults

        try:
            await create_schema(async_engine)
            await seed_defaults(AsyncSessionLocal)
        except Exception:
            logger.exception("Schema bootstrap failed")

    # Schedule jobs
    scheduler.add_job(
        run_expiry_sweep,
        "interval",
        hours=settings.EXPIRY_SWEEP_HOURS,
        id="access_request_expiry",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduled jobs started (access request expiry)")

    logger.info("TenantDesk API started successfully")
    yield

    # Shutdown
    scheduler.shutdown()
    await get_audit_writer().drain()
    await async_engine.dispose()
    logger.info("TenantDesk API shut down")


app = FastAPI(
    title="TenantDesk",
    description="Multi-tenant business management: tool permissions, access requests, audit trail and department pages",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from tenantdesk.routes import (  # noqa: E402
    access_requests,
    audit,
    auth,
    customizations,
    departments,
    permissions,
    realtime,
    users,
)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(permissions.router)
app.include_router(access_requests.router)
app.include_router(audit.router)
app.include_router(departments.router)
app.include_router(customizations.router)
app.include_router(realtime.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "TenantDesk API", "version": "1.0.0"}
