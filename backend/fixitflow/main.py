"""FixItFlow entitlements — FastAPI application entry point."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fixitflow.api.v1.subscription import router as subscription_router
from fixitflow.api.v1.webhooks import router as webhooks_router
from fixitflow.billing.providers import close_providers
from fixitflow.billing.sweeper import run_sweeper_loop
from fixitflow.config import settings
from fixitflow.database import create_tables, engine
from fixitflow.stores import close_store

# Configure root logger so all fixitflow.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup: create the schema, start the optional sweeper (expiry is also checked on every read)
    if settings.create_tables_on_startup:
        await create_tables()
    sweeper_task = None
    if settings.sweeper_interval_seconds > 0:
        sweeper_task = asyncio.create_task(run_sweeper_loop(settings.sweeper_interval_seconds))
    yield
    # Shutdown: stop the sweeper, then release clients and connections
    if sweeper_task is not None:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
    await close_providers()
    await close_store()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Premium entitlements and subscription lifecycle for FixItFlow.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(subscription_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
