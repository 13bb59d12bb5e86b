"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.config import settings
from marketplace.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from marketplace.routers import allocations, balance, disputes, payments

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: start the sweeper when enabled, stop it on shutdown."""
    sweeper_task = None
    if settings.sweeper_enabled:
        from marketplace.services.sweeper import run_sweeper
        sweeper_task = asyncio.create_task(run_sweeper())
        logger.info("Sweeper started (every %ss)", settings.sweeper_interval_seconds)

    yield

    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Marketplace Payments",
    description="Escrowed contract payments, disputes and the balance ledger",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware: the last one added runs outermost
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_request_bytes)

app.include_router(payments.router)
app.include_router(disputes.router)
app.include_router(balance.router)
app.include_router(allocations.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
