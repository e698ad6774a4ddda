"""MarginDesk: FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from margindesk.api import account, orders
from margindesk.api.deps import get_engine
from margindesk.config import settings
from margindesk.database import engine

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: verify DB connection. Shutdown: close quote connections, dispose engine."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        raise
    yield
    await get_engine().close()
    await engine.dispose()
    logger.info("Database engine disposed")


app = FastAPI(
    title="MarginDesk",
    description="Margin, position and order engine for CFD trading accounts",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: restrict in production, allow localhost in development
_allowed_origins = (
    ["http://localhost:8000", "http://localhost:3000", "http://localhost:5173"]
    if settings.app_env == "development"
    else settings.allowed_hosts.split(",")
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-API-Key", "X-User-Id"],
)

app.include_router(orders.router)
app.include_router(account.router)


@app.get("/api")
async def api_root():
    return {
        "name": "MarginDesk",
        "version": "0.1.0",
        "status": "running",
        "market_hours_enforced": settings.enforce_market_hours,
    }
