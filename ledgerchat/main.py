import asyncio
import logging
from contextlib import asynccontextmanager

import alembic.command
import alembic.config
import httpx
from fastapi import FastAPI

from ledgerchat.api.handlers import register_exception_handlers
from ledgerchat.api.router import api_router
from ledgerchat.core.config import settings
from ledgerchat.core.database import engine

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic_cfg.attributes["configure_logger"] = False
    alembic.command.upgrade(alembic_cfg, "head")


# One LLM HTTP client for the whole process; engine and client closed on shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        try:
            await asyncio.to_thread(run_migrations)
            logger.info("Migrations applied successfully (or already up-to-date)")
        except Exception as e:
            logger.error(f"Migration error during startup: {e}")

    app.state.http_client = httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS)

    yield

    await app.state.http_client.aclose()
    await engine.dispose()


app = FastAPI(title="LedgerChat Assistant API", lifespan=lifespan)

register_exception_handlers(app)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the LedgerChat Assistant API"}
