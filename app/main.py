import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
import alembic.config
import alembic.command
from app.core.config import settings
from app.core.database import engine
from app.api.router import api_router

logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    # Keep the logging set up in lifespan
    alembic_cfg.attributes["configure_logger"] = False
    alembic.command.upgrade(alembic_cfg, "head")


# Close the engine once everything is done and close all the sessions
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Apply any pending migrations automatically when the app starts
    if settings.RUN_MIGRATIONS:
        try:
            await asyncio.to_thread(run_migrations)
            logger.info("Migrations applied successfully (or already up-to-date)")
        except Exception as e:
            logger.error(f"Migration error during startup: {e}")

    yield
    await engine.dispose()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
