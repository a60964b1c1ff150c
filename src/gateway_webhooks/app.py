import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gateway_webhooks.cleanup import cleanup_task
from gateway_webhooks.config import PLACEHOLDER_WEBHOOK_SECRET, Settings
from gateway_webhooks.database import open_db
from gateway_webhooks.dependencies import build_receiver, get_settings
from gateway_webhooks.logging_setup import configure_logging
from gateway_webhooks.router import router
from gateway_webhooks.store import SQLiteIdempotencyStore

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level, settings.log_format)
        if settings.webhook_secret in ("", PLACEHOLDER_WEBHOOK_SECRET):
            logger.warning("WEBHOOK_SECRET is not configured, every delivery will be rejected")
        app.state.ready = False
        app.state.db = await open_db(settings.db_path)
        app.state.receiver = build_receiver(app.state.db, settings)
        tasks = [asyncio.create_task(cleanup_task(SQLiteIdempotencyStore(app.state.db), settings))]
        app.state.ready = True
        yield
        for task in tasks:
            task.cancel()
        await app.state.db.close()

    app = FastAPI(lifespan=lifespan)
    app.include_router(router)
    return app
