from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import app.models  # noqa: F401: register SQLModel tables

from app.config import get_settings
from app.db import create_db_and_tables, engine
from app.routers import health, lock
from app.services.biolock import LockService
from app.services.channel import MemoryChannel

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    create_db_and_tables()

    # The chat bridge feeds private replies into this channel
    channel = MemoryChannel()
    lock_service = LockService.build(settings, engine, channel)
    await lock_service.start()
    app.state.lock_channel = channel
    app.state.lock_service = lock_service

    if settings.override_enabled:
        logger.warning("BioLock emergency override is ENABLED")

    yield

    # Shutdown: abandon in-flight challenges, stop the sweep, close the webhook client
    await lock_service.stop()
    app.state.lock_service = None


app = FastAPI(
    title="BioLock",
    description="Per-user authentication lock for privileged bot commands",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(lock.router)
