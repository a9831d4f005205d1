from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from blueprint_ai.config import Settings
from blueprint_ai.db import init_db
from blueprint_ai.logger import setup_logging
from blueprint_ai.controllers import v1

settings = Settings()
setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, settings)
    logger.info("Blueprint AI API started")
    yield


app = FastAPI(
    title="Blueprint AI API",
    version="0.3.0",
    lifespan=lifespan,
)

app.include_router(v1.router)

Instrumentator().instrument(app).expose(app)
