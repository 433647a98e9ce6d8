# /dmfy/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from dmfy.config.settings import settings
from dmfy.utils.logging import setup_logging
from dmfy.utils.alerting import alerting_service
from dmfy.services import conversation_service

# This file manages the application's lifespan: logging setup on startup and
# closing outbound HTTP clients on shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")
    if not settings.page_access_token:
        logger.error("Missing PAGE_ACCESS_TOKEN: replies will not be delivered.")

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    if conversation_service.flow_engine.dispatcher is not None:
        await conversation_service.flow_engine.dispatcher.close()
    await alerting_service.cleanup()
