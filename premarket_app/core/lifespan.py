import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from premarket_app.jobs.pre_market_expiration import expiration_scheduler
from premarket_app.services.notification_dispatcher import NotificationDispatcher

from .events import event_bus
from .rabbitmq import rabbitmq
from .settings import settings

logger = logging.getLogger("startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Waiting for application startup...")

    event_bus.start(NotificationDispatcher())

    if rabbitmq.enabled:
        try:
            await rabbitmq.connect()
            logger.info("RabbitMQ connected.")
        except Exception:
            logger.exception("RabbitMQ connection failed")

    if settings.SWEEP_ENABLED:
        try:
            expiration_scheduler.start()
        except Exception:
            logger.exception("Failed to start the pre-market expiration scheduler")

    logger.info("Application startup complete.")

    yield

    try:
        expiration_scheduler.shutdown()
    except Exception:
        logger.exception("Failed to stop the pre-market expiration scheduler")

    try:
        await event_bus.stop()
    except Exception:
        logger.exception("Failed to stop the event bus")

    try:
        await rabbitmq.close()
    except Exception:
        logger.exception("Failed to close RabbitMQ connection")
