import json
import logging

import aio_pika
from aio_pika import ExchangeType, Message
from tenacity import retry, stop_after_attempt, wait_exponential

from .breaker import rabbitmq_breaker
from .settings import settings

logger = logging.getLogger(__name__)


class RabbitMQConnection:
    def __init__(self, url: str, exchange_name: str):
        self.url = url
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @retry(
        stop=stop_after_attempt(5), wait=wait_exponential(multiplier=2, min=2, max=10)
    )
    async def connect(self):
        if self.connection and not self.connection.is_closed:
            return
        logger.info("Connecting to RabbitMQ...")
        self.connection = await aio_pika.connect_robust(self.url)
        self.channel = await self.connection.channel()
        self.exchange = await self.channel.declare_exchange(
            self.exchange_name, ExchangeType.TOPIC, durable=True
        )
        logger.info(f"Connected to RabbitMQ, exchange '{self.exchange_name}' ready.")

    async def publish_json(self, routing_key: str, data: dict):
        async def handler():
            await self.connect()
            message = Message(
                body=json.dumps(data).encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self.exchange.publish(message, routing_key=routing_key)
            logger.debug(f"Published message to {self.exchange_name}:{routing_key}")

        await rabbitmq_breaker.call(handler)

    async def close(self):
        if self.connection and not self.connection.is_closed:
            await self.connection.close()


rabbitmq = RabbitMQConnection(settings.RABBITMQ_URL, settings.RABBITMQ_MAIN_EXCHANGE)


async def publish_event(event_name: str, data: dict):
    if not rabbitmq.enabled:
        return
    await rabbitmq.publish_json(routing_key=event_name, data=data)
