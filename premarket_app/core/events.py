"""Domain events and the in-process bus that carries them to notifications.

Business code only calls ``event_bus.emit``. A single worker task drains the
queue and hands each event to the registered handler, so a slow or failing
notification never touches the state transition that produced it.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from premarket_app.models.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    occurred_at: datetime = field(default_factory=utcnow, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_payload(self) -> dict:
        payload = {}
        for key, value in asdict(self).items():
            if isinstance(value, (uuid.UUID, Decimal)):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            payload[key] = value
        payload["event"] = self.name
        return payload


@dataclass(frozen=True)
class PreMarketRequestCreated(DomainEvent):
    pre_market_request_id: uuid.UUID
    renter_id: uuid.UUID


@dataclass(frozen=True)
class GrantAccessRequested(DomainEvent):
    grant_access_id: uuid.UUID
    agent_id: uuid.UUID
    pre_market_request_id: uuid.UUID


@dataclass(frozen=True)
class GrantAccessApproved(DomainEvent):
    grant_access_id: uuid.UUID
    agent_id: uuid.UUID
    pre_market_request_id: uuid.UUID
    is_free: bool = True


@dataclass(frozen=True)
class PaymentRequested(DomainEvent):
    grant_access_id: uuid.UUID
    agent_id: uuid.UUID
    pre_market_request_id: uuid.UUID
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class GrantAccessRejected(DomainEvent):
    grant_access_id: uuid.UUID
    agent_id: uuid.UUID
    pre_market_request_id: uuid.UUID
    notes: Optional[str] = None


@dataclass(frozen=True)
class PaymentSucceeded(DomainEvent):
    grant_access_id: uuid.UUID
    agent_id: uuid.UUID
    pre_market_request_id: uuid.UUID
    amount: Decimal
    currency: str
    payment_intent_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    grant_access_id: uuid.UUID
    agent_id: uuid.UUID
    pre_market_request_id: uuid.UUID
    failure_count: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class PreMarketRequestExpired(DomainEvent):
    pre_market_request_id: uuid.UUID
    renter_id: uuid.UUID
    retired: bool = False


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=maxsize)
        self.handler: Optional[EventHandler] = None
        self._worker: Optional[asyncio.Task] = None

    def emit(self, event: DomainEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(f"Event queue full, dropping {event.name}")

    def start(self, handler: EventHandler) -> None:
        self.handler = handler
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="event-bus-worker")
            logger.info("Event bus worker started.")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Event bus stopped with {self.queue.qsize()} undelivered events"
            )
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Event bus worker stopped.")

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                if self.handler is not None:
                    await self.handler(event)
            except Exception:
                logger.exception(f"Failed to dispatch {event.name}")
            finally:
                self.queue.task_done()


event_bus = EventBus()


def get_event_bus() -> EventBus:
    return event_bus
