from fastapi import APIRouter, Depends, Request
from fastapi_utils.cbv import cbv
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_app.core.events import EventBus, get_event_bus
from premarket_app.core.get_db import get_db_async
from premarket_app.core.safe_handler import safe_handler
from premarket_app.fintechs.stripe_client import StripeClient, get_payment_gateway
from premarket_app.webhooks.service_webhooks import PaymentWebhooks

router = APIRouter(tags=["Webhooks"])


@cbv(router)
class WebhookRoutes:
    @router.post("/webhooks/stripe")
    @safe_handler
    async def stripe_webhook(
        self,
        request: Request,
        db: AsyncSession = Depends(get_db_async),
        events: EventBus = Depends(get_event_bus),
        gateway: StripeClient = Depends(get_payment_gateway),
    ):
        return await PaymentWebhooks(
            db=db, request=request, events=events, gateway=gateway
        ).stripe_webhook()
