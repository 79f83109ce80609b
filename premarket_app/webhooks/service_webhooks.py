import json
import logging
from typing import Optional

from fastapi import Request

from premarket_app.core.errors import UnauthorizedError, ValidationError
from premarket_app.core.events import EventBus
from premarket_app.fintech_verify_signature.verify_signature import FintechsVerifySignature
from premarket_app.fintechs.stripe_client import StripeClient
from premarket_app.services.grant_access_service import GrantAccessService

logger = logging.getLogger(__name__)

SUCCEEDED_EVENTS = {"payment_intent.succeeded"}
FAILED_EVENTS = {"payment_intent.payment_failed", "payment_intent.canceled"}
# these carry a payment_intent id on the object instead of the intent itself
INDIRECT_EVENTS = {
    "charge.succeeded",
    "charge.failed",
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
}


class PaymentWebhooks:
    def __init__(
        self,
        db,
        request: Request,
        events: Optional[EventBus] = None,
        gateway: Optional[StripeClient] = None,
    ):
        self.request = request
        self.gateway: StripeClient = gateway or StripeClient()
        self.verify_signature: FintechsVerifySignature = FintechsVerifySignature()
        self.grant_access_service: GrantAccessService = GrantAccessService(
            db, events=events, gateway=self.gateway
        )

    async def stripe_webhook(self) -> dict:
        raw_body = await self.request.body()
        signature = self.request.headers.get("stripe-signature")

        if not self.verify_signature.verify_stripe_signature(signature, raw_body):
            logger.warning("Rejected Stripe webhook with an invalid signature")
            raise UnauthorizedError("Invalid signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")

        event_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object") or {}
        logger.info(f"Stripe webhook {payload.get('id')} received: {event_type}")

        if event_type in INDIRECT_EVENTS:
            intent_id = obj.get("payment_intent")
            if not intent_id:
                return {"status": "ignored"}
            obj = await self.gateway.retrieve_payment_intent(intent_id)
            intent_status = obj.get("status")
            if intent_status == "succeeded":
                event_type = "payment_intent.succeeded"
            elif intent_status in ("requires_payment_method", "canceled"):
                event_type = "payment_intent.payment_failed"
            else:
                logger.info(f"Intent {intent_id} is {intent_status}, nothing to apply")
                return {"status": "ignored"}

        if event_type in SUCCEEDED_EVENTS:
            return await self.grant_access_service.handle_payment_succeeded(obj)
        if event_type in FAILED_EVENTS:
            return await self.grant_access_service.handle_payment_failed(obj)
        return {"status": "ignored"}
