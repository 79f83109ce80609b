import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from premarket_app.core.breaker import payment_breaker
from premarket_app.core.errors import ExternalServiceError, ProviderRequestError
from premarket_app.core.settings import settings

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (httpx.TransportError,)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeClient:
    """Thin async client over the Stripe REST API for payment intents."""

    BASE_URL = "https://api.stripe.com/v1"
    OPEN_INTENT_STATUSES = {
        "requires_payment_method",
        "requires_confirmation",
        "requires_action",
        "processing",
    }

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.secret = settings.STRIPE_SECRET_KEY
        self.headers = {"Authorization": f"Bearer {self.secret}"}
        self.timeout = settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        self.transport = transport

    @retry(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(settings.PAYMENT_GATEWAY_MAX_RETRIES + 1),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        headers = dict(self.headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        async with httpx.AsyncClient(
            base_url=self.BASE_URL, timeout=self.timeout, transport=self.transport
        ) as client:
            res = await client.request(method, path, headers=headers, data=data)

        if res.status_code >= 500:
            # surfaced as a transport error so tenacity retries it
            raise httpx.RemoteProtocolError(
                f"Stripe returned {res.status_code}", request=res.request
            )
        payload = res.json()
        if res.status_code >= 400:
            message = payload.get("error", {}).get("message", "Stripe request failed")
            raise ProviderRequestError(
                message, {"provider_status": res.status_code}
            )
        return payload

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        async def handler():
            try:
                return await self._send(method, path, **kwargs)
            except httpx.HTTPError as e:
                logger.error(f"Stripe {method} {path} failed after retries: {e}")
                raise ExternalServiceError(
                    "Payment provider is unavailable. Please try again later."
                ) from e

        return await payment_breaker.call(handler)

    async def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        data = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = str(value)

        intent = await self._request(
            "POST", "/payment_intents", data=data, idempotency_key=idempotency_key
        )
        logger.info(
            f"Created payment intent {intent['id']} for {amount} {currency.upper()}"
        )
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        return await self._request("GET", f"/payment_intents/{payment_intent_id}")

    async def cancel_payment_intent(
        self, payment_intent_id: str, reason: str = "abandoned"
    ) -> dict:
        intent = await self._request(
            "POST",
            f"/payment_intents/{payment_intent_id}/cancel",
            data={"cancellation_reason": reason},
        )
        logger.info(f"Canceled payment intent {payment_intent_id} ({reason})")
        return intent

    def is_reusable(self, intent: dict, amount: Decimal) -> bool:
        return (
            intent.get("status") in self.OPEN_INTENT_STATUSES
            and intent.get("amount") == to_minor_units(amount)
        )


def get_payment_gateway() -> StripeClient:
    return StripeClient()
