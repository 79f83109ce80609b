from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from premarket_app.core.breaker import CircuitBreaker, CircuitOpenError, payment_breaker
from premarket_app.core.errors import ExternalServiceError, ProviderRequestError
from premarket_app.fintechs.stripe_client import StripeClient, to_minor_units


@pytest.fixture(autouse=True)
def closed_breaker():
    payment_breaker.state = "CLOSED"
    payment_breaker.failure_count = 0
    yield
    payment_breaker.state = "CLOSED"
    payment_breaker.failure_count = 0


def _intent(**overrides):
    intent = {
        "id": "pi_123",
        "object": "payment_intent",
        "amount": 9999,
        "currency": "usd",
        "status": "requires_payment_method",
        "client_secret": "pi_123_secret_abc",
    }
    intent.update(overrides)
    return intent


class TestMinorUnits:
    @pytest.mark.parametrize(
        "amount, expected",
        [(Decimal("99.99"), 9999), (Decimal("0.5"), 50), (Decimal("10.005"), 1001)],
    )
    def test_rounds_half_up_to_cents(self, amount, expected):
        assert to_minor_units(amount) == expected


class TestStripeClient:
    async def test_create_sends_form_encoded_intent(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["headers"] = request.headers
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json=_intent())

        client = StripeClient(transport=httpx.MockTransport(handler))

        intent = await client.create_payment_intent(
            amount=Decimal("99.99"),
            currency="USD",
            metadata={"grantAccessId": "g-1"},
            idempotency_key="grant-access-g-1-0-9999",
        )

        assert intent["id"] == "pi_123"
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/payment_intents"
        assert seen["headers"]["Idempotency-Key"] == "grant-access-g-1-0-9999"
        assert seen["form"]["amount"] == ["9999"]
        assert seen["form"]["currency"] == ["usd"]
        assert seen["form"]["metadata[grantAccessId]"] == ["g-1"]
        assert seen["form"]["automatic_payment_methods[enabled]"] == ["true"]

    async def test_client_error_is_not_retried(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(
                400, json={"error": {"message": "Invalid currency: zzz"}}
            )

        client = StripeClient(transport=httpx.MockTransport(handler))

        with pytest.raises(ExternalServiceError) as exc:
            await client.retrieve_payment_intent("pi_123")

        assert calls["n"] == 1
        assert exc.value.message == "Invalid currency: zzz"
        assert exc.value.details == {"provider_status": 400}

    async def test_server_error_is_retried_then_succeeds(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(503, json={})
            return httpx.Response(200, json=_intent(status="succeeded"))

        client = StripeClient(transport=httpx.MockTransport(handler))

        intent = await client.retrieve_payment_intent("pi_123")

        assert calls["n"] == 2
        assert intent["status"] == "succeeded"

    async def test_network_failure_becomes_external_service_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = StripeClient(transport=httpx.MockTransport(handler))

        with pytest.raises(ExternalServiceError):
            await client.retrieve_payment_intent("pi_123")

    async def test_declined_requests_do_not_open_the_circuit(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] <= 5:
                return httpx.Response(
                    402, json={"error": {"message": "Your card was declined."}}
                )
            return httpx.Response(200, json=_intent())

        client = StripeClient(transport=httpx.MockTransport(handler))

        for _ in range(5):
            with pytest.raises(ProviderRequestError):
                await client.retrieve_payment_intent("pi_123")
        intent = await client.retrieve_payment_intent("pi_123")

        assert intent["id"] == "pi_123"
        assert payment_breaker.state == "CLOSED"
        assert payment_breaker.failure_count == 0

    async def test_cancel_posts_to_the_cancel_endpoint(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json=_intent(status="canceled"))

        client = StripeClient(transport=httpx.MockTransport(handler))

        intent = await client.cancel_payment_intent("pi_123")

        assert intent["status"] == "canceled"
        assert seen["path"] == "/v1/payment_intents/pi_123/cancel"
        assert seen["form"]["cancellation_reason"] == ["abandoned"]

    def test_reusable_only_when_open_and_same_amount(self):
        client = StripeClient()

        assert client.is_reusable(_intent(), Decimal("99.99"))
        assert not client.is_reusable(_intent(), Decimal("120"))
        assert not client.is_reusable(_intent(status="canceled"), Decimal("99.99"))
        assert not client.is_reusable(_intent(status="succeeded"), Decimal("99.99"))


class TestCircuitBreaker:
    async def test_opens_after_threshold_and_fails_fast(self):
        breaker = CircuitBreaker("test", failure_threshold=2, base_recovery_time=60)
        calls = {"n": 0}

        async def broken():
            calls["n"] += 1
            raise ConnectionError("down")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(broken)

        with pytest.raises(CircuitOpenError):
            await breaker.call(broken)

        assert breaker.state == "OPEN"
        assert calls["n"] == 2

    async def test_success_closes_and_resets(self):
        breaker = CircuitBreaker("test", failure_threshold=3)

        async def broken():
            raise ConnectionError("down")

        async def ok():
            return "fine"

        with pytest.raises(ConnectionError):
            await breaker.call(broken)

        assert await breaker.call(ok) == "fine"
        assert breaker.failure_count == 0
        assert breaker.state == "CLOSED"

    async def test_ignored_exceptions_are_not_counted(self):
        breaker = CircuitBreaker(
            "test", failure_threshold=2, ignored_exceptions=(ProviderRequestError,)
        )

        async def refused():
            raise ProviderRequestError("Invalid currency", {"provider_status": 400})

        for _ in range(3):
            with pytest.raises(ProviderRequestError):
                await breaker.call(refused)

        assert breaker.state == "CLOSED"
        assert breaker.failure_count == 0
