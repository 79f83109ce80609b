import asyncio
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from premarket_app.core.events import (
    EventBus,
    GrantAccessApproved,
    GrantAccessRequested,
    PaymentFailed,
    PaymentSucceeded,
    PreMarketRequestCreated,
    PreMarketRequestExpired,
)
from premarket_app.models.enums import UserRole
from premarket_app.services.notification_dispatcher import NotificationDispatcher


@pytest.fixture
def email_service():
    return AsyncMock()


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def dispatcher(session_factory, email_service, publisher):
    return NotificationDispatcher(
        session_factory=session_factory,
        email_service=email_service,
        publisher=publisher,
    )


@pytest.fixture
async def listing(renter, make_pre_market):
    return await make_pre_market(renter)


# ---------------------------------------------------------------------------
# NotificationDispatcher
# ---------------------------------------------------------------------------

class TestNotificationDispatcher:
    async def test_access_request_notifies_every_active_admin(
        self, dispatcher, email_service, make_user, agent, listing
    ):
        first = await make_user(UserRole.ADMIN)
        second = await make_user(UserRole.ADMIN)
        await make_user(UserRole.ADMIN, is_active=False)

        await dispatcher(
            GrantAccessRequested(
                grant_access_id=uuid.uuid4(),
                agent_id=agent.id,
                pre_market_request_id=listing.id,
            )
        )

        send = email_service.send_access_requested_email
        recipients = {c.args[0] for c in send.await_args_list}
        assert recipients == {first.email, second.email}
        assert send.await_args_list[0].args[2] == agent.full_name
        assert send.await_args_list[0].args[3] == listing.request_id

    async def test_one_failing_recipient_does_not_block_others(
        self, dispatcher, email_service, make_user, agent, listing
    ):
        await make_user(UserRole.ADMIN)
        await make_user(UserRole.ADMIN)
        email_service.send_access_requested_email.side_effect = [
            ConnectionError("smtp down"),
            None,
        ]

        await dispatcher(
            GrantAccessRequested(
                grant_access_id=uuid.uuid4(),
                agent_id=agent.id,
                pre_market_request_id=listing.id,
            )
        )

        assert email_service.send_access_requested_email.await_count == 2

    async def test_new_request_notifies_subscribed_agents_and_admins(
        self,
        dispatcher,
        email_service,
        db_session,
        make_user,
        agent,
        other_agent,
        admin,
        renter,
        listing,
    ):
        other_agent.email_subscription_enabled = False
        await db_session.commit()
        await make_user(UserRole.AGENT, is_active=False)

        await dispatcher(
            PreMarketRequestCreated(
                pre_market_request_id=listing.id, renter_id=renter.id
            )
        )

        email_service.send_new_request_to_agent_email.assert_awaited_once_with(
            agent.email,
            agent.full_name,
            listing.request_name,
            "Brooklyn",
            listing.request_id,
        )
        email_service.send_new_request_to_admin_email.assert_awaited_once_with(
            admin.email,
            admin.full_name,
            renter.full_name,
            renter.email,
            listing.request_name,
            "Brooklyn",
            listing.request_id,
        )

    async def test_new_request_email_to_agents_hides_the_renter(
        self, dispatcher, email_service, agent, renter, listing
    ):
        await dispatcher(
            PreMarketRequestCreated(
                pre_market_request_id=listing.id, renter_id=renter.id
            )
        )

        args = email_service.send_new_request_to_agent_email.await_args.args
        assert renter.email not in args
        assert renter.full_name not in args

    async def test_payment_success_notifies_agent_admins_and_renter(
        self, dispatcher, email_service, agent, admin, renter, listing
    ):
        await dispatcher(
            PaymentSucceeded(
                grant_access_id=uuid.uuid4(),
                agent_id=agent.id,
                pre_market_request_id=listing.id,
                amount=Decimal("99.99"),
                currency="USD",
                payment_intent_id="pi_1",
            )
        )

        email_service.send_payment_succeeded_email.assert_awaited_once_with(
            agent.email, agent.full_name, listing.request_id, "99.99", "USD"
        )
        email_service.send_admin_payment_received_email.assert_awaited_once()
        email_service.send_renter_access_granted_email.assert_awaited_once_with(
            renter.email, renter.full_name, agent.full_name, listing.request_id
        )

    async def test_unsubscribed_agent_gets_no_email(
        self, dispatcher, email_service, db_session, agent, listing
    ):
        agent.email_subscription_enabled = False
        await db_session.commit()

        await dispatcher(
            PaymentFailed(
                grant_access_id=uuid.uuid4(),
                agent_id=agent.id,
                pre_market_request_id=listing.id,
                failure_count=1,
            )
        )

        email_service.send_payment_failed_email.assert_not_awaited()

    async def test_unsubscribed_agent_does_not_silence_the_renter(
        self, dispatcher, email_service, db_session, agent, renter, listing
    ):
        agent.email_subscription_enabled = False
        await db_session.commit()

        await dispatcher(
            GrantAccessApproved(
                grant_access_id=uuid.uuid4(),
                agent_id=agent.id,
                pre_market_request_id=listing.id,
            )
        )

        email_service.send_access_approved_email.assert_not_awaited()
        email_service.send_renter_access_granted_email.assert_awaited_once_with(
            renter.email, renter.full_name, agent.full_name, listing.request_id
        )

    async def test_event_is_mirrored_to_the_broker(
        self, dispatcher, publisher, renter, listing
    ):
        event = PreMarketRequestExpired(
            pre_market_request_id=listing.id, renter_id=renter.id
        )

        await dispatcher(event)

        routing_key, payload = publisher.await_args.args
        assert routing_key == "premarket.PreMarketRequestExpired"
        assert payload["pre_market_request_id"] == str(listing.id)
        assert payload["event"] == "PreMarketRequestExpired"

    async def test_broker_failure_does_not_stop_emails(
        self, dispatcher, publisher, email_service, renter, listing
    ):
        publisher.side_effect = ConnectionError("broker down")

        await dispatcher(
            PreMarketRequestExpired(pre_market_request_id=listing.id, renter_id=renter.id)
        )

        email_service.send_request_expired_email.assert_awaited_once_with(
            renter.email, renter.full_name, listing.request_id
        )


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

class TestEventBus:
    async def test_delivers_in_order_and_survives_handler_errors(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.renter_id)
            if len(seen) == 1:
                raise RuntimeError("first delivery fails")

        bus.start(handler)
        ids = [uuid.uuid4() for _ in range(3)]
        for renter_id in ids:
            bus.emit(
                PreMarketRequestExpired(pre_market_request_id=uuid.uuid4(), renter_id=renter_id)
            )

        await bus.stop(drain_timeout=2)

        assert seen == ids

    async def test_full_queue_drops_instead_of_blocking(self):
        bus = EventBus(maxsize=1)
        event = PreMarketRequestExpired(
            pre_market_request_id=uuid.uuid4(), renter_id=uuid.uuid4()
        )

        bus.emit(event)
        bus.emit(event)

        assert bus.queue.qsize() == 1

    async def test_emit_returns_before_handler_runs(self):
        bus = EventBus()
        gate = asyncio.Event()
        handled = []

        async def slow_handler(event):
            await gate.wait()
            handled.append(event)

        bus.start(slow_handler)
        bus.emit(
            PreMarketRequestExpired(pre_market_request_id=uuid.uuid4(), renter_id=uuid.uuid4())
        )

        assert handled == []
        gate.set()
        await bus.stop(drain_timeout=2)
        assert len(handled) == 1
