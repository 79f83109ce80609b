import logging
from typing import Optional

from premarket_app.core.events import (
    DomainEvent,
    GrantAccessApproved,
    GrantAccessRejected,
    GrantAccessRequested,
    PaymentFailed,
    PaymentRequested,
    PaymentSucceeded,
    PreMarketRequestCreated,
    PreMarketRequestExpired,
)
from premarket_app.core.get_db import AsyncSessionLocal
from premarket_app.core.rabbitmq import publish_event
from premarket_app.email_notify.email_service import EmailService
from premarket_app.repos.pre_market_repo import PreMarketRepo
from premarket_app.repos.user_repo import UserRepo

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Turns domain events into emails and broker messages.

    Each delivery is isolated: a failure is logged and the remaining
    recipients are still tried. Nothing here raises back to the event bus.
    """

    def __init__(
        self, session_factory=AsyncSessionLocal, email_service=None, publisher=publish_event
    ):
        self.session_factory = session_factory
        self.email_service: EmailService = email_service or EmailService()
        self.publisher = publisher
        self.handlers = {
            PreMarketRequestCreated: self._on_request_created,
            GrantAccessRequested: self._on_access_requested,
            GrantAccessApproved: self._on_access_approved,
            PaymentRequested: self._on_payment_requested,
            GrantAccessRejected: self._on_access_rejected,
            PaymentSucceeded: self._on_payment_succeeded,
            PaymentFailed: self._on_payment_failed,
            PreMarketRequestExpired: self._on_request_expired,
        }

    async def __call__(self, event: DomainEvent) -> None:
        await self.dispatch(event)

    async def dispatch(self, event: DomainEvent) -> None:
        try:
            await self.publisher(f"premarket.{event.name}", event.to_payload())
        except Exception:
            logger.exception(f"Failed to publish {event.name} to the broker")

        handler = self.handlers.get(type(event))
        if handler is None:
            return
        try:
            async with self.session_factory() as db:
                await handler(event, UserRepo(db), PreMarketRepo(db))
        except Exception:
            logger.exception(f"Notification for {event.name} failed")

    async def _send(self, description: str, send, *args):
        try:
            await send(*args)
        except Exception:
            logger.exception(f"Could not deliver {description}")

    @staticmethod
    def _code(pre_market) -> str:
        return pre_market.request_id if pre_market else "your request"

    @staticmethod
    def _location(pre_market) -> str:
        boroughs = [
            loc.get("borough") for loc in pre_market.locations or [] if loc.get("borough")
        ]
        return ", ".join(boroughs) or "Multiple Locations"

    async def _on_request_created(
        self, event: PreMarketRequestCreated, users: UserRepo, requests: PreMarketRepo
    ):
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        if not pre_market:
            return
        renter = await users.get_by_id(event.renter_id)
        location = self._location(pre_market)

        # agents only see the listing, never who posted it
        for agent in await users.get_active_agents():
            if not self._wants_email(agent):
                continue
            await self._send(
                f"new request notice to agent {agent.id}",
                self.email_service.send_new_request_to_agent_email,
                agent.email,
                agent.full_name,
                pre_market.request_name,
                location,
                pre_market.request_id,
            )
        for admin in await users.get_active_admins():
            await self._send(
                f"new request notice to admin {admin.id}",
                self.email_service.send_new_request_to_admin_email,
                admin.email,
                admin.full_name,
                renter.full_name if renter else "A renter",
                renter.email if renter else "N/A",
                pre_market.request_name,
                location,
                pre_market.request_id,
            )

    async def _on_access_requested(
        self, event: GrantAccessRequested, users: UserRepo, requests: PreMarketRepo
    ):
        agent = await users.get_by_id(event.agent_id)
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        agent_name = agent.full_name if agent else "An agent"
        for admin in await users.get_active_admins():
            await self._send(
                f"access request notice to admin {admin.id}",
                self.email_service.send_access_requested_email,
                admin.email,
                admin.full_name,
                agent_name,
                self._code(pre_market),
            )

    async def _on_access_approved(
        self, event: GrantAccessApproved, users: UserRepo, requests: PreMarketRepo
    ):
        agent = await users.get_by_id(event.agent_id)
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        if self._wants_email(agent):
            await self._send(
                f"free access notice to agent {agent.id}",
                self.email_service.send_access_approved_email,
                agent.email,
                agent.full_name,
                self._code(pre_market),
            )
        await self._notify_renter_of_access(agent, pre_market, users)

    async def _on_payment_requested(
        self, event: PaymentRequested, users: UserRepo, requests: PreMarketRepo
    ):
        agent = await users.get_by_id(event.agent_id)
        if not self._wants_email(agent):
            return
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        await self._send(
            f"payment request to agent {agent.id}",
            self.email_service.send_payment_requested_email,
            agent.email,
            agent.full_name,
            self._code(pre_market),
            f"{event.amount:.2f}",
            event.currency,
        )

    async def _on_access_rejected(
        self, event: GrantAccessRejected, users: UserRepo, requests: PreMarketRepo
    ):
        agent = await users.get_by_id(event.agent_id)
        if not self._wants_email(agent):
            return
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        await self._send(
            f"rejection notice to agent {agent.id}",
            self.email_service.send_access_rejected_email,
            agent.email,
            agent.full_name,
            self._code(pre_market),
            event.notes,
        )

    async def _on_payment_succeeded(
        self, event: PaymentSucceeded, users: UserRepo, requests: PreMarketRepo
    ):
        agent = await users.get_by_id(event.agent_id)
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        amount = f"{event.amount:.2f}"
        code = self._code(pre_market)

        if self._wants_email(agent):
            await self._send(
                f"payment receipt to agent {agent.id}",
                self.email_service.send_payment_succeeded_email,
                agent.email,
                agent.full_name,
                code,
                amount,
                event.currency,
            )
        agent_name = agent.full_name if agent else "An agent"
        for admin in await users.get_active_admins():
            await self._send(
                f"payment notice to admin {admin.id}",
                self.email_service.send_admin_payment_received_email,
                admin.email,
                admin.full_name,
                agent_name,
                code,
                amount,
                event.currency,
            )
        await self._notify_renter_of_access(agent, pre_market, users)

    async def _on_payment_failed(
        self, event: PaymentFailed, users: UserRepo, requests: PreMarketRepo
    ):
        agent = await users.get_by_id(event.agent_id)
        if not self._wants_email(agent):
            return
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        await self._send(
            f"payment failure notice to agent {agent.id}",
            self.email_service.send_payment_failed_email,
            agent.email,
            agent.full_name,
            self._code(pre_market),
            event.failure_count,
        )

    async def _on_request_expired(
        self, event: PreMarketRequestExpired, users: UserRepo, requests: PreMarketRepo
    ):
        renter = await users.get_by_id(event.renter_id)
        if not self._wants_email(renter):
            return
        pre_market = await requests.get_by_id(event.pre_market_request_id)
        await self._send(
            f"expiry notice to renter {renter.id}",
            self.email_service.send_request_expired_email,
            renter.email,
            renter.full_name,
            self._code(pre_market),
        )

    async def _notify_renter_of_access(self, agent, pre_market, users: UserRepo):
        if not pre_market:
            return
        renter = await users.get_by_id(pre_market.renter_id)
        if not self._wants_email(renter):
            return
        await self._send(
            f"access notice to renter {renter.id}",
            self.email_service.send_renter_access_granted_email,
            renter.email,
            renter.full_name,
            agent.full_name if agent else "An agent",
            pre_market.request_id,
        )

    @staticmethod
    def _wants_email(user: Optional[object]) -> bool:
        return bool(
            user and user.is_active and user.email_subscription_enabled and user.email
        )
