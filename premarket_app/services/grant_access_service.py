import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from premarket_app.core.check_permission import CheckRolePermission
from premarket_app.core.errors import (
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from premarket_app.core.events import (
    EventBus,
    GrantAccessApproved,
    GrantAccessRejected,
    GrantAccessRequested,
    PaymentFailed,
    PaymentRequested,
    PaymentSucceeded,
    event_bus,
)
from premarket_app.core.paginate import ORMMapper, PaginatePage
from premarket_app.core.settings import settings
from premarket_app.fintechs.stripe_client import StripeClient, to_minor_units
from premarket_app.models.enums import (
    GrantAccessStatus,
    PaymentStatus,
    PreMarketStatus,
    ViewerType,
)
from premarket_app.models.models import GrantAccessRequest
from premarket_app.models.utils import utcnow
from premarket_app.repos.grant_access_repo import GrantAccessRepo
from premarket_app.repos.pre_market_repo import PreMarketRepo
from premarket_app.schemas.schema import (
    AccessStatusOut,
    BulkDeleteOut,
    GrantAccessOut,
    PaginatedOut,
    PaymentDeletionEntryOut,
    PaymentDeletionHistoryOut,
    PaymentIntentOut,
    PaymentStatsOut,
)

from .access_state import access_state_for, to_out

logger = logging.getLogger(__name__)


class GrantAccessService:
    """Request, price, pay and unlock workflow for agent access to renter details.

    Every status change goes through a conditional update in
    ``GrantAccessRepo``. When one does not apply, the record is read again and
    the outcome is decided from its current state.
    """

    def __init__(
        self,
        db,
        events: Optional[EventBus] = None,
        gateway: Optional[StripeClient] = None,
    ):
        self.repo: GrantAccessRepo = GrantAccessRepo(db)
        self.pre_market_repo: PreMarketRepo = PreMarketRepo(db)
        self.events: EventBus = events or event_bus
        self.gateway: StripeClient = gateway or StripeClient()
        self.permission: CheckRolePermission = CheckRolePermission()
        self.paginate: PaginatePage = PaginatePage()
        self.mapper: ORMMapper = ORMMapper()

    async def _get_grant(self, grant_id: uuid.UUID) -> GrantAccessRequest:
        grant = await self.repo.get_by_id(grant_id)
        if not grant:
            raise NotFoundError(
                "Grant access request not found", {"grant_access_id": str(grant_id)}
            )
        return grant

    async def _lost_race(self, grant_id: uuid.UUID, action: str):
        current = await self._get_grant(grant_id)
        logger.info(
            f"Could not {action} grant access {grant_id}: now {current.status.value}"
        )
        raise ConflictError(
            f"Grant access request is already {current.status.value}",
            {"status": current.status.value},
        )

    @staticmethod
    def _parse_charge_amount(charge_amount) -> Decimal:
        if charge_amount is None or isinstance(charge_amount, bool):
            raise ValidationError(
                "charge_amount is required when access is not free",
                {"field": "charge_amount"},
            )
        try:
            amount = Decimal(str(charge_amount))
        except (InvalidOperation, ValueError):
            raise ValidationError(
                "charge_amount must be a number", {"field": "charge_amount"}
            )
        if not amount.is_finite() or amount <= 0:
            raise ValidationError(
                "charge_amount must be a positive number", {"field": "charge_amount"}
            )
        return amount.quantize(Decimal("0.01"))

    async def request_access(
        self, current_user, pre_market_id: uuid.UUID
    ) -> GrantAccessOut:
        await self.permission.check_agent(current_user)

        pre_market = await self.pre_market_repo.get_by_id(pre_market_id)
        if (
            not pre_market
            or pre_market.status != PreMarketStatus.ACTIVE
            or not pre_market.is_active
        ):
            raise NotFoundError(
                "Pre-market request not found",
                {"pre_market_request_id": str(pre_market_id)},
            )

        existing = await self.repo.get_open_for_pair(current_user.id, pre_market_id)
        if existing:
            raise ConflictError(
                f"You already have a {existing.status.value} access request for this listing",
                {
                    "grant_access_id": str(existing.id),
                    "status": existing.status.value,
                },
            )

        grant = await self.repo.create(
            agent_id=current_user.id,
            pre_market_id=pre_market_id,
            currency=settings.GRANT_ACCESS_CURRENCY,
        )
        await self.pre_market_repo.add_viewer(
            pre_market_id, current_user.id, ViewerType.NORMAL
        )

        self.events.emit(
            GrantAccessRequested(
                grant_access_id=grant.id,
                agent_id=current_user.id,
                pre_market_request_id=pre_market_id,
            )
        )
        logger.info(
            f"Grant access requested: grant={grant.id} agent={current_user.id} "
            f"request={pre_market_id}"
        )
        return self.mapper.one(grant, GrantAccessOut)

    async def admin_decide(
        self,
        grant_id: uuid.UUID,
        current_user,
        is_free: bool,
        charge_amount=None,
        notes: Optional[str] = None,
    ) -> GrantAccessOut:
        await self.permission.check_admin(current_user)
        grant = await self._get_grant(grant_id)

        amount = None if is_free else self._parse_charge_amount(charge_amount)

        if grant.status != GrantAccessStatus.PENDING:
            raise ConflictError(
                f"Grant access request is already {grant.status.value}",
                {"status": grant.status.value},
            )

        if is_free:
            applied = await self.repo.approve_free(grant_id, current_user.id, notes)
            if not applied:
                await self._lost_race(grant_id, "grant free access to")
            self.events.emit(
                GrantAccessApproved(
                    grant_access_id=grant.id,
                    agent_id=grant.agent_id,
                    pre_market_request_id=grant.pre_market_request_id,
                    is_free=True,
                )
            )
            await self.pre_market_repo.add_viewer(
                grant.pre_market_request_id, grant.agent_id, ViewerType.GRANT_ACCESS
            )
            logger.info(f"Admin {current_user.id} granted free access: grant={grant_id}")
        else:
            repriced = (
                grant.charge_amount is not None
                and Decimal(grant.charge_amount) != amount
            )
            stale_intent_id = grant.payment_intent_id if repriced else None
            applied = await self.repo.set_price(
                grant_id, current_user.id, amount, notes
            )
            if not applied:
                await self._lost_race(grant_id, "price")
            if stale_intent_id:
                await self._cancel_stale_intent(stale_intent_id, grant_id)
            self.events.emit(
                PaymentRequested(
                    grant_access_id=grant.id,
                    agent_id=grant.agent_id,
                    pre_market_request_id=grant.pre_market_request_id,
                    amount=amount,
                    currency=grant.currency,
                )
            )
            logger.info(
                f"Admin {current_user.id} priced grant={grant_id} at "
                f"{amount} {grant.currency}"
            )

        return self.mapper.one(await self._get_grant(grant_id), GrantAccessOut)

    async def _cancel_stale_intent(self, payment_intent_id: str, grant_id: uuid.UUID):
        """Void an intent issued for a previous price. Failure only logs."""
        try:
            await self.gateway.cancel_payment_intent(payment_intent_id)
        except ExternalServiceError as e:
            logger.warning(
                f"Could not cancel stale intent {payment_intent_id} for "
                f"grant={grant_id}: {e}"
            )

    async def admin_reject(
        self, grant_id: uuid.UUID, current_user, notes: Optional[str] = None
    ) -> GrantAccessOut:
        await self.permission.check_admin(current_user)
        grant = await self._get_grant(grant_id)

        if grant.status != GrantAccessStatus.PENDING:
            raise ConflictError(
                f"Grant access request is already {grant.status.value}",
                {"status": grant.status.value},
            )

        applied = await self.repo.reject(
            grant_id, grant.pre_market_request_id, current_user.id, notes
        )
        if not applied:
            await self._lost_race(grant_id, "reject")

        self.events.emit(
            GrantAccessRejected(
                grant_access_id=grant.id,
                agent_id=grant.agent_id,
                pre_market_request_id=grant.pre_market_request_id,
                notes=notes,
            )
        )
        logger.info(
            f"Admin {current_user.id} rejected grant access {grant_id}"
            + (f": {notes}" if notes else "")
        )
        return self.mapper.one(await self._get_grant(grant_id), GrantAccessOut)

    async def create_payment_intent(
        self, current_user, grant_id: uuid.UUID
    ) -> PaymentIntentOut:
        await self.permission.check_agent(current_user)
        grant = await self._get_grant(grant_id)

        if grant.agent_id != current_user.id:
            raise ForbiddenError("This access request belongs to another agent")
        if grant.status != GrantAccessStatus.PENDING:
            raise ValidationError(
                f"Access request is {grant.status.value} and cannot be paid",
                {"status": grant.status.value},
            )
        if grant.charge_amount is None:
            raise ValidationError("No charge amount has been set for this request yet")
        if grant.failure_count >= settings.GRANT_ACCESS_MAX_PAYMENT_FAILURES:
            raise ValidationError(
                "Payment attempt limit reached. Wait for an admin to review the request.",
                {"failure_count": grant.failure_count},
            )

        amount = Decimal(grant.charge_amount)

        if grant.payment_intent_id:
            try:
                existing = await self.gateway.retrieve_payment_intent(
                    grant.payment_intent_id
                )
            except ExternalServiceError:
                logger.warning(
                    f"Could not load intent {grant.payment_intent_id}, creating a new one"
                )
            else:
                if self.gateway.is_reusable(existing, amount):
                    logger.info(
                        f"Reusing open payment intent {existing['id']} for grant={grant_id}"
                    )
                    return self._intent_out(grant, existing, amount)

        intent = await self.gateway.create_payment_intent(
            amount=amount,
            currency=grant.currency,
            metadata={
                "grantAccessId": grant.id,
                "agentId": grant.agent_id,
                "preMarketRequestId": grant.pre_market_request_id,
            },
            idempotency_key=(
                f"grant-access-{grant.id}-{grant.failure_count}-{to_minor_units(amount)}"
            ),
        )

        applied = await self.repo.set_payment_intent(grant.id, intent["id"])
        if not applied:
            await self._lost_race(grant_id, "attach a payment intent to")

        logger.info(f"Payment intent {intent['id']} issued for grant={grant_id}")
        return self._intent_out(grant, intent, amount)

    @staticmethod
    def _intent_out(grant, intent: dict, amount: Decimal) -> PaymentIntentOut:
        return PaymentIntentOut(
            grant_access_id=grant.id,
            payment_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            amount=float(amount),
            currency=grant.currency,
        )

    async def _resolve_for_intent(self, intent: dict) -> Optional[GrantAccessRequest]:
        intent_id = intent.get("id")
        grant = await self.repo.get_by_intent(intent_id) if intent_id else None
        if grant:
            return grant

        raw_id = (intent.get("metadata") or {}).get("grantAccessId")
        if not raw_id:
            return None
        try:
            grant_id = uuid.UUID(str(raw_id))
        except ValueError:
            logger.warning(f"Intent {intent_id} carries invalid grantAccessId {raw_id!r}")
            return None
        return await self.repo.get_by_id(grant_id)

    @staticmethod
    def _charge_mismatch(grant: GrantAccessRequest, intent: dict) -> Optional[str]:
        """Why ``intent`` does not pay the current charge, or None when it does.

        Intents created for an earlier price carry the old amount.
        """
        if grant.charge_amount is None:
            return "no charge amount is set"
        expected = to_minor_units(Decimal(grant.charge_amount))
        paid = intent.get("amount_received") or intent.get("amount")
        if paid is None or int(paid) != expected:
            return f"amount {paid} does not match charge {expected}"
        currency = intent.get("currency")
        if currency and currency.lower() != grant.currency.lower():
            return f"currency {currency} does not match {grant.currency}"
        return None

    async def _attach_if_new(self, grant: GrantAccessRequest, intent_id: Optional[str]):
        if intent_id and grant.payment_intent_id != intent_id:
            await self.repo.attach_intent(grant.id, intent_id)

    async def handle_payment_succeeded(self, intent: dict) -> dict:
        grant = await self._resolve_for_intent(intent)
        if not grant:
            logger.warning(f"No grant access request for payment intent {intent.get('id')}")
            return {"status": "unknown payment"}

        if grant.status == GrantAccessStatus.PAID:
            logger.info(f"Duplicate success for grant={grant.id}, already paid")
            return {"status": "already processed", "grant_access_id": str(grant.id)}

        mismatch = self._charge_mismatch(grant, intent)
        if mismatch:
            logger.warning(
                f"Ignoring success of intent {intent.get('id')} for grant={grant.id}: "
                f"{mismatch}"
            )
            return {"status": "ignored", "grant_access_id": str(grant.id)}

        await self._attach_if_new(grant, intent.get("id"))
        applied = await self.repo.mark_paid(grant.id, utcnow())
        if not applied:
            current = await self._get_grant(grant.id)
            if current.status == GrantAccessStatus.PAID:
                return {"status": "already processed", "grant_access_id": str(grant.id)}
            logger.warning(
                f"Payment succeeded for grant={grant.id} in status "
                f"{current.status.value}; not applied"
            )
            return {"status": "ignored", "grant_access_id": str(grant.id)}

        await self.pre_market_repo.add_viewer(
            grant.pre_market_request_id, grant.agent_id, ViewerType.GRANT_ACCESS
        )
        self.events.emit(
            PaymentSucceeded(
                grant_access_id=grant.id,
                agent_id=grant.agent_id,
                pre_market_request_id=grant.pre_market_request_id,
                amount=Decimal(grant.charge_amount),
                currency=grant.currency,
                payment_intent_id=intent.get("id"),
            )
        )
        logger.info(f"Payment succeeded: grant={grant.id} intent={intent.get('id')}")
        return {"status": "ok", "grant_access_id": str(grant.id)}

    async def handle_payment_failed(self, intent: dict) -> dict:
        grant = await self._resolve_for_intent(intent)
        if not grant:
            logger.warning(f"No grant access request for payment intent {intent.get('id')}")
            return {"status": "unknown payment"}

        if (
            grant.status == GrantAccessStatus.PAID
            or grant.payment_status == PaymentStatus.SUCCEEDED
        ):
            logger.info(f"Ignoring failure for grant={grant.id}, already paid")
            return {"status": "already processed", "grant_access_id": str(grant.id)}

        paid = intent.get("amount")
        if paid is not None and grant.charge_amount is not None and int(paid) != (
            to_minor_units(Decimal(grant.charge_amount))
        ):
            logger.info(
                f"Ignoring failure of stale intent {intent.get('id')} for grant={grant.id}"
            )
            return {"status": "ignored", "grant_access_id": str(grant.id)}

        await self._attach_if_new(grant, intent.get("id"))
        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or intent.get("cancellation_reason")

        applied = await self.repo.record_failure(grant.id, intent.get("id"), reason)
        if not applied:
            current = await self._get_grant(grant.id)
            logger.warning(
                f"Payment failure for grant={grant.id} in status "
                f"{current.status.value}; not applied"
            )
            return {"status": "ignored", "grant_access_id": str(grant.id)}

        current = await self._get_grant(grant.id)
        self.events.emit(
            PaymentFailed(
                grant_access_id=current.id,
                agent_id=current.agent_id,
                pre_market_request_id=current.pre_market_request_id,
                failure_count=current.failure_count,
                reason=reason,
            )
        )
        if current.failure_count >= settings.GRANT_ACCESS_MAX_PAYMENT_FAILURES:
            logger.warning(
                f"Grant={current.id} reached {current.failure_count} failed payments; "
                f"admin review required"
            )
        else:
            logger.info(
                f"Payment failed: grant={current.id} attempt={current.failure_count}"
            )
        return {"status": "ok", "grant_access_id": str(current.id)}

    async def get_access_status(
        self, agent_id: uuid.UUID, pre_market_id: uuid.UUID
    ) -> AccessStatusOut:
        grant = await self.repo.get_latest_for_pair(agent_id, pre_market_id)
        state = access_state_for(grant)
        if grant is None:
            return AccessStatusOut(has_access=False, access=to_out(state))
        return AccessStatusOut(
            has_access=state.has_access,
            status=grant.status,
            payment_status=grant.payment_status,
            charge_amount=(
                float(grant.charge_amount) if grant.charge_amount is not None else None
            ),
            failure_count=grant.failure_count,
            grant_access_id=grant.id,
            access=to_out(state),
        )

    async def get_my_access_status(
        self, current_user, pre_market_id: uuid.UUID
    ) -> AccessStatusOut:
        await self.permission.check_agent(current_user)
        return await self.get_access_status(current_user.id, pre_market_id)

    async def list_agent_requests(self, current_user) -> List[GrantAccessOut]:
        await self.permission.check_agent(current_user)
        grants = await self.repo.list_by_agent(current_user.id)
        return self.mapper.many(grants, GrantAccessOut)

    async def list_payments(
        self,
        current_user,
        page: int = 1,
        limit: int = 20,
        payment_status: Optional[PaymentStatus] = None,
        status: Optional[GrantAccessStatus] = None,
        deleted: bool = False,
    ) -> PaginatedOut:
        await self.permission.check_admin(current_user)
        page, limit = self.paginate.normalize(page, limit)
        grants, total = await self.repo.list_priced(
            offset=self.paginate.offset(page, limit),
            limit=limit,
            payment_status=payment_status,
            status=status,
            deleted=deleted,
        )
        return self.paginate.build(
            self.mapper.many(grants, GrantAccessOut), page, limit, total
        )

    async def payment_stats(self, current_user) -> PaymentStatsOut:
        await self.permission.check_admin(current_user)
        by_status = await self.repo.count_by_status()
        by_payment_status = await self.repo.count_by_payment_status()
        revenue, paid_count = await self.repo.revenue()
        average = (revenue / paid_count) if paid_count else Decimal("0")
        return PaymentStatsOut(
            total_requests=sum(by_status.values()),
            total_revenue=float(revenue),
            average_paid_amount=float(round(average, 2)),
            by_payment_status=by_payment_status,
            by_access_status=by_status,
        )

    # payment record management

    async def _get_payment(self, grant_id: uuid.UUID) -> GrantAccessRequest:
        grant = await self.repo.get_by_id(grant_id)
        if not grant or grant.charge_amount is None:
            raise NotFoundError(
                "Payment record not found", {"grant_access_id": str(grant_id)}
            )
        return grant

    async def _hard_delete(
        self, grant_id: uuid.UUID, admin_id: uuid.UUID, reason: Optional[str]
    ) -> GrantAccessOut:
        grant = await self._get_payment(grant_id)
        out = self.mapper.one(grant, GrantAccessOut)
        if not await self.repo.hard_delete_payment(grant, admin_id, reason):
            raise NotFoundError(
                "Payment record not found", {"grant_access_id": str(grant_id)}
            )
        logger.warning(
            f"Admin {admin_id} permanently deleted payment record {grant_id} "
            f"({out.status.value})"
        )
        return out

    async def _soft_delete(
        self, grant_id: uuid.UUID, admin_id: uuid.UUID, reason: Optional[str]
    ) -> GrantAccessOut:
        grant = await self._get_payment(grant_id)
        if grant.payment_deleted:
            raise ConflictError(
                "Payment record is already deleted", {"grant_access_id": str(grant_id)}
            )
        if not await self.repo.soft_delete_payment(grant_id, admin_id, reason):
            raise ConflictError(
                "Payment record was changed by someone else, try again",
                {"grant_access_id": str(grant_id)},
            )
        logger.info(f"Admin {admin_id} soft deleted payment record {grant_id}")
        return self.mapper.one(await self._get_grant(grant_id), GrantAccessOut)

    async def delete_payment(
        self, current_user, grant_id: uuid.UUID, reason: Optional[str] = None
    ) -> GrantAccessOut:
        """Remove a payment record for good. The agent loses any access it granted."""
        await self.permission.check_admin(current_user)
        return await self._hard_delete(grant_id, current_user.id, reason)

    async def soft_delete_payment(
        self, current_user, grant_id: uuid.UUID, reason: Optional[str] = None
    ) -> GrantAccessOut:
        await self.permission.check_admin(current_user)
        return await self._soft_delete(grant_id, current_user.id, reason)

    async def bulk_delete_payments(
        self,
        current_user,
        grant_ids: List[uuid.UUID],
        reason: Optional[str] = None,
        permanent: bool = False,
    ) -> BulkDeleteOut:
        await self.permission.check_admin(current_user)
        delete = self._hard_delete if permanent else self._soft_delete
        result = BulkDeleteOut()
        for grant_id in dict.fromkeys(grant_ids):
            try:
                await delete(grant_id, current_user.id, reason)
            except (NotFoundError, ConflictError) as e:
                logger.info(f"Skipped payment record {grant_id} in bulk delete: {e}")
                result.skipped.append(grant_id)
            else:
                result.deleted.append(grant_id)
        return result

    async def restore_payment(self, current_user, grant_id: uuid.UUID) -> GrantAccessOut:
        await self.permission.check_admin(current_user)
        grant = await self._get_grant(grant_id)
        if not grant.payment_deleted:
            raise ConflictError(
                "Payment record is not deleted", {"grant_access_id": str(grant_id)}
            )
        if not await self.repo.restore_payment(grant_id, current_user.id):
            raise ConflictError(
                "Payment record was changed by someone else, try again",
                {"grant_access_id": str(grant_id)},
            )
        logger.info(f"Admin {current_user.id} restored payment record {grant_id}")
        return self.mapper.one(await self._get_grant(grant_id), GrantAccessOut)

    async def payment_deletion_history(
        self, current_user, grant_id: uuid.UUID
    ) -> PaymentDeletionHistoryOut:
        await self.permission.check_admin(current_user)
        grant = await self.repo.get_by_id(grant_id)
        entries = await self.repo.deletion_history(grant_id)
        if grant is None and not entries:
            raise NotFoundError(
                "Payment record not found", {"grant_access_id": str(grant_id)}
            )

        history = PaymentDeletionHistoryOut(
            grant_access_id=grant_id,
            payment_deleted=True,
            entries=self.mapper.many(entries, PaymentDeletionEntryOut),
        )
        if grant is not None:
            history.payment_deleted = grant.payment_deleted
            history.payment_deleted_at = grant.payment_deleted_at
            history.payment_deleted_by = grant.payment_deleted_by
            history.payment_delete_reason = grant.payment_delete_reason
        else:
            last = entries[-1]
            history.payment_deleted_at = last.created_at
            history.payment_deleted_by = last.admin_id
            history.payment_delete_reason = last.reason
        return history
