import uuid
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from premarket_app.core.errors import ConflictError
from premarket_app.models.enums import (
    GrantAccessStatus,
    PaymentDeletionAction,
    PaymentStatus,
)
from premarket_app.models.models import (
    GrantAccessPaymentDeletion,
    GrantAccessPaymentFailure,
    GrantAccessRequest,
)
from premarket_app.models.utils import utcnow

from .pre_market_repo import PreMarketRepo

OPEN_STATUSES = (
    GrantAccessStatus.PENDING,
    GrantAccessStatus.FREE,
    GrantAccessStatus.PAID,
)


class GrantAccessRepo:
    def __init__(self, db):
        self.db = db

    async def get_by_id(self, grant_id: uuid.UUID) -> Optional[GrantAccessRequest]:
        result = await self.db.execute(
            select(GrantAccessRequest)
            .where(GrantAccessRequest.id == grant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_intent(self, payment_intent_id: str) -> Optional[GrantAccessRequest]:
        result = await self.db.execute(
            select(GrantAccessRequest)
            .where(GrantAccessRequest.payment_intent_id == payment_intent_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_open_for_pair(
        self, agent_id: uuid.UUID, pre_market_id: uuid.UUID
    ) -> Optional[GrantAccessRequest]:
        result = await self.db.execute(
            select(GrantAccessRequest)
            .where(
                GrantAccessRequest.agent_id == agent_id,
                GrantAccessRequest.pre_market_request_id == pre_market_id,
                GrantAccessRequest.status.in_(OPEN_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_latest_for_pair(
        self, agent_id: uuid.UUID, pre_market_id: uuid.UUID
    ) -> Optional[GrantAccessRequest]:
        """Open record for the pair if any, else the most recent rejected one."""
        open_record = await self.get_open_for_pair(agent_id, pre_market_id)
        if open_record:
            return open_record
        result = await self.db.execute(
            select(GrantAccessRequest)
            .where(
                GrantAccessRequest.agent_id == agent_id,
                GrantAccessRequest.pre_market_request_id == pre_market_id,
            )
            .order_by(GrantAccessRequest.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def get_open_for_agent(
        self, agent_id: uuid.UUID, pre_market_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, GrantAccessRequest]:
        ids = list(pre_market_ids)
        if not ids:
            return {}
        result = await self.db.execute(
            select(GrantAccessRequest).where(
                GrantAccessRequest.agent_id == agent_id,
                GrantAccessRequest.pre_market_request_id.in_(ids),
                GrantAccessRequest.status.in_(OPEN_STATUSES),
            )
        )
        return {g.pre_market_request_id: g for g in result.scalars().all()}

    async def list_by_agent(self, agent_id: uuid.UUID) -> Sequence[GrantAccessRequest]:
        result = await self.db.execute(
            select(GrantAccessRequest)
            .where(GrantAccessRequest.agent_id == agent_id)
            .order_by(GrantAccessRequest.created_at.desc())
        )
        return result.scalars().all()

    async def create(
        self, agent_id: uuid.UUID, pre_market_id: uuid.UUID, currency: str
    ) -> GrantAccessRequest:
        """Insert a pending request and bump the listing's ``match_count``.

        Both writes share one commit.
        """
        grant = GrantAccessRequest(
            agent_id=agent_id,
            pre_market_request_id=pre_market_id,
            status=GrantAccessStatus.PENDING,
            currency=currency,
        )
        self.db.add(grant)
        try:
            await self.db.flush()
            await self.db.execute(PreMarketRepo.match_count_stmt(pre_market_id, 1))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                "An access request for this listing is already open",
                {"pre_market_request_id": str(pre_market_id)},
            )
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return await self.get_by_id(grant.id)

    async def transition(
        self,
        grant_id: uuid.UUID,
        expected: Iterable[GrantAccessStatus],
        values: dict,
        extra_conditions: Iterable = (),
        on_applied=None,
    ) -> bool:
        """Apply ``values`` only if the record is still in one of ``expected``.

        Returns whether the update took effect. A False result means another
        writer moved the record first; callers reread and decide. Writes made
        by ``on_applied`` share the same commit.
        """
        stmt = (
            update(GrantAccessRequest)
            .where(
                GrantAccessRequest.id == grant_id,
                GrantAccessRequest.status.in_(list(expected)),
                *extra_conditions,
            )
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            applied = result.rowcount > 0
            if applied and on_applied is not None:
                await on_applied()
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return applied

    async def approve_free(
        self, grant_id: uuid.UUID, admin_id: uuid.UUID, notes: Optional[str]
    ) -> bool:
        now = utcnow()
        return await self.transition(
            grant_id,
            [GrantAccessStatus.PENDING],
            {
                "status": GrantAccessStatus.FREE,
                "is_free": True,
                "charge_amount": None,
                "payment_amount": None,
                "payment_status": None,
                "decided_by": admin_id,
                "decided_at": now,
                "decision_notes": notes,
            },
            [self._not_succeeded()],
        )

    async def set_price(
        self,
        grant_id: uuid.UUID,
        admin_id: uuid.UUID,
        amount: Decimal,
        notes: Optional[str],
    ) -> bool:
        async def clear_failures():
            await self.db.execute(
                delete(GrantAccessPaymentFailure).where(
                    GrantAccessPaymentFailure.grant_access_id == grant_id
                )
            )

        return await self.transition(
            grant_id,
            [GrantAccessStatus.PENDING],
            {
                "is_free": False,
                "charge_amount": amount,
                "payment_amount": amount,
                "payment_status": PaymentStatus.PENDING,
                "payment_intent_id": None,
                "failure_count": 0,
                "decided_by": admin_id,
                "decided_at": utcnow(),
                "decision_notes": notes,
            },
            [self._not_succeeded()],
            on_applied=clear_failures,
        )

    async def reject(
        self,
        grant_id: uuid.UUID,
        pre_market_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str],
    ) -> bool:
        async def release_match():
            await self.db.execute(PreMarketRepo.match_count_stmt(pre_market_id, -1))

        return await self.transition(
            grant_id,
            [GrantAccessStatus.PENDING],
            {
                "status": GrantAccessStatus.REJECTED,
                "decided_by": admin_id,
                "decided_at": utcnow(),
                "decision_notes": notes,
            },
            [self._not_succeeded()],
            on_applied=release_match,
        )

    async def mark_paid(self, grant_id: uuid.UUID, succeeded_at: datetime) -> bool:
        return await self.transition(
            grant_id,
            [GrantAccessStatus.PENDING],
            {
                "status": GrantAccessStatus.PAID,
                "payment_status": PaymentStatus.SUCCEEDED,
                "succeeded_at": succeeded_at,
            },
            [
                self._not_succeeded(),
                GrantAccessRequest.charge_amount.is_not(None),
            ],
        )

    async def record_failure(
        self, grant_id: uuid.UUID, payment_intent_id: Optional[str], reason: Optional[str]
    ) -> bool:
        """Count a failed attempt and append its timestamp in one commit."""

        async def append_failure():
            self.db.add(
                GrantAccessPaymentFailure(
                    grant_access_id=grant_id,
                    payment_intent_id=payment_intent_id,
                    reason=reason,
                )
            )
            await self.db.flush()

        return await self.transition(
            grant_id,
            [GrantAccessStatus.PENDING],
            {
                "payment_status": PaymentStatus.FAILED,
                "failure_count": GrantAccessRequest.failure_count + 1,
            },
            [
                self._not_succeeded(),
                GrantAccessRequest.charge_amount.is_not(None),
            ],
            on_applied=append_failure,
        )

    async def set_payment_intent(
        self, grant_id: uuid.UUID, payment_intent_id: str
    ) -> bool:
        return await self.transition(
            grant_id,
            [GrantAccessStatus.PENDING],
            {"payment_intent_id": payment_intent_id},
        )

    async def attach_intent(
        self, grant_id: uuid.UUID, payment_intent_id: str
    ) -> bool:
        stmt = (
            update(GrantAccessRequest)
            .where(
                GrantAccessRequest.id == grant_id,
                or_(
                    GrantAccessRequest.payment_intent_id.is_(None),
                    GrantAccessRequest.payment_intent_id != payment_intent_id,
                ),
            )
            .values(payment_intent_id=payment_intent_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return result.rowcount > 0

    async def list_priced(
        self,
        offset: int,
        limit: int,
        payment_status: Optional[PaymentStatus] = None,
        status: Optional[GrantAccessStatus] = None,
        deleted: bool = False,
    ) -> tuple[Sequence[GrantAccessRequest], int]:
        conditions = [
            GrantAccessRequest.charge_amount.is_not(None),
            GrantAccessRequest.payment_deleted.is_(deleted),
        ]
        if payment_status is not None:
            conditions.append(GrantAccessRequest.payment_status == payment_status)
        if status is not None:
            conditions.append(GrantAccessRequest.status == status)

        total = await self.db.scalar(
            select(func.count()).select_from(GrantAccessRequest).where(*conditions)
        )
        result = await self.db.execute(
            select(GrantAccessRequest)
            .where(*conditions)
            .order_by(GrantAccessRequest.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all(), total or 0

    async def count_by_status(self) -> dict:
        result = await self.db.execute(
            select(GrantAccessRequest.status, func.count())
            .where(GrantAccessRequest.payment_deleted.is_(False))
            .group_by(GrantAccessRequest.status)
        )
        return {status.value: count for status, count in result.all()}

    async def count_by_payment_status(self) -> dict:
        result = await self.db.execute(
            select(GrantAccessRequest.payment_status, func.count())
            .where(
                GrantAccessRequest.payment_status.is_not(None),
                GrantAccessRequest.payment_deleted.is_(False),
            )
            .group_by(GrantAccessRequest.payment_status)
        )
        return {status.value: count for status, count in result.all()}

    async def revenue(self) -> tuple[Decimal, int]:
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(GrantAccessRequest.payment_amount), 0),
                func.count(GrantAccessRequest.id),
            ).where(
                GrantAccessRequest.payment_status == PaymentStatus.SUCCEEDED,
                GrantAccessRequest.payment_deleted.is_(False),
            )
        )
        total, count = result.one()
        return Decimal(str(total)), count

    # payment record bookkeeping

    def _record_deletion_action(
        self,
        grant_id: uuid.UUID,
        action: PaymentDeletionAction,
        admin_id: uuid.UUID,
        reason: Optional[str] = None,
    ):
        async def record():
            self.db.add(
                GrantAccessPaymentDeletion(
                    grant_access_id=grant_id,
                    action=action,
                    admin_id=admin_id,
                    reason=reason,
                )
            )
            await self.db.flush()

        return record

    async def soft_delete_payment(
        self, grant_id: uuid.UUID, admin_id: uuid.UUID, reason: Optional[str]
    ) -> bool:
        """Hide a payment record from admin reporting. Access is unaffected."""
        return await self.transition(
            grant_id,
            list(GrantAccessStatus),
            {
                "payment_deleted": True,
                "payment_deleted_at": utcnow(),
                "payment_deleted_by": admin_id,
                "payment_delete_reason": reason,
            },
            [
                GrantAccessRequest.charge_amount.is_not(None),
                GrantAccessRequest.payment_deleted.is_(False),
            ],
            on_applied=self._record_deletion_action(
                grant_id, PaymentDeletionAction.SOFT_DELETE, admin_id, reason
            ),
        )

    async def restore_payment(self, grant_id: uuid.UUID, admin_id: uuid.UUID) -> bool:
        return await self.transition(
            grant_id,
            list(GrantAccessStatus),
            {
                "payment_deleted": False,
                "payment_deleted_at": None,
                "payment_deleted_by": None,
                "payment_delete_reason": None,
            },
            [GrantAccessRequest.payment_deleted.is_(True)],
            on_applied=self._record_deletion_action(
                grant_id, PaymentDeletionAction.RESTORE, admin_id
            ),
        )

    async def hard_delete_payment(
        self, grant: GrantAccessRequest, admin_id: uuid.UUID, reason: Optional[str]
    ) -> bool:
        """Remove the record with its failure history. The audit entry survives."""
        try:
            await self.db.execute(
                delete(GrantAccessPaymentFailure).where(
                    GrantAccessPaymentFailure.grant_access_id == grant.id
                )
            )
            result = await self.db.execute(
                delete(GrantAccessRequest)
                .where(GrantAccessRequest.id == grant.id)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount > 0
            if applied:
                if grant.status != GrantAccessStatus.REJECTED:
                    await self.db.execute(
                        PreMarketRepo.match_count_stmt(grant.pre_market_request_id, -1)
                    )
                await self._record_deletion_action(
                    grant.id, PaymentDeletionAction.HARD_DELETE, admin_id, reason
                )()
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        if applied:
            self.db.expunge(grant)
        return applied

    async def deletion_history(
        self, grant_id: uuid.UUID
    ) -> Sequence[GrantAccessPaymentDeletion]:
        result = await self.db.execute(
            select(GrantAccessPaymentDeletion)
            .where(GrantAccessPaymentDeletion.grant_access_id == grant_id)
            .order_by(GrantAccessPaymentDeletion.created_at)
        )
        return result.scalars().all()

    @staticmethod
    def _not_succeeded():
        return or_(
            GrantAccessRequest.payment_status.is_(None),
            GrantAccessRequest.payment_status != PaymentStatus.SUCCEEDED,
        )
