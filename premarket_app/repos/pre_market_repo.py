import uuid
from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from premarket_app.models.enums import (
    GrantAccessStatus,
    PreMarketStatus,
    ViewerType,
    Visibility,
)
from premarket_app.models.models import (
    GrantAccessPaymentFailure,
    GrantAccessRequest,
    PreMarketRequest,
    PreMarketViewer,
)
from premarket_app.models.utils import utcnow


class PreMarketRepo:
    def __init__(self, db):
        self.db = db

    async def create(self, data: dict) -> PreMarketRequest:
        request = PreMarketRequest(**data)
        self.db.add(request)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return await self.get_by_id(request.id)

    async def get_by_id(self, pre_market_id: uuid.UUID) -> Optional[PreMarketRequest]:
        result = await self.db.execute(
            select(PreMarketRequest)
            .where(PreMarketRequest.id == pre_market_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_renter(self, renter_id: uuid.UUID) -> Sequence[PreMarketRequest]:
        result = await self.db.execute(
            select(PreMarketRequest)
            .where(
                PreMarketRequest.renter_id == renter_id,
                PreMarketRequest.status != PreMarketStatus.DELETED,
            )
            .order_by(PreMarketRequest.created_at.desc())
        )
        return result.scalars().all()

    @staticmethod
    def _agent_visibility(agent_id: uuid.UUID):
        """Active listings stay browsable until another agent unlocks a PRIVATE one."""
        unlocked_ids = select(GrantAccessRequest.pre_market_request_id).where(
            GrantAccessRequest.status.in_(
                [GrantAccessStatus.FREE, GrantAccessStatus.PAID]
            )
        )
        own_ids = select(GrantAccessRequest.pre_market_request_id).where(
            GrantAccessRequest.agent_id == agent_id,
            GrantAccessRequest.status != GrantAccessStatus.REJECTED,
        )
        browsable = and_(
            PreMarketRequest.status == PreMarketStatus.ACTIVE,
            PreMarketRequest.is_active.is_(True),
            or_(
                PreMarketRequest.visibility == Visibility.SHARED,
                PreMarketRequest.id.not_in(unlocked_ids),
                PreMarketRequest.id.in_(own_ids),
            ),
        )
        return browsable, own_ids

    async def list_for_agent(
        self, agent_id: uuid.UUID, offset: int, limit: int
    ) -> tuple[Sequence[PreMarketRequest], int]:
        condition, _ = self._agent_visibility(agent_id)

        total = await self.db.scalar(
            select(func.count()).select_from(PreMarketRequest).where(condition)
        )
        result = await self.db.execute(
            select(PreMarketRequest)
            .where(condition)
            .order_by(PreMarketRequest.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all(), total or 0

    async def get_for_agent(
        self, pre_market_id: uuid.UUID, agent_id: uuid.UUID
    ) -> Optional[PreMarketRequest]:
        """An agent keeps seeing a request it has an open grant on, even once inactive."""
        browsable, own_ids = self._agent_visibility(agent_id)
        result = await self.db.execute(
            select(PreMarketRequest)
            .where(
                PreMarketRequest.id == pre_market_id,
                PreMarketRequest.status != PreMarketStatus.DELETED,
                or_(browsable, PreMarketRequest.id.in_(own_ids)),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_all(
        self,
        offset: int,
        limit: int,
        status: Optional[PreMarketStatus] = None,
        is_active: Optional[bool] = None,
    ) -> tuple[Sequence[PreMarketRequest], int]:
        conditions = []
        if status is not None:
            conditions.append(PreMarketRequest.status == status)
        if is_active is not None:
            conditions.append(PreMarketRequest.is_active.is_(is_active))

        total = await self.db.scalar(
            select(func.count()).select_from(PreMarketRequest).where(*conditions)
        )
        result = await self.db.execute(
            select(PreMarketRequest)
            .where(*conditions)
            .order_by(PreMarketRequest.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return result.scalars().all(), total or 0

    async def update_fields(self, pre_market_id: uuid.UUID, values: dict) -> bool:
        """Update a non-deleted request in place."""
        return await self._conditional_update(
            pre_market_id,
            [PreMarketRequest.status != PreMarketStatus.DELETED],
            values,
        )

    async def set_active(self, pre_market_id: uuid.UUID, is_active: bool) -> bool:
        return await self._conditional_update(
            pre_market_id,
            [
                PreMarketRequest.status == PreMarketStatus.ACTIVE,
                PreMarketRequest.is_active.is_(not is_active),
            ],
            {"is_active": is_active},
        )

    async def soft_delete(self, pre_market_id: uuid.UUID) -> bool:
        return await self._conditional_update(
            pre_market_id,
            [PreMarketRequest.status != PreMarketStatus.DELETED],
            {
                "status": PreMarketStatus.DELETED,
                "is_active": False,
                "deleted_at": utcnow(),
            },
        )

    async def force_update(self, pre_market_id: uuid.UUID, values: dict) -> bool:
        return await self._conditional_update(pre_market_id, [], values)

    async def expire(
        self, pre_market_id: uuid.UUID, now: datetime, retire: bool
    ) -> bool:
        """Move one active request out of the active set.

        The update only applies while the request is still active, so a
        concurrent renter or admin change wins and the item is skipped.
        """
        values = {"is_active": False, "expired_at": now}
        if retire:
            values.update(status=PreMarketStatus.DELETED, deleted_at=now)
        return await self._conditional_update(
            pre_market_id,
            [
                PreMarketRequest.status == PreMarketStatus.ACTIVE,
                PreMarketRequest.is_active.is_(True),
            ],
            values,
        )

    async def hard_delete(self, pre_market_id: uuid.UUID) -> bool:
        grant_ids = select(GrantAccessRequest.id).where(
            GrantAccessRequest.pre_market_request_id == pre_market_id
        )
        try:
            await self.db.execute(
                delete(GrantAccessPaymentFailure).where(
                    GrantAccessPaymentFailure.grant_access_id.in_(grant_ids)
                )
            )
            await self.db.execute(
                delete(GrantAccessRequest).where(
                    GrantAccessRequest.pre_market_request_id == pre_market_id
                )
            )
            await self.db.execute(
                delete(PreMarketViewer).where(
                    PreMarketViewer.pre_market_request_id == pre_market_id
                )
            )
            result = await self.db.execute(
                delete(PreMarketRequest).where(PreMarketRequest.id == pre_market_id)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return result.rowcount > 0

    @staticmethod
    def match_count_stmt(pre_market_id: uuid.UUID, delta: int):
        """Statement shifting ``match_count`` by ``delta``, never below zero.

        Returned unexecuted so callers can run it inside their own commit.
        """
        conditions = [PreMarketRequest.id == pre_market_id]
        if delta < 0:
            conditions.append(PreMarketRequest.match_count >= -delta)
        return (
            update(PreMarketRequest)
            .where(*conditions)
            .values(match_count=PreMarketRequest.match_count + delta)
            .execution_options(synchronize_session=False)
        )

    async def add_viewer(
        self, pre_market_id: uuid.UUID, agent_id: uuid.UUID, viewer_type: ViewerType
    ) -> bool:
        """Record an agent in ``viewed_by``. Repeat calls are no-ops."""
        existing = await self.db.scalar(
            select(PreMarketViewer.id).where(
                PreMarketViewer.pre_market_request_id == pre_market_id,
                PreMarketViewer.agent_id == agent_id,
                PreMarketViewer.viewer_type == viewer_type,
            )
        )
        if existing:
            return False

        self.db.add(
            PreMarketViewer(
                pre_market_request_id=pre_market_id,
                agent_id=agent_id,
                viewer_type=viewer_type,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # another request recorded the same view first
            await self.db.rollback()
            return False
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return True

    async def find_expirable_ids(
        self, today: date, now: datetime
    ) -> List[tuple[uuid.UUID, date, uuid.UUID]]:
        result = await self.db.execute(
            select(
                PreMarketRequest.id,
                PreMarketRequest.moving_latest,
                PreMarketRequest.renter_id,
            )
            .where(
                PreMarketRequest.is_active.is_(True),
                PreMarketRequest.status == PreMarketStatus.ACTIVE,
                or_(
                    PreMarketRequest.moving_latest < today,
                    and_(
                        PreMarketRequest.expires_at.is_not(None),
                        PreMarketRequest.expires_at < now,
                    ),
                ),
            )
            .order_by(PreMarketRequest.moving_latest)
        )
        return [tuple(row) for row in result.all()]

    async def _conditional_update(
        self, pre_market_id: uuid.UUID, conditions: Iterable, values: dict
    ) -> bool:
        stmt = (
            update(PreMarketRequest)
            .where(PreMarketRequest.id == pre_market_id, *conditions)
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        return result.rowcount > 0

    async def _execute(self, stmt):
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        return result
