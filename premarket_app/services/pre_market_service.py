import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from premarket_app.core.check_permission import CheckRolePermission
from premarket_app.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from premarket_app.core.events import (
    EventBus,
    PreMarketRequestCreated,
    PreMarketRequestExpired,
    event_bus,
)
from premarket_app.core.paginate import ORMMapper, PaginatePage
from premarket_app.models.enums import PreMarketStatus, ViewerType, Visibility
from premarket_app.models.models import GrantAccessRequest, PreMarketRequest
from premarket_app.models.utils import utcnow
from premarket_app.repos.grant_access_repo import GrantAccessRepo
from premarket_app.repos.pre_market_repo import PreMarketRepo
from premarket_app.schemas.schema import (
    AdminStatusSchema,
    PaginatedOut,
    PreMarketAgentOut,
    PreMarketAgentUnlockedOut,
    PreMarketBaseOut,
    PreMarketCreateSchema,
    PreMarketOut,
    PreMarketUpdateSchema,
)

from .access_state import access_state_for

logger = logging.getLogger(__name__)

NULLABLE_FIELDS = {"description", "preferences", "expires_at"}


@dataclass
class ExpirationResult:
    expired_count: int = 0
    deleted_count: int = 0
    failed_count: int = 0


class PreMarketService:
    def __init__(self, db, events: Optional[EventBus] = None):
        self.repo: PreMarketRepo = PreMarketRepo(db)
        self.grant_repo: GrantAccessRepo = GrantAccessRepo(db)
        self.events: EventBus = events or event_bus
        self.permission: CheckRolePermission = CheckRolePermission()
        self.paginate: PaginatePage = PaginatePage()
        self.mapper: ORMMapper = ORMMapper()

    async def _get_owned(self, pre_market_id: uuid.UUID, current_user) -> PreMarketRequest:
        request = await self.repo.get_by_id(pre_market_id)
        if not request or request.status == PreMarketStatus.DELETED:
            raise NotFoundError(
                "Pre-market request not found",
                {"pre_market_request_id": str(pre_market_id)},
            )
        if request.renter_id != current_user.id:
            raise ForbiddenError("Not Allowed")
        return request

    async def _reload(self, pre_market_id: uuid.UUID) -> PreMarketRequest:
        request = await self.repo.get_by_id(pre_market_id)
        if not request:
            raise NotFoundError(
                "Pre-market request not found",
                {"pre_market_request_id": str(pre_market_id)},
            )
        return request

    # renter

    async def create_request(
        self, current_user, data: PreMarketCreateSchema
    ) -> PreMarketOut:
        await self.permission.check_renter(current_user)
        data_dict = data.model_dump()
        data_dict["renter_id"] = current_user.id
        request = await self.repo.create(data_dict)
        self.events.emit(
            PreMarketRequestCreated(
                pre_market_request_id=request.id, renter_id=current_user.id
            )
        )
        logger.info(
            f"Pre-market request {request.request_id} created by renter {current_user.id}"
        )
        return self.mapper.one(request, PreMarketOut)

    async def list_own_requests(self, current_user) -> List[PreMarketOut]:
        await self.permission.check_renter(current_user)
        requests = await self.repo.list_by_renter(current_user.id)
        return self.mapper.many(requests, PreMarketOut)

    async def update_request(
        self, current_user, pre_market_id: uuid.UUID, data: PreMarketUpdateSchema
    ) -> PreMarketOut:
        await self.permission.check_renter(current_user)
        request = await self._get_owned(pre_market_id, current_user)

        values = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in NULLABLE_FIELDS
        }
        if not values:
            return self.mapper.one(request, PreMarketOut)

        earliest = values.get("moving_earliest", request.moving_earliest)
        latest = values.get("moving_latest", request.moving_latest)
        if latest < earliest:
            raise ValidationError("moving_latest must not be before moving_earliest")
        price_min = values.get("price_min", request.price_min)
        price_max = values.get("price_max", request.price_max)
        if price_max < price_min:
            raise ValidationError("price_max must not be below price_min")

        if not await self.repo.update_fields(pre_market_id, values):
            raise NotFoundError("Pre-market request not found")
        return self.mapper.one(await self._reload(pre_market_id), PreMarketOut)

    async def toggle_active(self, current_user, pre_market_id: uuid.UUID) -> PreMarketOut:
        await self.permission.check_renter(current_user)
        request = await self._get_owned(pre_market_id, current_user)
        if request.status != PreMarketStatus.ACTIVE:
            raise ValidationError(
                f"A {request.status.value} request cannot be toggled",
                {"status": request.status.value},
            )

        if not await self.repo.set_active(pre_market_id, not request.is_active):
            raise ConflictError("The request was changed by someone else, try again")
        request = await self._reload(pre_market_id)
        logger.info(
            f"Pre-market request {request.request_id} is_active={request.is_active}"
        )
        return self.mapper.one(request, PreMarketOut)

    async def delete_request(self, current_user, pre_market_id: uuid.UUID) -> dict:
        await self.permission.check_renter(current_user)
        await self._get_owned(pre_market_id, current_user)
        if not await self.repo.soft_delete(pre_market_id):
            raise NotFoundError("Pre-market request not found")
        logger.info(f"Pre-market request {pre_market_id} soft-deleted by renter")
        return {"id": str(pre_market_id), "status": PreMarketStatus.DELETED.value}

    # agent

    @staticmethod
    def agent_view(request: PreMarketRequest, grant: Optional[GrantAccessRequest]) -> dict:
        """Serialize a request for one agent, with renter PII only when unlocked."""
        base = PreMarketBaseOut.model_validate(request).model_dump()
        state = access_state_for(grant)
        if not state.has_access:
            return PreMarketAgentOut(**base, has_access=False).model_dump(mode="json")

        renter = request.renter
        return PreMarketAgentUnlockedOut(
            **base,
            has_access=True,
            renter_name=renter.full_name,
            renter_email=renter.email,
            renter_phone=renter.phone_number,
        ).model_dump(mode="json")

    async def list_for_agent(
        self, current_user, page: int = 1, limit: int = 20
    ) -> PaginatedOut:
        await self.permission.check_agent(current_user)
        page, limit = self.paginate.normalize(page, limit)
        requests, total = await self.repo.list_for_agent(
            current_user.id, self.paginate.offset(page, limit), limit
        )
        grants = await self.grant_repo.get_open_for_agent(
            current_user.id, [r.id for r in requests]
        )
        items = [self.agent_view(r, grants.get(r.id)) for r in requests]
        return self.paginate.build(items, page, limit, total)

    async def get_for_agent(self, current_user, pre_market_id: uuid.UUID) -> dict:
        await self.permission.check_agent(current_user)
        request = await self.repo.get_for_agent(pre_market_id, current_user.id)
        if not request:
            raise NotFoundError(
                "Pre-market request not found",
                {"pre_market_request_id": str(pre_market_id)},
            )
        grant = await self.grant_repo.get_open_for_pair(current_user.id, pre_market_id)
        await self.repo.add_viewer(pre_market_id, current_user.id, ViewerType.NORMAL)
        return self.agent_view(request, grant)

    async def set_visibility(
        self, current_user, pre_market_id: uuid.UUID, visibility: Visibility
    ) -> dict:
        await self.permission.check_agent(current_user)
        grant = await self.grant_repo.get_open_for_pair(current_user.id, pre_market_id)
        if not access_state_for(grant).has_access:
            raise ForbiddenError(
                "Only an agent with unlocked access can change visibility"
            )
        if not await self.repo.update_fields(pre_market_id, {"visibility": visibility}):
            raise NotFoundError("Pre-market request not found")
        request = await self._reload(pre_market_id)
        logger.info(
            f"Agent {current_user.id} set {request.request_id} visibility to {visibility.value}"
        )
        return self.agent_view(request, grant)

    # admin

    async def list_for_admin(
        self,
        current_user,
        page: int = 1,
        limit: int = 20,
        status: Optional[PreMarketStatus] = None,
        is_active: Optional[bool] = None,
    ) -> PaginatedOut:
        await self.permission.check_admin(current_user)
        page, limit = self.paginate.normalize(page, limit)
        requests, total = await self.repo.list_all(
            self.paginate.offset(page, limit), limit, status=status, is_active=is_active
        )
        return self.paginate.build(
            self.mapper.many(requests, PreMarketOut), page, limit, total
        )

    async def get_for_admin(self, current_user, pre_market_id: uuid.UUID) -> PreMarketOut:
        await self.permission.check_admin(current_user)
        return self.mapper.one(await self._reload(pre_market_id), PreMarketOut)

    async def admin_update_status(
        self, current_user, pre_market_id: uuid.UUID, data: AdminStatusSchema
    ) -> PreMarketOut:
        await self.permission.check_admin(current_user)
        await self._reload(pre_market_id)

        values = data.model_dump(exclude_none=True)
        if not values:
            raise ValidationError("Provide status or is_active")
        if values.get("status") == PreMarketStatus.DELETED:
            values.setdefault("is_active", False)
            values["deleted_at"] = utcnow()
        elif "status" in values:
            values["deleted_at"] = None

        await self.repo.force_update(pre_market_id, values)
        logger.info(f"Admin {current_user.id} updated request {pre_market_id}: {values}")
        return self.mapper.one(await self._reload(pre_market_id), PreMarketOut)

    async def admin_delete(self, current_user, pre_market_id: uuid.UUID) -> dict:
        await self.permission.check_admin(current_user)
        if not await self.repo.hard_delete(pre_market_id):
            raise NotFoundError(
                "Pre-market request not found",
                {"pre_market_request_id": str(pre_market_id)},
            )
        logger.info(f"Admin {current_user.id} hard-deleted request {pre_market_id}")
        return {"id": str(pre_market_id), "deleted": True}

    # sweep

    async def expire_requests(
        self, now: Optional[datetime] = None, hard_retire_days: int = 30
    ) -> ExpirationResult:
        """Retire every active request whose moving window or deadline has passed.

        A failing item is rolled back, counted and logged; the rest of the
        batch still runs. Errors loading the batch itself propagate.
        """
        now = now or utcnow()
        today = now.date()
        retire_before = today - timedelta(days=hard_retire_days)
        result = ExpirationResult()

        candidates = await self.repo.find_expirable_ids(today, now)
        for pre_market_id, moving_latest, renter_id in candidates:
            retire = moving_latest < retire_before
            try:
                applied = await self.repo.expire(pre_market_id, now, retire=retire)
            except Exception:
                result.failed_count += 1
                logger.exception(f"Failed to expire pre-market request {pre_market_id}")
                continue

            if not applied:
                logger.info(f"Request {pre_market_id} changed during sweep, skipped")
                continue

            if retire:
                result.deleted_count += 1
            else:
                result.expired_count += 1

            self.events.emit(
                PreMarketRequestExpired(
                    pre_market_request_id=pre_market_id,
                    renter_id=renter_id,
                    retired=retire,
                )
            )
        return result
