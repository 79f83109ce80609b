import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi_utils.cbv import cbv
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_app.core.events import EventBus, get_event_bus
from premarket_app.core.get_current_user import get_current_user
from premarket_app.core.get_db import get_db_async
from premarket_app.core.response import api_response
from premarket_app.core.safe_handler import safe_handler
from premarket_app.fintechs.stripe_client import StripeClient, get_payment_gateway
from premarket_app.models.enums import GrantAccessStatus, PaymentStatus
from premarket_app.models.models import User
from premarket_app.schemas.schema import (
    AdminDecisionSchema,
    AdminRejectSchema,
    BulkDeletePaymentsSchema,
)
from premarket_app.services.grant_access_service import GrantAccessService

router = APIRouter(prefix="/admin/grant-access", tags=["Admin Grant Access"])


@cbv(router=router)
class AdminGrantAccessRoutes:
    db: AsyncSession = Depends(get_db_async)
    current_user: User = Depends(get_current_user)
    events: EventBus = Depends(get_event_bus)
    gateway: StripeClient = Depends(get_payment_gateway)

    def service(self) -> GrantAccessService:
        return GrantAccessService(self.db, events=self.events, gateway=self.gateway)

    @router.get("/payments")
    @safe_handler
    async def payments(
        self,
        page: int = 1,
        limit: int = 20,
        payment_status: Optional[PaymentStatus] = None,
        status: Optional[GrantAccessStatus] = None,
        deleted: bool = False,
    ):
        result = await self.service().list_payments(
            self.current_user,
            page,
            limit,
            payment_status=payment_status,
            status=status,
            deleted=deleted,
        )
        return api_response(result)

    @router.get("/payments/stats")
    @safe_handler
    async def payment_stats(self):
        result = await self.service().payment_stats(self.current_user)
        return api_response(result)

    @router.post("/payments/bulk-delete")
    @safe_handler
    async def bulk_delete_payments(self, data: BulkDeletePaymentsSchema):
        result = await self.service().bulk_delete_payments(
            self.current_user,
            data.grant_access_ids,
            reason=data.reason,
            permanent=data.permanent,
        )
        return api_response(
            result, f"{len(result.deleted)} payment record(s) deleted"
        )

    @router.delete("/payments/{grant_id}")
    @safe_handler
    async def delete_payment(
        self, grant_id: uuid.UUID, reason: Optional[str] = Query(None, max_length=1000)
    ):
        result = await self.service().delete_payment(
            self.current_user, grant_id, reason=reason
        )
        return api_response(result, "Payment record deleted permanently")

    @router.delete("/payments/{grant_id}/soft")
    @safe_handler
    async def soft_delete_payment(
        self, grant_id: uuid.UUID, reason: Optional[str] = Query(None, max_length=1000)
    ):
        result = await self.service().soft_delete_payment(
            self.current_user, grant_id, reason=reason
        )
        return api_response(result, "Payment record deleted")

    @router.put("/payments/{grant_id}/restore")
    @safe_handler
    async def restore_payment(self, grant_id: uuid.UUID):
        result = await self.service().restore_payment(self.current_user, grant_id)
        return api_response(result, "Payment record restored")

    @router.get("/payments/{grant_id}/deletion-history")
    @safe_handler
    async def payment_deletion_history(self, grant_id: uuid.UUID):
        result = await self.service().payment_deletion_history(
            self.current_user, grant_id
        )
        return api_response(result, "History retrieved successfully")

    @router.post("/{grant_id}/decide")
    @safe_handler
    async def decide(self, grant_id: uuid.UUID, data: AdminDecisionSchema):
        result = await self.service().admin_decide(
            grant_id,
            self.current_user,
            is_free=data.is_free,
            charge_amount=data.charge_amount,
            notes=data.notes,
        )
        return api_response(result, "Decision recorded")

    @router.post("/{grant_id}/reject")
    @safe_handler
    async def reject(self, grant_id: uuid.UUID, data: AdminRejectSchema):
        result = await self.service().admin_reject(
            grant_id, self.current_user, notes=data.notes
        )
        return api_response(result, "Access request rejected")
