import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi_utils.cbv import cbv
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_app.core.get_current_user import get_current_user
from premarket_app.core.get_db import get_db_async
from premarket_app.core.response import api_response
from premarket_app.core.safe_handler import safe_handler
from premarket_app.models.enums import PreMarketStatus
from premarket_app.models.models import User
from premarket_app.schemas.schema import AdminStatusSchema
from premarket_app.services.pre_market_service import PreMarketService

router = APIRouter(prefix="/admin/pre-market", tags=["Admin Pre-Market"])


@cbv(router=router)
class AdminPreMarketRoutes:
    db: AsyncSession = Depends(get_db_async)
    current_user: User = Depends(get_current_user)

    @router.get("/all")
    @safe_handler
    async def list_all(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[PreMarketStatus] = None,
        is_active: Optional[bool] = None,
    ):
        result = await PreMarketService(self.db).list_for_admin(
            self.current_user, page, limit, status=status, is_active=is_active
        )
        return api_response(result)

    @router.get("/{pre_market_id}")
    @safe_handler
    async def get(self, pre_market_id: uuid.UUID):
        result = await PreMarketService(self.db).get_for_admin(
            self.current_user, pre_market_id
        )
        return api_response(result)

    @router.patch("/{pre_market_id}/status")
    @safe_handler
    async def update_status(self, pre_market_id: uuid.UUID, data: AdminStatusSchema):
        result = await PreMarketService(self.db).admin_update_status(
            self.current_user, pre_market_id, data
        )
        return api_response(result, "Status updated")

    @router.delete("/{pre_market_id}")
    @safe_handler
    async def delete(self, pre_market_id: uuid.UUID):
        result = await PreMarketService(self.db).admin_delete(
            self.current_user, pre_market_id
        )
        return api_response(result, "Pre-market request permanently deleted")
