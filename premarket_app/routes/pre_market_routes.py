import uuid

from fastapi import APIRouter, Depends, status
from fastapi_utils.cbv import cbv
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_app.core.events import EventBus, get_event_bus
from premarket_app.core.get_current_user import get_current_user
from premarket_app.core.get_db import get_db_async
from premarket_app.core.response import api_response
from premarket_app.core.safe_handler import safe_handler
from premarket_app.models.models import User
from premarket_app.schemas.schema import (
    PreMarketCreateSchema,
    PreMarketUpdateSchema,
    VisibilitySchema,
)
from premarket_app.services.pre_market_service import PreMarketService

router = APIRouter(prefix="/pre-market", tags=["Pre-Market Requests"])


@cbv(router=router)
class PreMarketRoutes:
    db: AsyncSession = Depends(get_db_async)
    current_user: User = Depends(get_current_user)
    events: EventBus = Depends(get_event_bus)

    def service(self) -> PreMarketService:
        return PreMarketService(self.db, events=self.events)

    @router.post("/create", status_code=status.HTTP_201_CREATED)
    @safe_handler
    async def create(self, data: PreMarketCreateSchema):
        result = await self.service().create_request(self.current_user, data)
        return api_response(result, "Pre-market request created")

    @router.get("/mine")
    @safe_handler
    async def mine(self):
        return api_response(await self.service().list_own_requests(self.current_user))

    @router.get("/agent/all")
    @safe_handler
    async def agent_list(self, page: int = 1, limit: int = 20):
        result = await self.service().list_for_agent(self.current_user, page, limit)
        return api_response(result)

    @router.get("/agent/{pre_market_id}")
    @safe_handler
    async def agent_get(self, pre_market_id: uuid.UUID):
        result = await self.service().get_for_agent(self.current_user, pre_market_id)
        return api_response(result)

    @router.patch("/agent/{pre_market_id}/visibility")
    @safe_handler
    async def set_visibility(self, pre_market_id: uuid.UUID, data: VisibilitySchema):
        result = await self.service().set_visibility(
            self.current_user, pre_market_id, data.visibility
        )
        return api_response(result, "Visibility updated")

    @router.patch("/{pre_market_id}")
    @safe_handler
    async def update(self, pre_market_id: uuid.UUID, data: PreMarketUpdateSchema):
        result = await self.service().update_request(
            self.current_user, pre_market_id, data
        )
        return api_response(result, "Pre-market request updated")

    @router.post("/{pre_market_id}/toggle-active")
    @safe_handler
    async def toggle_active(self, pre_market_id: uuid.UUID):
        result = await self.service().toggle_active(self.current_user, pre_market_id)
        return api_response(result)

    @router.delete("/{pre_market_id}")
    @safe_handler
    async def delete(self, pre_market_id: uuid.UUID):
        result = await self.service().delete_request(self.current_user, pre_market_id)
        return api_response(result, "Pre-market request deleted")
