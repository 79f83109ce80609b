import uuid

from fastapi import APIRouter, Depends, status
from fastapi_utils.cbv import cbv
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_app.core.events import EventBus, get_event_bus
from premarket_app.core.get_current_user import get_current_user
from premarket_app.core.get_db import get_db_async
from premarket_app.core.response import api_response
from premarket_app.core.safe_handler import safe_handler
from premarket_app.fintechs.stripe_client import StripeClient, get_payment_gateway
from premarket_app.models.models import User
from premarket_app.schemas.schema import CreatePaymentIntentSchema
from premarket_app.services.grant_access_service import GrantAccessService

router = APIRouter(prefix="/grant-access", tags=["Grant Access"])


@cbv(router=router)
class GrantAccessRoutes:
    db: AsyncSession = Depends(get_db_async)
    current_user: User = Depends(get_current_user)
    events: EventBus = Depends(get_event_bus)
    gateway: StripeClient = Depends(get_payment_gateway)

    def service(self) -> GrantAccessService:
        return GrantAccessService(self.db, events=self.events, gateway=self.gateway)

    @router.get("/mine")
    @safe_handler
    async def mine(self):
        return api_response(await self.service().list_agent_requests(self.current_user))

    @router.post("/payment/create-intent")
    @safe_handler
    async def create_payment_intent(self, data: CreatePaymentIntentSchema):
        result = await self.service().create_payment_intent(
            self.current_user, data.grant_access_id
        )
        return api_response(result, "Payment intent ready")

    @router.post("/{pre_market_id}/request", status_code=status.HTTP_201_CREATED)
    @safe_handler
    async def request_access(self, pre_market_id: uuid.UUID):
        result = await self.service().request_access(self.current_user, pre_market_id)
        return api_response(result, "Access request submitted")

    @router.get("/{pre_market_id}/status")
    @safe_handler
    async def access_status(self, pre_market_id: uuid.UUID):
        result = await self.service().get_my_access_status(
            self.current_user, pre_market_id
        )
        return api_response(result)
