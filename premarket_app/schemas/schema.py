from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from premarket_app.models.enums import (
    GrantAccessStatus,
    PaymentDeletionAction,
    PaymentStatus,
    PreMarketStatus,
    Visibility,
)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
DESCRIPTION_MAX_LENGTH = 500

Bedroom = Literal["Studio", "1BR", "2BR", "3BR", "4BR+"]
Bathroom = Literal["1", "2", "3", "4+"]

T = TypeVar("T")


class CamelModel(BaseModel):
    """Accepts both snake_case and camelCase keys on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocationSchema(CamelModel):
    borough: str = Field(min_length=1)
    neighborhoods: List[str] = Field(default_factory=list)


class UnitFeatures(CamelModel):
    laundry_in_unit: bool = False
    private_outdoor_space: bool = False
    dishwasher: bool = False


class BuildingFeatures(CamelModel):
    doorman: bool = False
    elevator: bool = False
    laundry_in_building: bool = False


class PetPolicy(CamelModel):
    cats_allowed: bool = False
    dogs_allowed: bool = False


class GuarantorRequired(CamelModel):
    personal_guarantor: bool = False
    third_party_guarantor: bool = False


class PreMarketCreateSchema(CamelModel):
    request_name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    moving_earliest: date
    moving_latest: date
    price_min: Decimal = Field(ge=0)
    price_max: Decimal = Field(ge=0)
    locations: List[LocationSchema] = Field(min_length=1)
    bedrooms: List[Bedroom] = Field(default_factory=list)
    bathrooms: List[Bathroom] = Field(default_factory=list)
    unit_features: UnitFeatures = Field(default_factory=UnitFeatures)
    building_features: BuildingFeatures = Field(default_factory=BuildingFeatures)
    pet_policy: PetPolicy = Field(default_factory=PetPolicy)
    guarantor_required: GuarantorRequired = Field(default_factory=GuarantorRequired)
    preferences: Optional[str] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_ranges(self):
        if self.moving_latest < self.moving_earliest:
            raise ValueError("moving_latest must not be before moving_earliest")
        if self.price_max < self.price_min:
            raise ValueError("price_max must not be below price_min")
        return self


class PreMarketUpdateSchema(CamelModel):
    request_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    moving_earliest: Optional[date] = None
    moving_latest: Optional[date] = None
    price_min: Optional[Decimal] = Field(default=None, ge=0)
    price_max: Optional[Decimal] = Field(default=None, ge=0)
    locations: Optional[List[LocationSchema]] = None
    bedrooms: Optional[List[Bedroom]] = None
    bathrooms: Optional[List[Bathroom]] = None
    unit_features: Optional[UnitFeatures] = None
    building_features: Optional[BuildingFeatures] = None
    pet_policy: Optional[PetPolicy] = None
    guarantor_required: Optional[GuarantorRequired] = None
    preferences: Optional[str] = None
    expires_at: Optional[datetime] = None


class VisibilitySchema(CamelModel):
    visibility: Visibility


class AdminStatusSchema(CamelModel):
    status: Optional[PreMarketStatus] = None
    is_active: Optional[bool] = None


class AdminDecisionSchema(CamelModel):
    is_free: bool
    charge_amount: Optional[Decimal] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class AdminRejectSchema(CamelModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class CreatePaymentIntentSchema(CamelModel):
    grant_access_id: uuid.UUID


class BulkDeletePaymentsSchema(CamelModel):
    grant_access_ids: List[uuid.UUID] = Field(min_length=1, max_length=100)
    reason: Optional[str] = Field(default=None, max_length=1000)
    permanent: bool = False


class RenterInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    full_name: str
    email: str
    phone_number: Optional[str] = None


class ViewedBy(BaseModel):
    grant_access_agents: List[uuid.UUID] = []
    normal_agents: List[uuid.UUID] = []


class PreMarketBaseOut(BaseModel):
    """Listing fields every caller may see."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_id: str
    request_name: str
    description: Optional[str] = None
    moving_earliest: date
    moving_latest: date
    price_min: float
    price_max: float
    locations: List[LocationSchema]
    bedrooms: List[str]
    bathrooms: List[str]
    unit_features: dict
    building_features: dict
    pet_policy: dict
    guarantor_required: dict
    preferences: Optional[str] = None
    status: PreMarketStatus
    is_active: bool
    visibility: Visibility
    match_count: int
    expires_at: Optional[datetime] = None
    created_at: datetime


class PreMarketOut(PreMarketBaseOut):
    """Renter and admin view, never redacted."""

    renter_id: uuid.UUID
    renter: Optional[RenterInfo] = None
    viewed_by: ViewedBy
    expired_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PreMarketAgentOut(PreMarketBaseOut):
    has_access: bool = False


class PreMarketAgentUnlockedOut(PreMarketAgentOut):
    renter_name: str
    renter_email: str
    renter_phone: Optional[str] = None


class GrantAccessOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    pre_market_request_id: uuid.UUID
    agent_id: uuid.UUID
    status: GrantAccessStatus
    payment_amount: Optional[float] = None
    currency: str
    payment_status: Optional[PaymentStatus] = None
    payment_intent_id: Optional[str] = None
    failure_count: int
    failed_at: List[datetime] = []
    succeeded_at: Optional[datetime] = None
    decided_by: Optional[uuid.UUID] = None
    decided_at: Optional[datetime] = None
    decision_notes: Optional[str] = None
    charge_amount: Optional[float] = None
    is_free: Optional[bool] = None
    created_at: datetime
    payment_deleted: bool = False


class PaymentIntentOut(BaseModel):
    grant_access_id: uuid.UUID
    payment_intent_id: str
    client_secret: str
    amount: float
    currency: str


class AccessStateOut(BaseModel):
    kind: Literal["locked", "unlocked_free", "unlocked_paid"]
    amount: Optional[float] = None
    succeeded_at: Optional[datetime] = None


class AccessStatusOut(BaseModel):
    has_access: bool
    status: Optional[GrantAccessStatus] = None
    payment_status: Optional[PaymentStatus] = None
    charge_amount: Optional[float] = None
    failure_count: int = 0
    grant_access_id: Optional[uuid.UUID] = None
    access: AccessStateOut


class PaymentDeletionEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    grant_access_id: uuid.UUID
    action: PaymentDeletionAction
    admin_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None
    created_at: datetime


class PaymentDeletionHistoryOut(BaseModel):
    grant_access_id: uuid.UUID
    payment_deleted: bool
    payment_deleted_at: Optional[datetime] = None
    payment_deleted_by: Optional[uuid.UUID] = None
    payment_delete_reason: Optional[str] = None
    entries: List[PaymentDeletionEntryOut] = []


class BulkDeleteOut(BaseModel):
    deleted: List[uuid.UUID] = []
    skipped: List[uuid.UUID] = []


class PaymentStatsOut(BaseModel):
    total_requests: int
    total_revenue: float
    average_paid_amount: float
    by_payment_status: dict
    by_access_status: dict


class PaginatedOut(BaseModel, Generic[T]):
    items: List[T]
    page: int
    limit: int
    total: int
    total_pages: int

    @field_validator("limit")
    @classmethod
    def clamp_limit(cls, value: int):
        return max(1, min(value, MAX_LIMIT))
