import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from premarket_app.core.get_db import Base

from .enums import (
    GrantAccessStatus,
    PaymentDeletionAction,
    PaymentStatus,
    PreMarketStatus,
    UserRole,
    ViewerType,
    Visibility,
)
from .utils import generate_request_id, utcnow


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        length=32,
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    email_subscription_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )


class PreMarketRequest(Base):
    __tablename__ = "pre_market_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[str] = mapped_column(
        String(16), unique=True, nullable=False, default=generate_request_id
    )
    renter_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    request_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    moving_earliest: Mapped[date] = mapped_column(Date, nullable=False)
    moving_latest: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    price_min: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    price_max: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    locations: Mapped[list] = mapped_column(JSON, default=list)
    bedrooms: Mapped[list] = mapped_column(JSON, default=list)
    bathrooms: Mapped[list] = mapped_column(JSON, default=list)
    unit_features: Mapped[dict] = mapped_column(JSON, default=dict)
    building_features: Mapped[dict] = mapped_column(JSON, default=dict)
    pet_policy: Mapped[dict] = mapped_column(JSON, default=dict)
    guarantor_required: Mapped[dict] = mapped_column(JSON, default=dict)
    preferences: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[PreMarketStatus] = mapped_column(
        _enum(PreMarketStatus), default=PreMarketStatus.ACTIVE, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    visibility: Mapped[Visibility] = mapped_column(
        _enum(Visibility), default=Visibility.PRIVATE
    )
    match_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expired_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    renter: Mapped["User"] = relationship(lazy="selectin")
    viewers: Mapped[List["PreMarketViewer"]] = relationship(
        back_populates="pre_market_request", lazy="selectin"
    )

    @property
    def viewed_by(self) -> dict:
        return {
            "grant_access_agents": [
                v.agent_id
                for v in self.viewers
                if v.viewer_type == ViewerType.GRANT_ACCESS
            ],
            "normal_agents": [
                v.agent_id for v in self.viewers if v.viewer_type == ViewerType.NORMAL
            ],
        }


class PreMarketViewer(Base):
    __tablename__ = "pre_market_viewers"
    __table_args__ = (
        UniqueConstraint(
            "pre_market_request_id",
            "agent_id",
            "viewer_type",
            name="uq_pre_market_viewer",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pre_market_request_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("pre_market_requests.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    viewer_type: Mapped[ViewerType] = mapped_column(_enum(ViewerType), nullable=False)
    viewed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    pre_market_request: Mapped["PreMarketRequest"] = relationship(
        back_populates="viewers"
    )


class GrantAccessRequest(Base):
    __tablename__ = "grant_access_requests"
    __table_args__ = (
        Index(
            "uq_grant_access_open_pair",
            "agent_id",
            "pre_market_request_id",
            unique=True,
            sqlite_where=text("status != 'rejected'"),
            postgresql_where=text("status != 'rejected'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pre_market_request_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("pre_market_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[GrantAccessStatus] = mapped_column(
        _enum(GrantAccessStatus), default=GrantAccessStatus.PENDING, index=True
    )

    payment_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    payment_status: Mapped[Optional[PaymentStatus]] = mapped_column(
        _enum(PaymentStatus), nullable=True
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    decision_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    charge_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    is_free: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # admin bookkeeping only, access is unaffected
    payment_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )
    payment_deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payment_deleted_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    payment_delete_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    failures: Mapped[List["GrantAccessPaymentFailure"]] = relationship(
        back_populates="grant_access",
        lazy="selectin",
        order_by="GrantAccessPaymentFailure.failed_at",
    )

    @property
    def failed_at(self) -> List[datetime]:
        return [f.failed_at for f in self.failures]


class GrantAccessPaymentFailure(Base):
    __tablename__ = "grant_access_payment_failures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    grant_access_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("grant_access_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    grant_access: Mapped["GrantAccessRequest"] = relationship(
        back_populates="failures"
    )


class GrantAccessPaymentDeletion(Base):
    """Audit trail of admin delete and restore actions on payment records.

    ``grant_access_id`` has no foreign key so entries outlive a hard delete.
    """

    __tablename__ = "grant_access_payment_deletions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    grant_access_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    action: Mapped[PaymentDeletionAction] = mapped_column(
        _enum(PaymentDeletionAction), nullable=False
    )
    admin_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
