from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from premarket_app.models.enums import GrantAccessStatus, PaymentStatus
from premarket_app.models.models import GrantAccessRequest
from premarket_app.schemas.schema import AccessStateOut


@dataclass(frozen=True)
class Locked:
    kind = "locked"
    has_access = False


@dataclass(frozen=True)
class UnlockedFree:
    kind = "unlocked_free"
    has_access = True


@dataclass(frozen=True)
class UnlockedPaid:
    amount: Decimal
    succeeded_at: Optional[datetime]
    kind = "unlocked_paid"
    has_access = True


AccessState = Union[Locked, UnlockedFree, UnlockedPaid]


def access_state_for(grant: Optional[GrantAccessRequest]) -> AccessState:
    """Derive what an agent may see from its grant-access record."""
    if grant is None:
        return Locked()
    if grant.status == GrantAccessStatus.FREE:
        return UnlockedFree()
    if (
        grant.status == GrantAccessStatus.PAID
        and grant.payment_status == PaymentStatus.SUCCEEDED
    ):
        return UnlockedPaid(
            amount=grant.payment_amount or grant.charge_amount,
            succeeded_at=grant.succeeded_at,
        )
    return Locked()


def to_out(state: AccessState) -> AccessStateOut:
    if isinstance(state, UnlockedPaid):
        return AccessStateOut(
            kind=state.kind,
            amount=float(state.amount) if state.amount is not None else None,
            succeeded_at=state.succeeded_at,
        )
    return AccessStateOut(kind=state.kind)
