from enum import Enum


class UserRole(str, Enum):
    RENTER = "Renter"
    AGENT = "Agent"
    ADMIN = "Admin"


class PreMarketStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DELETED = "deleted"


class Visibility(str, Enum):
    PRIVATE = "PRIVATE"
    SHARED = "SHARED"


class ViewerType(str, Enum):
    GRANT_ACCESS = "grant_access"
    NORMAL = "normal"


class GrantAccessStatus(str, Enum):
    PENDING = "pending"
    FREE = "free"
    REJECTED = "rejected"
    PAID = "paid"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentDeletionAction(str, Enum):
    SOFT_DELETE = "soft_delete"
    RESTORE = "restore"
    HARD_DELETE = "hard_delete"
