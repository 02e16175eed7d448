"""ORM models package -- re-exports all models and the Base class."""

from imagecredit.models.base import Base
from imagecredit.models.user import (
    User,
    CreditTransaction,
)
from imagecredit.models.payment import (
    PaymentRecord,
    Generation,
)

__all__ = [
    "Base",
    "User",
    "CreditTransaction",
    "PaymentRecord",
    "Generation",
]
