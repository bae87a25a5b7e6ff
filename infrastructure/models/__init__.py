"""Infrastructure models package exports."""
from .base import Base, metadata
from .lending import (
    AuditLogModel,
    LocationModel,
    PaymentModel,
    TransactionModel,
    UserModel,
)

__all__ = [
    "Base",
    "metadata",
    "UserModel",
    "LocationModel",
    "TransactionModel",
    "PaymentModel",
    "AuditLogModel",
]
