"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentMethodModel, PaymentModel, TransactionModel, WebhookModel

__all__ = [
    "Base",
    "metadata",
    "PaymentMethodModel",
    "PaymentModel",
    "TransactionModel",
    "WebhookModel",
]
