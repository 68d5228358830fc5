"""
Payment DTOs (Pydantic v2) used at application boundaries.

Request models only shape input; business rules (amount range, currency
allow-list, provider-specific fields) are checked by the services so they
surface as domain ``ValidationError``.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain.payment.entity import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Transaction,
)


def _lower(v: Optional[str]) -> Optional[str]:
    return v.strip().lower() if isinstance(v, str) else v


class CreatePaymentRequest(BaseModel):
    amount: Decimal
    currency: Optional[str] = None
    provider: Optional[str] = None
    payment_method_id: Optional[int] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    auto_confirm: bool = False

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: Optional[str]) -> Optional[str]:
        return _lower(v)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if isinstance(v, str) else v


class RegisterPaymentMethodRequest(BaseModel):
    """
    Payment method registration input.

    stripe: ``payment_method_id`` (pm_xxx) plus optional ``email``/``name`` for
    the customer record. paypal: payer ``email`` and optional ``payer_id``.
    """

    provider: str
    is_default: bool = False
    payment_method_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    payer_id: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: Optional[str]) -> Optional[str]:
        return _lower(v)


class UpdatePaymentMethodRequest(BaseModel):
    """Partial update; omitted flags are left unchanged."""

    is_default: Optional[bool] = None
    is_active: Optional[bool] = None


class ConfirmPaymentRequest(BaseModel):
    payment_method: Optional[str] = None
    return_url: Optional[str] = None

    def to_provider_params(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class RefundPaymentRequest(BaseModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = Field(default=None, max_length=255)


class PaymentFilters(BaseModel):
    status: Optional[PaymentStatus] = None
    provider: Optional[str] = None
    type: Optional[PaymentType] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=200)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: Optional[str]) -> Optional[str]:
        return _lower(v)


class ProviderPayment(BaseModel):
    """Normalized provider response: id, raw status, raw snapshot."""

    id: str
    status: str
    raw: dict[str, Any] = Field(default_factory=dict)
    customer_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    id: str
    type: str
    provider: str
    # resource the event is about (stripe data.object, paypal resource)
    resource: dict[str, Any] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookResult(BaseModel):
    webhook_id: Optional[int] = None
    provider: str
    event_id: str
    event_type: str
    status: str
    duplicate: bool = False


class PaymentStats(BaseModel):
    total_payments: int = 0
    successful_payments: int = 0
    failed_payments: int = 0
    pending_payments: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_refunded: Decimal = Decimal("0.00")
    by_provider: dict[str, Decimal] = Field(default_factory=dict)


class TransactionOut(BaseModel):
    uuid: str
    type: str
    amount: Decimal
    currency: str
    status: str
    provider_transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, tx: Transaction) -> "TransactionOut":
        return cls(
            uuid=tx.uuid,
            type=tx.type.value,
            amount=tx.amount,
            currency=tx.currency,
            status=tx.status.value,
            provider_transaction_id=tx.provider_transaction_id,
            processed_at=tx.processed_at,
        )


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    uuid: str
    provider: str
    provider_payment_id: Optional[str] = None
    amount: Decimal
    currency: str
    formatted_amount: str
    status: str
    type: str
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    payment_method_id: Optional[int] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    transactions: list[TransactionOut] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, payment: Payment, transactions: Optional[list[Transaction]] = None) -> "PaymentOut":
        return cls(
            uuid=payment.uuid,
            provider=payment.provider,
            provider_payment_id=payment.provider_payment_id,
            amount=payment.amount,
            currency=payment.currency,
            formatted_amount=payment.formatted_amount(),
            status=payment.status.value,
            type=payment.type.value,
            description=payment.description,
            metadata=payment.metadata,
            payment_method_id=payment.payment_method_id,
            processed_at=payment.processed_at,
            failed_at=payment.failed_at,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            transactions=[TransactionOut.from_entity(t) for t in transactions or []],
        )


class PaymentMethodOut(BaseModel):
    id: int
    provider: str
    type: str
    display_name: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_default: bool
    is_active: bool
    is_expired: bool
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, method: PaymentMethod) -> "PaymentMethodOut":
        return cls(
            id=method.id,
            provider=method.provider,
            type=method.type.value,
            display_name=method.display_name(),
            metadata=method.metadata,
            is_default=method.is_default,
            is_active=method.is_active,
            is_expired=method.is_expired(),
            expires_at=method.expires_at,
            created_at=method.created_at,
        )
