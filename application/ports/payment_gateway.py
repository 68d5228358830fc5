"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    RegisterPaymentMethodRequest,
    WebhookEvent,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentMethod


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Ledger-touching operations receive the caller's unit of work; the caller
    owns commit/rollback.
    """

    provider: str

    def validate_payment_method(self, data: RegisterPaymentMethodRequest) -> RegisterPaymentMethodRequest: ...

    async def create_customer(self, user_id: int, *, email: Optional[str], name: Optional[str]) -> str: ...

    async def create_payment_method(
        self,
        uow: AbstractUnitOfWork,
        user_id: int,
        data: RegisterPaymentMethodRequest,
    ) -> PaymentMethod: ...

    async def create_payment(
        self,
        uow: AbstractUnitOfWork,
        user_id: int,
        req: CreatePaymentRequest,
        method: Optional[PaymentMethod] = None,
    ) -> Payment: ...

    async def confirm_payment(
        self,
        uow: AbstractUnitOfWork,
        payment: Payment,
        data: Optional[ConfirmPaymentRequest] = None,
    ) -> Payment: ...

    async def refund_payment(
        self,
        uow: AbstractUnitOfWork,
        payment: Payment,
        amount: Optional[Decimal] = None,
    ) -> Payment: ...

    async def retrieve_payment(self, provider_payment_id: str) -> dict[str, Any]: ...

    async def delete_payment_method(self, uow: AbstractUnitOfWork, method: PaymentMethod) -> bool: ...

    async def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent: ...


@runtime_checkable
class GatewayResolver(Protocol):
    """Resolves a provider name to its gateway."""

    def resolve(self, provider: Optional[str]) -> PaymentGateway: ...

    def supported_providers(self) -> list[str]: ...
