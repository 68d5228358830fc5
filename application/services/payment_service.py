"""
Application facade over the payment use-cases.

Every public operation returns an ``OperationResult``: business failures
(``BusinessException`` subclasses) are captured and logged here, anything
else propagates. Gateways come from the registry injected by the composition
root (API/tests), keeping dependencies one-way.
"""
from __future__ import annotations

from typing import Awaitable, Callable, List, Mapping, Optional, TypeVar

from application.dtos.payments import (
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    PaymentFilters,
    PaymentMethodOut,
    PaymentOut,
    PaymentStats,
    RefundPaymentRequest,
    RegisterPaymentMethodRequest,
    UpdatePaymentMethodRequest,
    WebhookResult,
)
from application.ports.payment_gateway import GatewayResolver
from application.result import OperationResult
from application.services.payment_method_manager import PaymentMethodManager
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.webhook_reconciler import WebhookReconciler
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.common.exceptions import BusinessException
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)

T = TypeVar("T")


class PaymentService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        registry: GatewayResolver,
        settings: PaymentSettings,
    ) -> None:
        self.registry = registry
        self.methods = PaymentMethodManager(uow_factory, registry)
        self.orchestrator = PaymentOrchestrator(uow_factory, registry, settings)
        self.webhooks = WebhookReconciler(uow_factory, registry)

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]], **context) -> OperationResult[T]:
        try:
            return OperationResult.ok(await call())
        except BusinessException as exc:
            logger.warning(
                "payment_operation_failed",
                operation=operation,
                error_type=exc.error_type,
                code=int(exc.code),
                message=exc.message,
                **context,
            )
            return OperationResult.failure(exc)

    # Payment methods
    async def create_payment_method(
        self, user_id: int, data: RegisterPaymentMethodRequest
    ) -> OperationResult[PaymentMethodOut]:
        async def call():
            return PaymentMethodOut.from_entity(await self.methods.register(user_id, data))

        return await self._run("create_payment_method", call, user_id=user_id, provider=data.provider)

    async def list_payment_methods(
        self, user_id: int, provider: Optional[str] = None
    ) -> OperationResult[List[PaymentMethodOut]]:
        async def call():
            return [PaymentMethodOut.from_entity(m) for m in await self.methods.list(user_id, provider)]

        return await self._run("list_payment_methods", call, user_id=user_id)

    async def get_payment_method(self, user_id: int, method_id: int) -> OperationResult[PaymentMethodOut]:
        async def call():
            return PaymentMethodOut.from_entity(await self.methods.get(user_id, method_id))

        return await self._run("get_payment_method", call, user_id=user_id, payment_method_id=method_id)

    async def set_default_payment_method(self, user_id: int, method_id: int) -> OperationResult[PaymentMethodOut]:
        async def call():
            return PaymentMethodOut.from_entity(await self.methods.set_default(user_id, method_id))

        return await self._run("set_default_payment_method", call, user_id=user_id, payment_method_id=method_id)

    async def update_payment_method(
        self, user_id: int, method_id: int, data: UpdatePaymentMethodRequest
    ) -> OperationResult[PaymentMethodOut]:
        async def call():
            return PaymentMethodOut.from_entity(await self.methods.update(user_id, method_id, data))

        return await self._run("update_payment_method", call, user_id=user_id, payment_method_id=method_id)

    async def delete_payment_method(self, user_id: int, method_id: int) -> OperationResult[bool]:
        return await self._run(
            "delete_payment_method",
            lambda: self.methods.delete(user_id, method_id),
            user_id=user_id,
            payment_method_id=method_id,
        )

    # Payments
    async def create_payment(self, user_id: int, req: CreatePaymentRequest) -> OperationResult[PaymentOut]:
        async def call():
            return PaymentOut.from_entity(await self.orchestrator.process(user_id, req))

        return await self._run("create_payment", call, user_id=user_id, provider=req.provider)

    async def get_payment(self, user_id: int, payment_uuid: str) -> OperationResult[PaymentOut]:
        async def call():
            payment, transactions = await self.orchestrator.get_payment(user_id, payment_uuid)
            return PaymentOut.from_entity(payment, transactions)

        return await self._run("get_payment", call, user_id=user_id, payment_uuid=payment_uuid)

    async def list_payments(
        self, user_id: int, filters: Optional[PaymentFilters] = None
    ) -> OperationResult[List[PaymentOut]]:
        async def call():
            return [PaymentOut.from_entity(p) for p in await self.orchestrator.list_payments(user_id, filters)]

        return await self._run("list_payments", call, user_id=user_id)

    async def confirm_payment(
        self,
        user_id: int,
        payment_uuid: str,
        data: Optional[ConfirmPaymentRequest] = None,
    ) -> OperationResult[PaymentOut]:
        async def call():
            return PaymentOut.from_entity(await self.orchestrator.confirm(user_id, payment_uuid, data))

        return await self._run("confirm_payment", call, user_id=user_id, payment_uuid=payment_uuid)

    async def refund_payment(
        self,
        user_id: int,
        payment_uuid: str,
        req: Optional[RefundPaymentRequest] = None,
    ) -> OperationResult[PaymentOut]:
        async def call():
            return PaymentOut.from_entity(await self.orchestrator.refund(user_id, payment_uuid, req))

        return await self._run("refund_payment", call, user_id=user_id, payment_uuid=payment_uuid)

    async def get_payment_stats(self, user_id: int) -> OperationResult[PaymentStats]:
        return await self._run("get_payment_stats", lambda: self.orchestrator.stats(user_id), user_id=user_id)

    # Webhooks
    async def ingest_webhook(
        self, provider: str, headers: Mapping[str, str], body: bytes
    ) -> OperationResult[WebhookResult]:
        return await self._run(
            "ingest_webhook",
            lambda: self.webhooks.ingest(provider, headers, body),
            provider=provider,
        )

