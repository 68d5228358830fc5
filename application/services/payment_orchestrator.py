"""
支付编排服务（application/services）- 创建、确认、退款与查询

渠道调用与账本写入放在同一个 Unit of Work 内；渠道失败时由本层决定是否
保留已写入的失败状态。
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Tuple

from application.dtos.payments import (
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    PaymentFilters,
    PaymentStats,
    RefundPaymentRequest,
)
from application.ports.payment_gateway import GatewayResolver
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentMethod, Transaction, to_money
from domain.payment.exceptions import (
    InvalidStateError,
    NotFoundError,
    ProviderError,
    ValidationError,
)


logger = get_logger(__name__)

CENT = Decimal("0.01")
MAX_DESCRIPTION_LENGTH = 255
MAX_METADATA_VALUE_LENGTH = 500


class PaymentOrchestrator:
    """支付编排"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        registry: GatewayResolver,
        settings: PaymentSettings,
    ):
        self._uow_factory = uow_factory
        self._registry = registry
        self._settings = settings

    # 校验
    def _validate_amount(self, amount, *, field: str = "amount") -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError("amount must be a number", field=field)
        if not value.is_finite():
            raise ValidationError("amount must be a number", field=field)
        try:
            # 超出上下文精度的值（如 1E+30）quantize 会抛 InvalidOperation
            exact = value == value.quantize(CENT)
        except InvalidOperation:
            raise ValidationError("amount is out of range", field=field)
        if not exact:
            raise ValidationError("amount must have at most 2 decimal places", field=field)
        return value

    def _validate_create(self, req: CreatePaymentRequest) -> CreatePaymentRequest:
        amount = self._validate_amount(req.amount)
        low, high = Decimal(str(self._settings.min_amount)), Decimal(str(self._settings.max_amount))
        if amount < low or amount > high:
            raise ValidationError(f"amount must be between {low:.2f} and {high:.2f}", field="amount")

        currency = (req.currency or self._settings.default_currency).upper()
        allowed = [c.upper() for c in self._settings.supported_currencies]
        if currency not in allowed:
            raise ValidationError(
                f"currency must be one of: {', '.join(allowed)}",
                field="currency",
                details={"supported": allowed},
            )

        if req.description is not None and len(req.description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"description must be at most {MAX_DESCRIPTION_LENGTH} characters", field="description"
            )

        for key, value in (req.metadata or {}).items():
            if not isinstance(value, str):
                raise ValidationError(f"metadata.{key} must be a string", field=f"metadata.{key}")
            if len(value) > MAX_METADATA_VALUE_LENGTH:
                raise ValidationError(
                    f"metadata.{key} must be at most {MAX_METADATA_VALUE_LENGTH} characters",
                    field=f"metadata.{key}",
                )

        return req.model_copy(update={"amount": to_money(amount), "currency": currency})

    # 命令
    async def process(self, user_id: int, req: CreatePaymentRequest) -> Payment:
        """
        创建支付；带支付方式且 auto_confirm 时在同一事务内立即确认。

        自动确认被渠道拒绝时，已创建的支付与其 failed 状态一并提交，然后
        把 ProviderError 抛给调用方。
        """
        req = self._validate_create(req)
        gateway = self._registry.resolve(req.provider)

        logger.info(
            "payment_create_request",
            user_id=user_id,
            provider=gateway.provider,
            amount=str(req.amount),
            currency=req.currency,
            payment_method_id=req.payment_method_id,
        )

        async with self._uow_factory() as uow:
            method = await self._usable_method(uow, user_id, gateway.provider, req.payment_method_id)
            payment = await gateway.create_payment(uow, user_id, req, method)

            if req.auto_confirm and method is not None and payment.is_pending():
                try:
                    payment = await gateway.confirm_payment(uow, payment)
                except ProviderError:
                    await uow.commit()
                    raise
        return payment

    async def confirm(
        self,
        user_id: int,
        payment_uuid: str,
        data: Optional[ConfirmPaymentRequest] = None,
    ) -> Payment:
        async with self._uow_factory() as uow:
            payment = await self._owned(uow, user_id, payment_uuid, for_update=True)
            payment.ensure_confirmable()
            gateway = self._registry.resolve(payment.provider)
            try:
                return await gateway.confirm_payment(uow, payment, data)
            except ProviderError:
                # 失败状态已由网关写入，提交后再抛出
                await uow.commit()
                raise

    async def refund(
        self,
        user_id: int,
        payment_uuid: str,
        req: Optional[RefundPaymentRequest] = None,
    ) -> Payment:
        """
        发起退款，返回新建的 refund 类型支付。

        累计退款（pending/processing/succeeded）不得超过原支付金额；未指定
        金额时退还剩余可退部分。
        """
        requested = None
        if req is not None and req.amount is not None:
            requested = self._validate_amount(req.amount)
            if requested <= 0:
                raise ValidationError("refund amount must be greater than 0", field="amount")

        async with self._uow_factory() as uow:
            payment = await self._owned(uow, user_id, payment_uuid, for_update=True)
            payment.ensure_refundable()

            refunded = await uow.payments.get_refunded_total(payment.id)
            remaining = to_money(payment.amount - refunded)
            if remaining <= 0:
                raise ValidationError("payment is already fully refunded", field="amount")
            amount = requested if requested is not None else remaining
            if amount > remaining:
                raise ValidationError(
                    f"refund amount exceeds refundable balance {remaining:.2f}",
                    field="amount",
                    details={"refundable": str(remaining), "already_refunded": str(refunded)},
                )

            gateway = self._registry.resolve(payment.provider)
            refund = await gateway.refund_payment(uow, payment, to_money(amount))

        logger.info(
            "payment_refund_created",
            user_id=user_id,
            payment_uuid=payment_uuid,
            refund_uuid=refund.uuid,
            amount=str(refund.amount),
            reason=req.reason if req else None,
        )
        return refund

    # 查询
    async def get_payment(self, user_id: int, payment_uuid: str) -> Tuple[Payment, List[Transaction]]:
        async with self._uow_factory(readonly=True) as uow:
            payment = await self._owned(uow, user_id, payment_uuid)
            transactions = await uow.transactions.list_by_payment(payment.id)
        return payment, transactions

    async def list_payments(self, user_id: int, filters: Optional[PaymentFilters] = None) -> List[Payment]:
        filters = filters or PaymentFilters()
        async with self._uow_factory(readonly=True) as uow:
            return await uow.payments.list_by_user(
                user_id,
                status=filters.status,
                provider=filters.provider,
                type=filters.type,
                from_date=filters.from_date,
                to_date=filters.to_date,
                skip=filters.skip,
                limit=filters.limit,
            )

    async def stats(self, user_id: int) -> PaymentStats:
        async with self._uow_factory(readonly=True) as uow:
            raw = await uow.payments.get_stats(user_id)
        by_provider = {name: Decimal("0.00") for name in self._registry.supported_providers()}
        by_provider.update(raw.get("by_provider") or {})
        return PaymentStats(**{**raw, "by_provider": by_provider})

    # 内部
    @staticmethod
    async def _owned(
        uow: AbstractUnitOfWork,
        user_id: int,
        payment_uuid: str,
        *,
        for_update: bool = False,
    ) -> Payment:
        payment = await uow.payments.get_by_uuid(payment_uuid, for_update=for_update)
        if payment is None or payment.user_id != user_id:
            raise NotFoundError("Payment", payment_uuid)
        return payment

    @staticmethod
    async def _usable_method(
        uow: AbstractUnitOfWork,
        user_id: int,
        provider: str,
        method_id: Optional[int],
    ) -> Optional[PaymentMethod]:
        if method_id is None:
            return None
        method = await uow.payment_methods.get_by_id(method_id)
        if method is None or method.user_id != user_id or method.provider != provider:
            raise NotFoundError("PaymentMethod", method_id)
        if not method.is_active:
            raise InvalidStateError(
                "Payment method not found or inactive",
                entity="payment_method",
                status="inactive",
                entity_id=method.id,
            )
        return method
