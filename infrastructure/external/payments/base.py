"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Ledger writes live here as template methods; concrete providers subclass and
implement only the wire hooks (``_create_payment``, ``_confirm_payment``...).
"""
from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from application.ports.payment_gateway import PaymentGateway
from application.dtos.payments import (
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    ProviderPayment,
    RegisterPaymentMethodRequest,
    WebhookEvent,
)
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Transaction,
    TransactionType,
    to_money,
)
from domain.payment.exceptions import ProviderError
from shared.codes.payment_codes import (
    PROVIDER_STATUS_FALLBACK,
    PROVIDER_STATUS_TO_INTERNAL,
    REFUND_STATUS_TO_INTERNAL,
)


logger = get_logger(__name__)

T = TypeVar("T")


class BasePaymentClient(PaymentGateway):
    provider: str = "base"
    # exceptions worth another attempt (connection level only)
    retry_on: tuple[type[BaseException], ...] = (httpx.TimeoutException, httpx.TransportError)

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 3.0, "read": 10.0, "write": 10.0, "total": 20.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        # 分阶段超时；total 作为其余阶段（连接池等待）的默认值，整体预算见 _call
        return httpx.Timeout(
            self._timeouts_cfg["total"],
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
        ):
            with attempt:
                return await fn()
        raise RuntimeError("unreachable")  # pragma: no cover

    def _translate_error(self, exc: Exception, operation: str) -> Optional[ProviderError]:
        """Map transport/SDK failures to ProviderError; None means re-raise as is."""
        if isinstance(exc, httpx.TimeoutException):
            return ProviderError(
                f"{self.provider} {operation} timed out",
                provider=self.provider,
                provider_code="timeout",
            )
        if isinstance(exc, httpx.TransportError):
            return ProviderError(
                f"{self.provider} {operation} failed: {exc}",
                provider=self.provider,
                provider_code="network_error",
            )
        return None

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one wire call with retry and error translation, bounded by the total timeout."""
        try:
            return await asyncio.wait_for(self._retry(fn), timeout=self._timeouts_cfg["total"])
        except asyncio.TimeoutError as exc:
            err = ProviderError(
                f"{self.provider} {operation} timed out",
                provider=self.provider,
                provider_code="timeout",
            )
            self._log_error(operation, err)
            raise err from exc
        except ProviderError as exc:
            self._log_error(operation, exc)
            raise
        except Exception as exc:
            err = self._translate_error(exc, operation)
            if err is None:
                raise
            self._log_error(operation, err)
            raise err from exc

    # Wire hooks
    async def _create_customer(self, user_id: int, email: Optional[str], name: Optional[str]) -> str:
        raise NotImplementedError

    async def _build_payment_method(self, user_id: int, data: RegisterPaymentMethodRequest) -> PaymentMethod:
        raise NotImplementedError

    async def _create_payment(
        self,
        user_id: int,
        req: CreatePaymentRequest,
        method: Optional[PaymentMethod],
        idempotency_key: str,
    ) -> ProviderPayment:
        raise NotImplementedError

    async def _confirm_payment(self, payment: Payment, params: dict[str, Any]) -> ProviderPayment:
        raise NotImplementedError

    async def _refund_payment(self, payment: Payment, amount: Decimal, idempotency_key: str) -> ProviderPayment:
        raise NotImplementedError

    async def _detach_payment_method(self, method: PaymentMethod) -> None:
        """Provider-side removal; default is local deactivation only."""
        return None

    async def retrieve_payment(self, provider_payment_id: str) -> dict[str, Any]:
        raise NotImplementedError

    async def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        raise NotImplementedError

    def validate_payment_method(self, data: RegisterPaymentMethodRequest) -> RegisterPaymentMethodRequest:
        """Provider-specific input checks; runs before any wire or ledger call."""
        return data

    # Template methods
    async def create_customer(self, user_id: int, *, email: Optional[str], name: Optional[str]) -> str:
        return await self._create_customer(user_id, email, name)

    async def create_payment_method(
        self,
        uow: AbstractUnitOfWork,
        user_id: int,
        data: RegisterPaymentMethodRequest,
    ) -> PaymentMethod:
        method = await self._build_payment_method(user_id, data)
        method.is_default = bool(data.is_default)
        method.is_active = True
        return await uow.payment_methods.create(method)

    async def create_payment(
        self,
        uow: AbstractUnitOfWork,
        user_id: int,
        req: CreatePaymentRequest,
        method: Optional[PaymentMethod] = None,
    ) -> Payment:
        currency = (req.currency or "").upper()
        snapshot = await self._create_payment(user_id, req, method, str(uuid.uuid4()))

        metadata = {str(k): str(v) for k, v in (req.metadata or {}).items()}
        metadata.update(snapshot.metadata)
        payment = Payment(
            id=None,
            user_id=user_id,
            payment_method_id=method.id if method else None,
            provider=self.provider,
            provider_payment_id=snapshot.id,
            provider_customer_id=snapshot.customer_id or (method.provider_id if method else None),
            amount=req.amount,
            currency=currency,
            type=PaymentType.PAYMENT,
            description=req.description,
            metadata=metadata,
        )
        payment.apply_status(self._map_status(snapshot.status), provider_response=snapshot.raw)
        payment = await uow.payments.create(payment)
        # confirm=true on creation can settle the intent immediately
        if payment.is_successful():
            await self._record_transaction(uow, payment, TransactionType.CHARGE)
        self._log("payment_created", payment_uuid=payment.uuid, status=payment.status.value)
        return payment

    async def confirm_payment(
        self,
        uow: AbstractUnitOfWork,
        payment: Payment,
        data: Optional[ConfirmPaymentRequest] = None,
    ) -> Payment:
        params = data.to_provider_params() if data else {}
        try:
            snapshot = await self._confirm_payment(payment, params)
        except ProviderError as exc:
            payment.fail_confirmation(exc.message)
            await uow.payments.update(payment)
            logger.warning(
                "payment_confirm_failed",
                provider=self.provider,
                payment_uuid=payment.uuid,
                error=exc.message,
            )
            raise

        payment.apply_status(self._map_status(snapshot.status), provider_response=snapshot.raw)
        payment = await uow.payments.update(payment)
        if payment.is_successful() and await uow.transactions.count_by_payment(payment.id) == 0:
            await self._record_transaction(uow, payment, TransactionType.CHARGE)
        self._log("payment_confirmed", payment_uuid=payment.uuid, status=payment.status.value)
        return payment

    async def refund_payment(
        self,
        uow: AbstractUnitOfWork,
        payment: Payment,
        amount: Optional[Decimal] = None,
    ) -> Payment:
        refund_amount = to_money(amount) if amount is not None else payment.amount
        snapshot = await self._refund_payment(payment, refund_amount, str(uuid.uuid4()))

        refund = Payment(
            id=None,
            user_id=payment.user_id,
            payment_method_id=payment.payment_method_id,
            provider=self.provider,
            provider_payment_id=snapshot.id,
            provider_customer_id=payment.provider_customer_id,
            amount=refund_amount,
            currency=payment.currency,
            type=PaymentType.REFUND,
            description=f"Refund for payment {payment.uuid}",
            refunded_payment_id=payment.id,
        )
        refund.apply_status(
            self._map_refund_status(snapshot.status),
            provider_response=snapshot.raw,
            failure_reason=str(snapshot.raw.get("failure_reason") or "Refund failed"),
        )
        refund = await uow.payments.create(refund)
        await self._record_transaction(uow, refund, TransactionType.REFUND)
        self._log(
            "payment_refunded",
            payment_uuid=payment.uuid,
            refund_uuid=refund.uuid,
            amount=str(refund.amount),
            status=refund.status.value,
        )
        return refund

    async def delete_payment_method(self, uow: AbstractUnitOfWork, method: PaymentMethod) -> bool:
        if not method.is_active:
            return True
        await self._detach_payment_method(method)
        method.deactivate()
        await uow.payment_methods.update(method)
        self._log("payment_method_deactivated", payment_method_id=method.id)
        return True

    # Helpers
    async def _record_transaction(
        self,
        uow: AbstractUnitOfWork,
        payment: Payment,
        type_: TransactionType,
        *,
        notes: Optional[str] = None,
    ) -> Transaction:
        return await uow.transactions.create(Transaction.for_payment(payment, type_, notes=notes))

    def _normalize_status(self, provider_status: str) -> str:
        return (provider_status or "").lower()

    def _map_status(self, provider_status: str) -> PaymentStatus:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        key = self._normalize_status(provider_status)
        return PaymentStatus(mapping.get(key, PROVIDER_STATUS_FALLBACK.get(self.provider, "failed")))

    def _map_refund_status(self, provider_status: str) -> PaymentStatus:
        mapping = REFUND_STATUS_TO_INTERNAL.get(self.provider)
        if mapping is None:
            return self._map_status(provider_status)
        key = self._normalize_status(provider_status)
        return PaymentStatus(mapping.get(key, PaymentStatus.PENDING.value))

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )

    def _log_error(self, operation: str, exc: ProviderError) -> None:
        logger.error(
            "provider_call_failed",
            provider=self.provider,
            operation=operation,
            provider_code=exc.provider_code,
            error=exc.message,
        )


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for plain dicts and Starlette Headers."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None
