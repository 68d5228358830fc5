"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# 应用设置在导入时读取环境变量，必须先于项目模块设置
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT__PAYPAL__VERIFY_WEBHOOKS", "true")

import json
from decimal import Decimal
from typing import Any, Optional

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from application.dtos.payments import (
    CreatePaymentRequest,
    ProviderPayment,
    RegisterPaymentMethodRequest,
    WebhookEvent,
)
from application.services.payment_service import PaymentService
from core.settings import PaymentSettings
from domain.payment.entity import Payment, PaymentMethod, PaymentMethodType
from domain.payment.exceptions import InvalidSignatureError, ProviderError
from infrastructure.database import create_tables
from infrastructure.external.payments import ProviderRegistry
from infrastructure.external.payments.base import BasePaymentClient, header_value
from infrastructure.unit_of_work import uow_factory


VALID_SIGNATURE = "valid"


class ScriptedGateway(BasePaymentClient):
    """
    In-memory gateway: scripted provider statuses, no network.

    Webhook bodies are plain JSON ``{"id", "type", "object"}`` and are accepted
    only with ``X-Test-Signature: valid``.
    """

    def __init__(
        self,
        provider: str = "stripe",
        *,
        create_status: str = "requires_payment_method",
        confirm_status: str = "succeeded",
        refund_status: str = "succeeded",
        confirm_error: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.provider = provider
        self.create_status = create_status
        self.confirm_status = confirm_status
        self.refund_status = refund_status
        self.confirm_error = confirm_error
        self.calls: list[str] = []
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    async def _create_customer(self, user_id: int, email: Optional[str], name: Optional[str]) -> str:
        self.calls.append("create_customer")
        return f"cus_{user_id}"

    async def _build_payment_method(self, user_id: int, data: RegisterPaymentMethodRequest) -> PaymentMethod:
        self.calls.append("build_payment_method")
        customer_id = await self._create_customer(user_id, data.email, data.name)
        return PaymentMethod(
            id=None,
            user_id=user_id,
            provider=self.provider,
            type=PaymentMethodType.CARD,
            provider_id=customer_id,
            external_id=data.payment_method_id or self._next_id("pm"),
            metadata={"brand": "visa", "last4": "4242"},
        )

    async def _create_payment(
        self,
        user_id: int,
        req: CreatePaymentRequest,
        method: Optional[PaymentMethod],
        idempotency_key: str,
    ) -> ProviderPayment:
        self.calls.append("create_payment")
        intent_id = self._next_id("pi")
        return ProviderPayment(
            id=intent_id,
            status=self.create_status,
            raw={"id": intent_id, "status": self.create_status, "idempotency_key": idempotency_key},
        )

    async def _confirm_payment(self, payment: Payment, params: dict[str, Any]) -> ProviderPayment:
        self.calls.append("confirm_payment")
        if self.confirm_error:
            raise ProviderError(self.confirm_error, provider=self.provider, provider_code="card_declined")
        return ProviderPayment(
            id=payment.provider_payment_id,
            status=self.confirm_status,
            raw={"id": payment.provider_payment_id, "status": self.confirm_status},
        )

    async def _refund_payment(self, payment: Payment, amount: Decimal, idempotency_key: str) -> ProviderPayment:
        self.calls.append("refund_payment")
        refund_id = self._next_id("re")
        return ProviderPayment(
            id=refund_id,
            status=self.refund_status,
            raw={"id": refund_id, "status": self.refund_status, "amount": str(amount)},
        )

    async def _detach_payment_method(self, method: PaymentMethod) -> None:
        self.calls.append("detach_payment_method")

    async def retrieve_payment(self, provider_payment_id: str) -> dict[str, Any]:
        return {"id": provider_payment_id, "status": self.confirm_status}

    async def parse_webhook(self, headers, body: bytes) -> WebhookEvent:
        if header_value(headers, "X-Test-Signature") != VALID_SIGNATURE:
            raise InvalidSignatureError("Invalid test signature", provider=self.provider)
        event = json.loads(body)
        return WebhookEvent(
            id=event["id"],
            type=event["type"],
            provider=self.provider,
            resource=event.get("object") or {},
            payload=event,
        )


class ScriptedPayPalGateway(ScriptedGateway):
    def __init__(self, **kwargs) -> None:
        kwargs.setdefault("create_status", "CREATED")
        kwargs.setdefault("confirm_status", "COMPLETED")
        kwargs.setdefault("refund_status", "COMPLETED")
        super().__init__("paypal", **kwargs)

    def _normalize_status(self, provider_status: str) -> str:
        return (provider_status or "").upper()


def webhook_body(event_id: str, event_type: str, obj: Optional[dict] = None) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "object": obj or {}}).encode()


@pytest.fixture
def payment_settings() -> PaymentSettings:
    return PaymentSettings(
        default_provider="stripe",
        supported_providers=["stripe", "paypal"],
        default_currency="EUR",
        supported_currencies=["EUR", "USD"],
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def make_uow(engine):
    return uow_factory(async_sessionmaker(bind=engine, expire_on_commit=False))


@pytest.fixture
def stripe_gateway() -> ScriptedGateway:
    return ScriptedGateway("stripe")


@pytest.fixture
def paypal_gateway() -> ScriptedPayPalGateway:
    return ScriptedPayPalGateway()


@pytest.fixture
def registry(payment_settings, stripe_gateway, paypal_gateway) -> ProviderRegistry:
    return ProviderRegistry(
        payment_settings,
        factories={},
        gateways={"stripe": stripe_gateway, "paypal": paypal_gateway},
    )


@pytest.fixture
def service(make_uow, registry, payment_settings) -> PaymentService:
    return PaymentService(make_uow, registry, payment_settings)


@pytest.fixture
def signed_headers() -> dict:
    return {"X-Test-Signature": VALID_SIGNATURE}


@pytest.fixture(name="webhook_body")
def webhook_body_fixture():
    return webhook_body
