"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- A `stripe.StripeClient` instance is injected; module-level `stripe.api_key`
  is never touched so several clients can coexist (tests, multi-account).
- The SDK is synchronous; calls run in a worker thread via `asyncio.to_thread`
  inside the shared tenacity retry loop.
- Idempotency keys are supplied through request options for create/refund.
- Webhook verification uses `stripe.Webhook.construct_event` with the
  `Stripe-Signature` header.
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

import stripe

from application.dtos.payments import (
    CreatePaymentRequest,
    ProviderPayment,
    RegisterPaymentMethodRequest,
    WebhookEvent,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.payment.entity import Payment, PaymentMethod, PaymentMethodType
from domain.payment.exceptions import InvalidSignatureError, ProviderError, ValidationError
from infrastructure.external.payments.base import BasePaymentClient, header_value


logger = get_logger(__name__)

STRIPE_METHOD_TYPES = {
    "card": PaymentMethodType.CARD,
    "sepa_debit": PaymentMethodType.BANK_ACCOUNT,
    "us_bank_account": PaymentMethodType.BANK_ACCOUNT,
}


def _plain(obj: Any) -> Any:
    """StripeObject -> plain dict/list tree (JSON-safe for the ledger)."""
    if isinstance(obj, Mapping):
        return {str(k): _plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_plain(v) for v in obj]
    return obj


class StripeGateway(BasePaymentClient):
    provider = "stripe"
    retry_on = (stripe.APIConnectionError,)

    def __init__(
        self,
        client: stripe.StripeClient,
        *,
        webhook_secret: Optional[str] = None,
        webhook_tolerance: int = 300,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry)
        self._stripe = client
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance

    @classmethod
    def from_settings(cls, settings: PaymentSettings) -> "StripeGateway":
        if not settings.stripe.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        client = stripe.StripeClient(
            settings.stripe.secret_key,
            max_network_retries=settings.stripe.max_network_retries,
            http_client=stripe.RequestsClient(timeout=settings.timeouts.total),
        )
        return cls(
            client,
            webhook_secret=settings.stripe.webhook_secret,
            webhook_tolerance=settings.webhook.tolerance_seconds,
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
        )

    @staticmethod
    def _to_minor(amount: Decimal) -> int:
        # smallest currency unit (cents), truncated; only two-decimal currencies are accepted
        return int(Decimal(amount) * 100)

    def _translate_error(self, exc: Exception, operation: str) -> Optional[ProviderError]:
        if isinstance(exc, stripe.StripeError):
            message = getattr(exc, "user_message", None) or str(exc) or f"Stripe {operation} failed"
            return ProviderError(
                message,
                provider=self.provider,
                provider_code=getattr(exc, "code", None),
                details={"operation": operation, "http_status": getattr(exc, "http_status", None)},
            )
        return super()._translate_error(exc, operation)

    async def _sdk(self, operation: str, fn: Callable[[], Any]) -> dict[str, Any]:
        async def _run():
            return await asyncio.to_thread(fn)

        result = await self._call(operation, _run)
        return _plain(result)

    def _snapshot(self, obj: dict[str, Any]) -> ProviderPayment:
        customer = obj.get("customer")
        if isinstance(customer, Mapping):
            customer = customer.get("id")
        return ProviderPayment(
            id=str(obj.get("id")),
            status=str(obj.get("status") or ""),
            raw=obj,
            customer_id=customer,
        )

    # Wire hooks
    async def _create_customer(self, user_id: int, email: Optional[str], name: Optional[str]) -> str:
        params: dict[str, Any] = {"metadata": {"user_id": str(user_id)}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = await self._sdk("create_customer", lambda: self._stripe.customers.create(params=params))
        self._log("customer_created", user_id=user_id, customer_id=customer.get("id"))
        return str(customer["id"])

    def validate_payment_method(self, data: RegisterPaymentMethodRequest) -> RegisterPaymentMethodRequest:
        pm_id = (data.payment_method_id or "").strip()
        if not pm_id:
            raise ValidationError("payment_method_id is required for stripe", field="payment_method_id")
        if not 3 <= len(pm_id) <= 255:
            raise ValidationError("payment_method_id must be 3-255 characters", field="payment_method_id")
        return data.model_copy(update={"payment_method_id": pm_id})

    async def _build_payment_method(self, user_id: int, data: RegisterPaymentMethodRequest) -> PaymentMethod:
        pm_id = self.validate_payment_method(data).payment_method_id

        customer_id = await self._create_customer(user_id, data.email, data.name)
        await self._sdk(
            "attach_payment_method",
            lambda: self._stripe.payment_methods.attach(pm_id, params={"customer": customer_id}),
        )
        pm = await self._sdk("retrieve_payment_method", lambda: self._stripe.payment_methods.retrieve(pm_id))

        pm_type = str(pm.get("type") or "card")
        metadata: dict[str, Any] = {}
        expires_at = None
        card = pm.get("card")
        if pm_type == "card" and card:
            metadata = {
                "brand": card.get("brand"),
                "last4": card.get("last4"),
                "exp_month": card.get("exp_month"),
                "exp_year": card.get("exp_year"),
                "country": card.get("country"),
            }
            expires_at = self._card_expiry(card.get("exp_month"), card.get("exp_year"))

        return PaymentMethod(
            id=None,
            user_id=user_id,
            provider=self.provider,
            type=STRIPE_METHOD_TYPES.get(pm_type, PaymentMethodType.CARD),
            provider_id=customer_id,
            external_id=str(pm.get("id") or pm_id),
            metadata=metadata,
            expires_at=expires_at,
        )

    @staticmethod
    def _card_expiry(month: Any, year: Any) -> Optional[datetime]:
        """Cards are valid through the last day of the expiry month."""
        try:
            month, year = int(month), int(year)
        except (TypeError, ValueError):
            return None
        if month == 12:
            return datetime(year + 1, 1, 1, tzinfo=timezone.utc)
        return datetime(year, month + 1, 1, tzinfo=timezone.utc)

    async def _create_payment(
        self,
        user_id: int,
        req: CreatePaymentRequest,
        method: Optional[PaymentMethod],
        idempotency_key: str,
    ) -> ProviderPayment:
        currency = (req.currency or "eur").lower()
        params: dict[str, Any] = {
            "amount": self._to_minor(req.amount),
            "currency": currency,
            "metadata": {
                "user_id": str(user_id),
                "description": req.description or "",
            },
        }
        if req.description:
            params["description"] = req.description
        if method is not None:
            params.update(
                customer=method.provider_id,
                payment_method=method.external_id,
                confirmation_method="manual",
                confirm=True,
            )
        intent = await self._sdk(
            "create_payment",
            lambda: self._stripe.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            ),
        )
        return self._snapshot(intent)

    async def _confirm_payment(self, payment: Payment, params: dict[str, Any]) -> ProviderPayment:
        intent = await self._sdk(
            "confirm_payment",
            lambda: self._stripe.payment_intents.confirm(payment.provider_payment_id, params=params),
        )
        return self._snapshot(intent)

    async def _refund_payment(self, payment: Payment, amount: Decimal, idempotency_key: str) -> ProviderPayment:
        params = {
            "payment_intent": payment.provider_payment_id,
            "amount": self._to_minor(amount),
        }
        refund = await self._sdk(
            "refund_payment",
            lambda: self._stripe.refunds.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            ),
        )
        return self._snapshot(refund)

    async def _detach_payment_method(self, method: PaymentMethod) -> None:
        if not method.external_id:
            return None
        await self._sdk(
            "detach_payment_method",
            lambda: self._stripe.payment_methods.detach(method.external_id),
        )

    async def retrieve_payment(self, provider_payment_id: str) -> dict[str, Any]:
        return await self._sdk(
            "retrieve_payment",
            lambda: self._stripe.payment_intents.retrieve(provider_payment_id),
        )

    async def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        if not self._webhook_secret:
            raise InvalidSignatureError("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", provider=self.provider)
        sig = header_value(headers, "Stripe-Signature")
        if not sig:
            raise InvalidSignatureError("Missing Stripe-Signature header", provider=self.provider)
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=self._webhook_secret,
                tolerance=self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError(str(exc), provider=self.provider) from exc
        except ValueError as exc:
            raise InvalidSignatureError(f"Malformed payload: {exc}", provider=self.provider) from exc

        event = json.loads(body)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignatureError("Malformed payload: missing id or type", provider=self.provider)
        data = event.get("data") or {}
        return WebhookEvent(
            id=str(event["id"]),
            type=str(event["type"]),
            provider=self.provider,
            resource=data.get("object") or {},
            payload=data,
        )

