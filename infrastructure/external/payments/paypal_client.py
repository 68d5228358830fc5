"""
PayPal Orders v2 adapter over plain REST (httpx).

- OAuth2 client-credentials token, cached until shortly before expiry.
- Orders use intent=CAPTURE; "confirm" captures the approved order.
- Refunds go against the first capture of the order.
- Webhooks are verified through /v1/notifications/verify-webhook-signature.
"""
from __future__ import annotations

import asyncio
import json
import time
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

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

# refresh the token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN = 60

_EMAIL = TypeAdapter(EmailStr)

VERIFY_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


class PayPalGateway(BasePaymentClient):
    provider = "paypal"

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        base_url: str,
        webhook_id: Optional[str] = None,
        verify_webhooks: bool = True,
        brand_name: str = "Payment Orchestrator",
        return_base_url: str = "http://localhost:8000",
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeouts=timeouts, retry=retry)
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._webhook_id = webhook_id
        self._verify_webhooks = verify_webhooks
        self._brand_name = brand_name
        self._return_base_url = return_base_url.rstrip("/")
        self._client = http_client
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: PaymentSettings) -> "PayPalGateway":
        if not settings.paypal.client_id or not settings.paypal.client_secret:
            raise RuntimeError("PAYMENT__PAYPAL__CLIENT_ID / CLIENT_SECRET not configured")
        return cls(
            client_id=settings.paypal.client_id,
            client_secret=settings.paypal.client_secret,
            base_url=settings.paypal.base_url,
            webhook_id=settings.paypal.webhook_id,
            verify_webhooks=settings.paypal.verify_webhooks,
            brand_name=settings.paypal.brand_name,
            return_base_url=settings.public_base_url,
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
        )

    def _normalize_status(self, provider_status: str) -> str:
        return (provider_status or "").upper()

    # OAuth
    async def _access_token(self, *, force: bool = False) -> str:
        async with self._token_lock:
            if not force and self._token and time.monotonic() < self._token_expires_at:
                return self._token

            async def _fetch() -> httpx.Response:
                async with self.client() as c:
                    return await c.post(
                        f"{self._base_url}/v1/oauth2/token",
                        auth=(self._client_id or "", self._client_secret or ""),
                        data={"grant_type": "client_credentials"},
                        headers={"Accept": "application/json"},
                    )

            resp = await self._call("oauth_token", _fetch)
            if resp.status_code != 200:
                raise self._error_from_response(resp, "oauth_token")
            body = resp.json()
            self._token = body["access_token"]
            ttl = int(body.get("expires_in", 0))
            self._token_expires_at = time.monotonic() + max(ttl - TOKEN_EXPIRY_MARGIN, 0)
            self._log("paypal_token_refreshed", expires_in=ttl)
            return self._token

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Authenticated call; a 401 refreshes the token once."""
        for attempt in range(2):
            token = await self._access_token(force=attempt > 0)
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            }
            if request_id:
                headers["PayPal-Request-Id"] = request_id

            async def _send() -> httpx.Response:
                async with self.client() as c:
                    return await c.request(method, f"{self._base_url}{path}", json=json_body, headers=headers)

            resp = await self._call(operation, _send)
            if resp.status_code == 401 and attempt == 0:
                continue
            if resp.status_code >= 400:
                raise self._error_from_response(resp, operation)
            return resp.json() if resp.content else {}
        raise self._error_from_response(resp, operation)  # pragma: no cover

    def _error_from_response(self, resp: httpx.Response, operation: str) -> ProviderError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = body.get("message") or body.get("error_description") or f"PayPal {operation} failed"
        details = body.get("details") or []
        if details and isinstance(details[0], Mapping) and details[0].get("description"):
            message = f"{message}: {details[0]['description']}"
        err = ProviderError(
            message,
            provider=self.provider,
            provider_code=body.get("name") or body.get("error"),
            details={
                "operation": operation,
                "http_status": resp.status_code,
                "debug_id": body.get("debug_id"),
            },
        )
        self._log_error(operation, err)
        return err

    # Wire hooks
    async def _create_customer(self, user_id: int, email: Optional[str], name: Optional[str]) -> str:
        # No customer object on PayPal; the payer email identifies the holder
        if not email:
            raise ValidationError("email is required for paypal", field="email")
        return email.lower()

    def validate_payment_method(self, data: RegisterPaymentMethodRequest) -> RegisterPaymentMethodRequest:
        if not data.email:
            raise ValidationError("email is required for paypal", field="email")
        try:
            email = _EMAIL.validate_python(data.email.strip())
        except PydanticValidationError as exc:
            raise ValidationError("email must be a valid address", field="email") from exc
        if data.payer_id is not None and len(data.payer_id) > 255:
            raise ValidationError("payer_id must be at most 255 characters", field="payer_id")
        return data.model_copy(update={"email": email.lower()})

    async def _build_payment_method(self, user_id: int, data: RegisterPaymentMethodRequest) -> PaymentMethod:
        data = self.validate_payment_method(data)
        email = await self._create_customer(user_id, data.email, data.name)
        metadata: dict[str, Any] = {"email": email}
        if data.payer_id:
            metadata["payer_id"] = data.payer_id
        return PaymentMethod(
            id=None,
            user_id=user_id,
            provider=self.provider,
            type=PaymentMethodType.WALLET_ACCOUNT,
            provider_id=email,
            external_id=data.payer_id,
            metadata=metadata,
        )

    async def _create_payment(
        self,
        user_id: int,
        req: CreatePaymentRequest,
        method: Optional[PaymentMethod],
        idempotency_key: str,
    ) -> ProviderPayment:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": f"payment_{int(time.time())}",
                    "amount": {
                        "currency_code": (req.currency or "EUR").upper(),
                        "value": f"{Decimal(req.amount):.2f}",
                    },
                    "description": req.description or "Payment",
                }
            ],
            "application_context": {
                "return_url": f"{self._return_base_url}/api/v1/payments/paypal/success",
                "cancel_url": f"{self._return_base_url}/api/v1/payments/paypal/cancel",
                "brand_name": self._brand_name,
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
            },
        }
        order = await self._request(
            "POST", "/v2/checkout/orders", "create_payment", json_body=body, request_id=idempotency_key
        )
        metadata = {}
        approval_url = self._approval_url(order)
        if approval_url:
            metadata["approval_url"] = approval_url
        return ProviderPayment(
            id=str(order.get("id")),
            status=str(order.get("status") or ""),
            raw=order,
            customer_id=method.provider_id if method else None,
            metadata=metadata,
        )

    @staticmethod
    def _approval_url(order: dict[str, Any]) -> Optional[str]:
        for link in order.get("links") or []:
            if link.get("rel") in ("approve", "payer-action"):
                return link.get("href")
        return None

    async def _confirm_payment(self, payment: Payment, params: dict[str, Any]) -> ProviderPayment:
        order = await self._request(
            "POST",
            f"/v2/checkout/orders/{payment.provider_payment_id}/capture",
            "confirm_payment",
            json_body={},
            request_id=f"capture-{payment.uuid}",
        )
        return ProviderPayment(id=str(order.get("id")), status=str(order.get("status") or ""), raw=order)

    async def _refund_payment(self, payment: Payment, amount: Decimal, idempotency_key: str) -> ProviderPayment:
        order = await self.retrieve_payment(payment.provider_payment_id)
        capture_id = self._first_capture_id(order)
        if not capture_id:
            raise ProviderError(
                "No capture found for this payment",
                provider=self.provider,
                provider_code="CAPTURE_NOT_FOUND",
            )
        refund = await self._request(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            "refund_payment",
            json_body={
                "amount": {"currency_code": payment.currency.upper(), "value": f"{amount:.2f}"},
                "note_to_payer": f"Refund for payment {payment.uuid}",
            },
            request_id=idempotency_key,
        )
        return ProviderPayment(id=str(refund.get("id")), status=str(refund.get("status") or ""), raw=refund)

    @staticmethod
    def _first_capture_id(order: dict[str, Any]) -> Optional[str]:
        try:
            return order["purchase_units"][0]["payments"]["captures"][0]["id"]
        except (KeyError, IndexError, TypeError):
            return None

    async def retrieve_payment(self, provider_payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v2/checkout/orders/{provider_payment_id}", "retrieve_payment")

    async def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise InvalidSignatureError(f"Malformed payload: {exc}", provider=self.provider) from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("event_type"):
            raise InvalidSignatureError("Malformed payload: missing id or event_type", provider=self.provider)

        await self._verify_signature(headers, event)

        return WebhookEvent(
            id=str(event["id"]),
            type=str(event["event_type"]),
            provider=self.provider,
            resource=event.get("resource") or {},
            payload=event,
        )

    async def _verify_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> None:
        if not self._webhook_id:
            if self._verify_webhooks:
                raise InvalidSignatureError("Missing PAYMENT__PAYPAL__WEBHOOK_ID", provider=self.provider)
            logger.warning("paypal_webhook_unverified", event_id=event.get("id"))
            return

        body: dict[str, Any] = {"webhook_id": self._webhook_id, "webhook_event": event}
        for field, header in VERIFY_HEADERS.items():
            value = header_value(headers, header)
            if not value:
                raise InvalidSignatureError(f"Missing {header} header", provider=self.provider)
            body[field] = value

        result = await self._request(
            "POST", "/v1/notifications/verify-webhook-signature", "verify_webhook", json_body=body
        )
        if result.get("verification_status") != "SUCCESS":
            raise InvalidSignatureError(
                "PayPal webhook signature verification failed",
                provider=self.provider,
                details={"verification_status": result.get("verification_status")},
            )
