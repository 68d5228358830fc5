import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import CreatePaymentRequest, RegisterPaymentMethodRequest
from domain.payment.entity import PaymentMethodType, PaymentStatus
from domain.payment.exceptions import InvalidSignatureError, ProviderError, ValidationError
from infrastructure.external.payments.paypal_client import PayPalGateway


BASE_URL = "https://api-m.sandbox.paypal.com"

ORDER = {
    "id": "ORDER1",
    "status": "CREATED",
    "links": [
        {"rel": "self", "href": f"{BASE_URL}/v2/checkout/orders/ORDER1"},
        {"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER1"},
    ],
}

CAPTURED_ORDER = {
    "id": "ORDER1",
    "status": "COMPLETED",
    "purchase_units": [{"payments": {"captures": [{"id": "CAP1", "status": "COMPLETED"}]}}],
}

WEBHOOK_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tid",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2025-01-01T00:00:00Z",
}


class PayPalStub:
    """httpx MockTransport handler emulating the PayPal REST endpoints used."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.capture_response = httpx.Response(201, json=CAPTURED_ORDER)
        self.verification_status = "SUCCESS"
        self.reject_next_token = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": 32400})
        if self.reject_next_token:
            self.reject_next_token = False
            return httpx.Response(401, json={"error": "invalid_token", "error_description": "Token expired"})
        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(201, json=ORDER)
        if path == "/v2/checkout/orders/ORDER1/capture":
            return self.capture_response
        if path == "/v2/checkout/orders/ORDER1":
            return httpx.Response(200, json=CAPTURED_ORDER)
        if path == "/v2/payments/captures/CAP1/refund":
            return httpx.Response(201, json={"id": "REF1", "status": "COMPLETED"})
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": "Not found"})

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path == path][-1]


@pytest.fixture
def paypal_stub() -> PayPalStub:
    return PayPalStub()


@pytest.fixture
async def gateway(paypal_stub):
    gateway = PayPalGateway(
        client_id="client",
        client_secret="secret",
        base_url=BASE_URL,
        webhook_id="WH-1",
        return_base_url="https://shop.example.com",
        retry={"max": 0, "base": 0.01},
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(paypal_stub)),
    )
    yield gateway
    await gateway.aclose()


@pytest.fixture
def offline_gateway() -> PayPalGateway:
    return PayPalGateway(client_id="client", client_secret="secret", base_url=BASE_URL)


async def _created_payment(gateway, uow):
    return await gateway.create_payment(uow, 3, CreatePaymentRequest(amount=Decimal("29.99"), currency="EUR"))


@pytest.mark.asyncio
async def test_create_order_returns_approval_url(gateway, paypal_stub, make_uow):
    async with make_uow() as uow:
        payment = await _created_payment(gateway, uow)

    assert payment.status == PaymentStatus.PENDING
    assert payment.provider_payment_id == "ORDER1"
    assert payment.metadata["approval_url"].endswith("token=ORDER1")

    request = paypal_stub.last("/v2/checkout/orders")
    body = json.loads(request.content)
    assert body["intent"] == "CAPTURE"
    assert body["purchase_units"][0]["amount"] == {"currency_code": "EUR", "value": "29.99"}
    assert body["application_context"]["return_url"] == "https://shop.example.com/api/v1/payments/paypal/success"
    assert request.headers["Authorization"] == "Bearer token-1"
    assert request.headers["PayPal-Request-Id"]


@pytest.mark.asyncio
async def test_token_is_cached(gateway, paypal_stub, make_uow):
    async with make_uow() as uow:
        await _created_payment(gateway, uow)
        await _created_payment(gateway, uow)

    assert paypal_stub.token_calls == 1


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_once(gateway, paypal_stub, make_uow):
    async with make_uow() as uow:
        await _created_payment(gateway, uow)
        paypal_stub.reject_next_token = True
        payment = await _created_payment(gateway, uow)

    assert payment.provider_payment_id == "ORDER1"
    assert paypal_stub.token_calls == 2


@pytest.mark.asyncio
async def test_capture_completes_payment(gateway, make_uow):
    async with make_uow() as uow:
        payment = await _created_payment(gateway, uow)
        payment = await gateway.confirm_payment(uow, payment)
        transactions = await uow.transactions.list_by_payment(payment.id)

    assert payment.status == PaymentStatus.SUCCEEDED
    assert len(transactions) == 1


@pytest.mark.asyncio
async def test_capture_error_marks_payment_failed(gateway, paypal_stub, make_uow):
    paypal_stub.capture_response = httpx.Response(
        422,
        json={
            "name": "UNPROCESSABLE_ENTITY",
            "message": "The requested action could not be performed",
            "details": [{"issue": "ORDER_NOT_APPROVED", "description": "Payer has not yet approved the Order"}],
            "debug_id": "dbg1",
        },
    )
    async with make_uow() as uow:
        payment = await _created_payment(gateway, uow)
        with pytest.raises(ProviderError) as exc:
            await gateway.confirm_payment(uow, payment)

    assert exc.value.provider_code == "UNPROCESSABLE_ENTITY"
    assert exc.value.details["http_status"] == 422
    assert "Payer has not yet approved the Order" in exc.value.message
    assert payment.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_refund_uses_first_capture(gateway, paypal_stub, make_uow):
    async with make_uow() as uow:
        payment = await _created_payment(gateway, uow)
        payment = await gateway.confirm_payment(uow, payment)
        refund = await gateway.refund_payment(uow, payment, Decimal("10.00"))

    assert refund.status == PaymentStatus.SUCCEEDED
    assert refund.provider_payment_id == "REF1"
    body = json.loads(paypal_stub.last("/v2/payments/captures/CAP1/refund").content)
    assert body["amount"] == {"currency_code": "EUR", "value": "10.00"}


@pytest.mark.asyncio
async def test_register_wallet_account(gateway, make_uow):
    async with make_uow() as uow:
        method = await gateway.create_payment_method(
            uow, 3, RegisterPaymentMethodRequest(provider="paypal", email=" Payer@Example.com ", payer_id="PAYER1")
        )

    assert method.type == PaymentMethodType.WALLET_ACCOUNT
    assert method.provider_id == "payer@example.com"
    assert method.external_id == "PAYER1"
    assert method.display_name() == "payer@example.com"


@pytest.mark.parametrize(
    "payload, field",
    [
        ({}, "email"),
        ({"email": "not-an-email"}, "email"),
        ({"email": "payer@example.com", "payer_id": "x" * 256}, "payer_id"),
    ],
)
def test_validate_wallet_input(offline_gateway, payload, field):
    with pytest.raises(ValidationError) as exc:
        offline_gateway.validate_payment_method(RegisterPaymentMethodRequest(provider="paypal", **payload))
    assert exc.value.field == field


@pytest.mark.parametrize(
    "paypal_status, expected",
    [
        ("CREATED", PaymentStatus.PENDING),
        ("APPROVED", PaymentStatus.PENDING),
        ("COMPLETED", PaymentStatus.SUCCEEDED),
        ("VOIDED", PaymentStatus.PENDING),
    ],
)
def test_status_mapping(offline_gateway, paypal_status, expected):
    assert offline_gateway._map_status(paypal_status) == expected


@pytest.mark.asyncio
async def test_parse_webhook_verifies_signature(gateway, paypal_stub):
    body = json.dumps(
        {"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"id": "CAP1"}}
    ).encode()

    event = await gateway.parse_webhook(WEBHOOK_HEADERS, body)

    assert event.id == "WH-EVT-1"
    assert event.type == "PAYMENT.CAPTURE.COMPLETED"
    assert event.resource == {"id": "CAP1"}
    verify = json.loads(paypal_stub.last("/v1/notifications/verify-webhook-signature").content)
    assert verify["webhook_id"] == "WH-1"
    assert verify["transmission_id"] == "tid"


@pytest.mark.asyncio
async def test_parse_webhook_rejects_failed_verification(gateway, paypal_stub):
    paypal_stub.verification_status = "FAILURE"
    body = b'{"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}'

    with pytest.raises(InvalidSignatureError):
        await gateway.parse_webhook(WEBHOOK_HEADERS, body)


@pytest.mark.asyncio
async def test_parse_webhook_requires_transmission_headers(gateway):
    body = b'{"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}'

    with pytest.raises(InvalidSignatureError):
        await gateway.parse_webhook({}, body)


@pytest.mark.asyncio
async def test_parse_webhook_rejects_malformed_body(gateway):
    with pytest.raises(InvalidSignatureError):
        await gateway.parse_webhook(WEBHOOK_HEADERS, b"not json")
