import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

stripe = pytest.importorskip("stripe")

from application.dtos.payments import CreatePaymentRequest, RegisterPaymentMethodRequest
from domain.payment.entity import PaymentMethodType, PaymentStatus, PaymentType
from domain.payment.exceptions import InvalidSignatureError, ProviderError, ValidationError
from infrastructure.external.payments.stripe_client import StripeGateway


WEBHOOK_SECRET = "whsec_test"


class _Resource:
    """Records SDK calls and replays scripted results."""

    def __init__(self, log: list, name: str, results: dict):
        self._log = log
        self._name = name
        self._results = results

    def __getattr__(self, method):
        def call(*args, **kwargs):
            self._log.append((f"{self._name}.{method}", args, kwargs))
            result = self._results[method]
            if isinstance(result, Exception):
                raise result
            return result(*args, **kwargs) if callable(result) else result

        return call


class FakeStripeClient:
    def __init__(self):
        self.calls: list = []
        self.customers = _Resource(self.calls, "customers", {"create": {"id": "cus_123"}})
        self.payment_methods = _Resource(
            self.calls,
            "payment_methods",
            {
                "attach": {"id": "pm_card_visa"},
                "retrieve": {
                    "id": "pm_card_visa",
                    "type": "card",
                    "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030, "country": "DE"},
                },
                "detach": {"id": "pm_card_visa"},
            },
        )
        self.payment_intents = _Resource(
            self.calls,
            "payment_intents",
            {
                "create": {"id": "pi_123", "status": "requires_payment_method", "customer": None},
                "confirm": {"id": "pi_123", "status": "succeeded", "customer": "cus_123"},
                "retrieve": {"id": "pi_123", "status": "succeeded"},
            },
        )
        self.refunds = _Resource(self.calls, "refunds", {"create": {"id": "re_123", "status": "succeeded"}})

    def last(self, name):
        return [c for c in self.calls if c[0] == name][-1]


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def gateway(fake_stripe) -> StripeGateway:
    return StripeGateway(fake_stripe, webhook_secret=WEBHOOK_SECRET, retry={"max": 0, "base": 0.01})


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload.decode()}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


@pytest.mark.asyncio
async def test_register_card_attaches_to_new_customer(gateway, fake_stripe, make_uow):
    async with make_uow() as uow:
        method = await gateway.create_payment_method(
            uow,
            7,
            RegisterPaymentMethodRequest(provider="stripe", payment_method_id=" pm_card_visa ", email="a@b.co"),
        )

    assert method.type == PaymentMethodType.CARD
    assert method.provider_id == "cus_123"
    assert method.external_id == "pm_card_visa"
    assert method.metadata["last4"] == "4242"
    assert method.expires_at.year == 2031 and method.expires_at.month == 1

    _, args, kwargs = fake_stripe.last("payment_methods.attach")
    assert args == ("pm_card_visa",)
    assert kwargs["params"] == {"customer": "cus_123"}
    _, _, kwargs = fake_stripe.last("customers.create")
    assert kwargs["params"]["metadata"] == {"user_id": "7"}
    assert kwargs["params"]["email"] == "a@b.co"


@pytest.mark.parametrize("pm_id", [None, "   ", "pm", "p" * 256])
def test_validate_payment_method_rejects_bad_ids(gateway, pm_id):
    with pytest.raises(ValidationError) as exc:
        gateway.validate_payment_method(RegisterPaymentMethodRequest(provider="stripe", payment_method_id=pm_id))
    assert exc.value.field == "payment_method_id"


@pytest.mark.asyncio
async def test_create_payment_sends_minor_units_and_idempotency_key(gateway, fake_stripe, make_uow):
    async with make_uow() as uow:
        payment = await gateway.create_payment(
            uow, 7, CreatePaymentRequest(amount=Decimal("29.99"), currency="EUR", description="Order 1")
        )

    assert payment.status == PaymentStatus.PENDING
    assert payment.provider_payment_id == "pi_123"
    _, _, kwargs = fake_stripe.last("payment_intents.create")
    assert kwargs["params"]["amount"] == 2999
    assert kwargs["params"]["currency"] == "eur"
    assert kwargs["params"]["description"] == "Order 1"
    assert "confirm" not in kwargs["params"]
    assert kwargs["options"]["idempotency_key"]


@pytest.mark.asyncio
async def test_confirm_maps_succeeded(gateway, make_uow):
    async with make_uow() as uow:
        payment = await gateway.create_payment(uow, 7, CreatePaymentRequest(amount=Decimal("5.00"), currency="EUR"))
        payment = await gateway.confirm_payment(uow, payment)
        transactions = await uow.transactions.list_by_payment(payment.id)

    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.processed_at is not None
    assert len(transactions) == 1


@pytest.mark.asyncio
async def test_card_error_becomes_provider_error(gateway, fake_stripe, make_uow):
    fake_stripe.payment_intents._results["confirm"] = stripe.CardError(
        "Your card was declined.", None, "card_declined"
    )
    async with make_uow() as uow:
        payment = await gateway.create_payment(uow, 7, CreatePaymentRequest(amount=Decimal("5.00"), currency="EUR"))
        with pytest.raises(ProviderError) as exc:
            await gateway.confirm_payment(uow, payment)

    assert exc.value.message == "Your card was declined."
    assert exc.value.provider_code == "card_declined"
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Your card was declined."


@pytest.mark.parametrize(
    "stripe_status, expected",
    [
        ("requires_payment_method", PaymentStatus.PENDING),
        ("requires_action", PaymentStatus.PENDING),
        ("processing", PaymentStatus.PROCESSING),
        ("succeeded", PaymentStatus.SUCCEEDED),
        ("canceled", PaymentStatus.CANCELED),
        ("something_new", PaymentStatus.FAILED),
    ],
)
def test_status_mapping(gateway, stripe_status, expected):
    assert gateway._map_status(stripe_status) == expected


@pytest.mark.asyncio
async def test_refund_creates_refund_payment(gateway, fake_stripe, make_uow):
    async with make_uow() as uow:
        payment = await gateway.create_payment(uow, 7, CreatePaymentRequest(amount=Decimal("29.99"), currency="EUR"))
        payment = await gateway.confirm_payment(uow, payment)
        refund = await gateway.refund_payment(uow, payment, Decimal("10.00"))

    assert refund.type == PaymentType.REFUND
    assert refund.amount == Decimal("10.00")
    assert refund.status == PaymentStatus.SUCCEEDED
    assert refund.refunded_payment_id == payment.id
    _, _, kwargs = fake_stripe.last("refunds.create")
    assert kwargs["params"] == {"payment_intent": "pi_123", "amount": 1000}


@pytest.mark.asyncio
async def test_parse_webhook_with_valid_signature(gateway):
    body = json.dumps(
        {
            "id": "evt_1",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "status": "succeeded"}},
        }
    ).encode()

    event = await gateway.parse_webhook({"Stripe-Signature": _signed(body)}, body)

    assert event.id == "evt_1"
    assert event.type == "payment_intent.succeeded"
    assert event.provider == "stripe"
    assert event.resource == {"id": "pi_123", "status": "succeeded"}


@pytest.mark.asyncio
async def test_parse_webhook_rejects_bad_signature(gateway):
    body = b'{"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}}'

    with pytest.raises(InvalidSignatureError):
        await gateway.parse_webhook({"Stripe-Signature": _signed(body, "whsec_other")}, body)
    with pytest.raises(InvalidSignatureError):
        await gateway.parse_webhook({}, body)


@pytest.mark.asyncio
async def test_parse_webhook_requires_secret(fake_stripe):
    gateway = StripeGateway(fake_stripe, webhook_secret=None)
    with pytest.raises(InvalidSignatureError):
        await gateway.parse_webhook({"Stripe-Signature": "t=1,v1=x"}, b"{}")


@pytest.mark.asyncio
async def test_total_timeout_becomes_provider_error(fake_stripe):
    def slow_create(*args, **kwargs):
        time.sleep(0.5)
        return {"id": "cus_slow"}

    fake_stripe.customers._results["create"] = slow_create
    gateway = StripeGateway(
        fake_stripe,
        timeouts={"connect": 1.0, "read": 1.0, "write": 1.0, "total": 0.05},
        retry={"max": 0, "base": 0.01},
    )

    with pytest.raises(ProviderError) as exc:
        await gateway.create_customer(7, email=None, name=None)

    assert exc.value.provider_code == "timeout"
    assert exc.value.message == "stripe create_customer timed out"


@pytest.mark.asyncio
async def test_parse_webhook_rejects_event_without_id(gateway):
    body = json.dumps({"object": "event", "type": "payment_intent.succeeded", "data": {"object": {}}}).encode()

    with pytest.raises(InvalidSignatureError) as exc:
        await gateway.parse_webhook({"Stripe-Signature": _signed(body)}, body)
    assert exc.value.message == "Malformed payload: missing id or type"


@pytest.mark.asyncio
async def test_minor_units_are_always_cents(gateway, fake_stripe, make_uow):
    async with make_uow() as uow:
        await gateway.create_payment(uow, 7, CreatePaymentRequest(amount=Decimal("5.00"), currency="JPY"))

    _, _, kwargs = fake_stripe.last("payment_intents.create")
    assert kwargs["params"]["amount"] == 500
