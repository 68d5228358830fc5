from decimal import Decimal

import pytest

from application.dtos.payments import CreatePaymentRequest
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.webhook_reconciler import WEBHOOK_HANDLERS, WebhookReconciler
from domain.payment.entity import PaymentStatus, TransactionType, WebhookStatus
from domain.payment.exceptions import InvalidSignatureError, UnsupportedProviderError


@pytest.fixture
def reconciler(make_uow, registry) -> WebhookReconciler:
    return WebhookReconciler(make_uow, registry)


@pytest.fixture
def orchestrator(make_uow, registry, payment_settings) -> PaymentOrchestrator:
    return PaymentOrchestrator(make_uow, registry, payment_settings)


async def _webhook(make_uow, provider, event_id):
    async with make_uow(readonly=True) as uow:
        return await uow.webhooks.get_by_provider_event(provider, event_id)


async def _payment(make_uow, payment_uuid):
    async with make_uow(readonly=True) as uow:
        payment = await uow.payments.get_by_uuid(payment_uuid)
        transactions = await uow.transactions.list_by_payment(payment.id)
    return payment, transactions


@pytest.mark.asyncio
async def test_failed_event_for_unknown_payment_is_recorded(
    reconciler,
    make_uow,
    signed_headers,
    webhook_body,
):
    body = webhook_body(
        "evt_unknown",
        "payment_intent.payment_failed",
        {"id": "pi_missing", "last_payment_error": {"message": "Card declined"}},
    )

    result = await reconciler.ingest("stripe", signed_headers, body)

    assert result.status == WebhookStatus.PROCESSED.value
    assert result.duplicate is False
    webhook = await _webhook(make_uow, "stripe", "evt_unknown")
    assert webhook.status == WebhookStatus.PROCESSED
    assert webhook.attempts == 1
    assert webhook.processed_at is not None
    async with make_uow(readonly=True) as uow:
        assert await uow.payments.list_by_user(1) == []


@pytest.mark.asyncio
async def test_succeeded_event_settles_pending_payment(
    reconciler,
    orchestrator,
    make_uow,
    signed_headers,
    webhook_body,
):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("29.99")))

    await reconciler.ingest(
        "stripe",
        signed_headers,
        webhook_body("evt_1", "payment_intent.succeeded", {"id": payment.provider_payment_id, "status": "succeeded"}),
    )

    stored, transactions = await _payment(make_uow, payment.uuid)
    assert stored.status == PaymentStatus.SUCCEEDED
    assert stored.processed_at is not None
    assert stored.provider_response["status"] == "succeeded"
    assert [t.type for t in transactions] == [TransactionType.CHARGE]


@pytest.mark.asyncio
async def test_succeeded_event_after_confirm_adds_no_second_charge(
    reconciler,
    orchestrator,
    make_uow,
    signed_headers,
    webhook_body,
):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("5.00")))
    await orchestrator.confirm(1, payment.uuid)

    await reconciler.ingest(
        "stripe",
        signed_headers,
        webhook_body("evt_2", "payment_intent.succeeded", {"id": payment.provider_payment_id}),
    )

    _, transactions = await _payment(make_uow, payment.uuid)
    assert len(transactions) == 1


@pytest.mark.asyncio
async def test_failed_event_does_not_override_success(
    reconciler,
    orchestrator,
    make_uow,
    signed_headers,
    webhook_body,
):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("5.00")))
    await orchestrator.confirm(1, payment.uuid)

    await reconciler.ingest(
        "stripe",
        signed_headers,
        webhook_body("evt_late", "payment_intent.payment_failed", {"id": payment.provider_payment_id}),
    )

    stored, _ = await _payment(make_uow, payment.uuid)
    assert stored.status == PaymentStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_failed_event_marks_payment_failed(
    reconciler,
    orchestrator,
    make_uow,
    signed_headers,
    webhook_body,
):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("5.00")))

    await reconciler.ingest(
        "stripe",
        signed_headers,
        webhook_body(
            "evt_3",
            "payment_intent.payment_failed",
            {"id": payment.provider_payment_id, "last_payment_error": {"message": "Card declined"}},
        ),
    )

    stored, transactions = await _payment(make_uow, payment.uuid)
    assert stored.status == PaymentStatus.FAILED
    assert stored.failure_reason == "Card declined"
    assert transactions == []


@pytest.mark.asyncio
async def test_canceled_event(reconciler, orchestrator, make_uow, signed_headers, webhook_body):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("5.00")))

    await reconciler.ingest(
        "stripe",
        signed_headers,
        webhook_body("evt_4", "payment_intent.canceled", {"id": payment.provider_payment_id}),
    )

    stored, _ = await _payment(make_uow, payment.uuid)
    assert stored.status == PaymentStatus.CANCELED


@pytest.mark.asyncio
async def test_paypal_capture_completed_resolves_order(
    reconciler,
    orchestrator,
    make_uow,
    signed_headers,
    webhook_body,
):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("8.00"), provider="paypal"))
    resource = {"id": "CAP1", "supplementary_data": {"related_ids": {"order_id": payment.provider_payment_id}}}

    await reconciler.ingest("paypal", signed_headers, webhook_body("WH-1", "PAYMENT.CAPTURE.COMPLETED", resource))

    stored, transactions = await _payment(make_uow, payment.uuid)
    assert stored.status == PaymentStatus.SUCCEEDED
    assert len(transactions) == 1


@pytest.mark.asyncio
async def test_paypal_capture_denied(reconciler, orchestrator, make_uow, signed_headers, webhook_body):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("8.00"), provider="paypal"))
    resource = {"id": "CAP1", "supplementary_data": {"related_ids": {"order_id": payment.provider_payment_id}}}

    await reconciler.ingest("paypal", signed_headers, webhook_body("WH-2", "PAYMENT.CAPTURE.DENIED", resource))

    stored, _ = await _payment(make_uow, payment.uuid)
    assert stored.status == PaymentStatus.FAILED
    assert stored.failure_reason == "Payment denied by PayPal"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_noop(reconciler, orchestrator, make_uow, signed_headers, webhook_body):
    payment = await orchestrator.process(1, CreatePaymentRequest(amount=Decimal("5.00")))
    body = webhook_body("evt_dup", "payment_intent.succeeded", {"id": payment.provider_payment_id})

    first = await reconciler.ingest("stripe", signed_headers, body)
    second = await reconciler.ingest("stripe", signed_headers, body)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.webhook_id == first.webhook_id
    webhook = await _webhook(make_uow, "stripe", "evt_dup")
    assert webhook.attempts == 1
    _, transactions = await _payment(make_uow, payment.uuid)
    assert len(transactions) == 1


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(reconciler, make_uow, signed_headers, webhook_body):
    result = await reconciler.ingest("stripe", signed_headers, webhook_body("evt_5", "customer.created", {"id": "cus_1"}))

    assert result.status == WebhookStatus.PROCESSED.value
    assert result.event_type == "customer.created"


@pytest.mark.asyncio
async def test_invalid_signature_writes_nothing(reconciler, make_uow, signed_headers, webhook_body):
    body = webhook_body("evt_forged", "payment_intent.succeeded", {"id": "pi_1"})

    with pytest.raises(InvalidSignatureError):
        await reconciler.ingest("stripe", {"X-Test-Signature": "forged"}, body)

    assert await _webhook(make_uow, "stripe", "evt_forged") is None


@pytest.mark.asyncio
async def test_unknown_provider_rejected(reconciler, signed_headers, webhook_body):
    with pytest.raises(UnsupportedProviderError):
        await reconciler.ingest("bitcoin", signed_headers, webhook_body("evt_6", "x", {}))


@pytest.mark.asyncio
async def test_handler_failure_marks_webhook_failed_then_redelivery_succeeds(
    make_uow,
    registry,
    signed_headers,
    webhook_body,
):
    calls = []

    async def flaky(uow, event):
        calls.append(event.id)
        if len(calls) == 1:
            raise RuntimeError("database hiccup")

    handlers = dict(WEBHOOK_HANDLERS)
    handlers[("stripe", "payment_intent.succeeded")] = flaky
    reconciler = WebhookReconciler(make_uow, registry, handlers=handlers)
    body = webhook_body("evt_flaky", "payment_intent.succeeded", {"id": "pi_1"})

    with pytest.raises(RuntimeError):
        await reconciler.ingest("stripe", signed_headers, body)

    webhook = await _webhook(make_uow, "stripe", "evt_flaky")
    assert webhook.status == WebhookStatus.FAILED
    assert webhook.error_message == "database hiccup"
    assert webhook.attempts == 1

    result = await reconciler.ingest("stripe", signed_headers, body)

    assert result.duplicate is False
    assert result.status == WebhookStatus.PROCESSED.value
    webhook = await _webhook(make_uow, "stripe", "evt_flaky")
    assert webhook.attempts == 2
    assert webhook.error_message is None
    assert calls == ["evt_flaky", "evt_flaky"]
