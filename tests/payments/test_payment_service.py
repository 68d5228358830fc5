from decimal import Decimal

import pytest

from application.dtos.payments import (
    CreatePaymentRequest,
    RefundPaymentRequest,
    RegisterPaymentMethodRequest,
    UpdatePaymentMethodRequest,
)
from domain.payment.exceptions import NotFoundError, ProviderError
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


@pytest.mark.asyncio
async def test_create_and_confirm_return_dtos(service):
    created = await service.create_payment(1, CreatePaymentRequest(amount=Decimal("29.99")))

    assert created.success is True
    assert created.data.status == "pending"
    assert created.data.formatted_amount == "29.99 EUR"

    confirmed = await service.confirm_payment(1, created.data.uuid)
    assert confirmed.success is True
    assert confirmed.data.status == "succeeded"

    fetched = (await service.get_payment(1, created.data.uuid)).unwrap()
    assert [t.type for t in fetched.transactions] == ["charge"]


@pytest.mark.asyncio
async def test_business_errors_become_failures(service):
    result = await service.get_payment(1, "missing-uuid")

    assert result.success is False
    assert result.data is None
    assert isinstance(result.error, NotFoundError)
    assert result.error_code == BusinessCode.NOT_FOUND
    with pytest.raises(NotFoundError):
        result.unwrap()


@pytest.mark.asyncio
async def test_provider_failure_reported_with_taxonomy(service, stripe_gateway):
    created = (await service.create_payment(1, CreatePaymentRequest(amount=Decimal("5.00")))).unwrap()
    stripe_gateway.confirm_error = "Your card was declined."

    result = await service.confirm_payment(1, created.uuid)

    assert result.success is False
    assert isinstance(result.error, ProviderError)
    assert result.error_code == PaymentCode.PROVIDER_ERROR
    assert result.error_type == "ProviderError"
    assert result.message == "Your card was declined."
    assert (await service.get_payment(1, created.uuid)).unwrap().status == "failed"


@pytest.mark.asyncio
async def test_unsupported_provider_failure(service):
    result = await service.create_payment(1, CreatePaymentRequest(amount=Decimal("5.00"), provider="bitcoin"))

    assert result.error_code == PaymentCode.UNSUPPORTED_PROVIDER
    assert result.error.details["supported"] == ["paypal", "stripe"]


@pytest.mark.asyncio
async def test_payment_method_operations(service):
    created = (
        await service.create_payment_method(
            1, RegisterPaymentMethodRequest(provider="stripe", payment_method_id="pm_card_visa", is_default=True)
        )
    ).unwrap()

    assert created.display_name == "**** 4242 (visa)"
    assert created.is_default is True
    assert [m.id for m in (await service.list_payment_methods(1)).unwrap()] == [created.id]
    assert (await service.get_payment_method(1, created.id)).unwrap().id == created.id
    assert (await service.set_default_payment_method(1, created.id)).unwrap().is_default is True
    updated = (await service.update_payment_method(1, created.id, UpdatePaymentMethodRequest(is_default=False))).unwrap()
    assert updated.is_default is False
    assert (await service.delete_payment_method(1, created.id)).unwrap() is True
    assert (await service.list_payment_methods(1)).unwrap() == []
    assert (await service.get_payment_method(2, created.id)).error_code == BusinessCode.NOT_FOUND


@pytest.mark.asyncio
async def test_refund_and_stats(service):
    created = (await service.create_payment(1, CreatePaymentRequest(amount=Decimal("29.99")))).unwrap()
    (await service.confirm_payment(1, created.uuid)).unwrap()

    refund = (await service.refund_payment(1, created.uuid, RefundPaymentRequest(amount=Decimal("10.00")))).unwrap()
    assert refund.type == "refund"
    assert refund.amount == Decimal("10.00")

    over = await service.refund_payment(1, created.uuid, RefundPaymentRequest(amount=Decimal("25.00")))
    assert over.error_code == BusinessCode.PARAM_VALIDATION_ERROR

    stats = (await service.get_payment_stats(1)).unwrap()
    assert stats.total_amount == Decimal("29.99")
    assert stats.total_refunded == Decimal("10.00")


@pytest.mark.asyncio
async def test_ingest_webhook_result(service, signed_headers, webhook_body):
    body = webhook_body("evt_1", "payment_intent.payment_failed", {"id": "pi_unknown"})

    first = (await service.ingest_webhook("stripe", signed_headers, body)).unwrap()
    second = (await service.ingest_webhook("stripe", signed_headers, body)).unwrap()

    assert first.status == "processed"
    assert second.duplicate is True

    forged = await service.ingest_webhook("stripe", {}, body)
    assert forged.error_code == PaymentCode.SIGNATURE_ERROR
