"""
Webhook reconciliation: verify, record, dispatch, and apply provider events.

Handlers are registered per (provider, event_type) with ``register_handler``
and receive the processing unit of work plus the parsed event. Unknown event
types are recorded and acknowledged.

Each delivery runs in three transactional scopes:

1. record   - insert the Webhook row (unique per provider event id)
2. process  - lock the row, run the handler, mark it processed
3. failure  - only when step 2 raised: mark the row failed, then re-raise

A processed duplicate is a no-op; a failed or unfinished one is processed
again, since providers redeliver until they get a 2xx.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple

from application.dtos.payments import WebhookEvent, WebhookResult
from application.ports.payment_gateway import GatewayResolver
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, Transaction, TransactionType, Webhook
from domain.payment.exceptions import WebhookAlreadyRecordedError


logger = get_logger(__name__)

WebhookHandler = Callable[[AbstractUnitOfWork, WebhookEvent], Awaitable[None]]

# (provider, event_type) -> handler
WEBHOOK_HANDLERS: dict[Tuple[str, str], WebhookHandler] = {}


def register_handler(provider: str, *event_types: str) -> Callable[[WebhookHandler], WebhookHandler]:
    """
    Decorator registering a handler for one or more event types.

    Usage:
        @register_handler("stripe", "payment_intent.succeeded")
        async def handle_succeeded(uow, event): ...
    """

    def decorator(func: WebhookHandler) -> WebhookHandler:
        for event_type in event_types:
            WEBHOOK_HANDLERS[(provider, event_type)] = func
        return func

    return decorator


class WebhookReconciler:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        registry: GatewayResolver,
        handlers: Optional[Mapping[Tuple[str, str], WebhookHandler]] = None,
    ):
        self._uow_factory = uow_factory
        self._registry = registry
        self._handlers = WEBHOOK_HANDLERS if handlers is None else handlers

    async def ingest(self, provider: str, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        gateway = self._registry.resolve(provider)
        # signature failures raise before anything is written
        event = await gateway.parse_webhook(headers, body)

        webhook, duplicate = await self._record(event)
        if duplicate:
            logger.info(
                "webhook_duplicate_ignored",
                provider=event.provider,
                event_id=event.id,
                event_type=event.type,
            )
            return self._result(webhook, duplicate=True)

        try:
            webhook, duplicate = await self._process(event)
        except Exception as exc:
            await self._mark_failed(event, exc)
            raise
        return self._result(webhook, duplicate=duplicate)

    async def _record(self, event: WebhookEvent) -> Tuple[Webhook, bool]:
        try:
            async with self._uow_factory() as uow:
                existing = await uow.webhooks.get_by_provider_event(event.provider, event.id)
                if existing is not None:
                    return existing, existing.is_processed()
                created = await uow.webhooks.create(
                    Webhook(
                        id=None,
                        provider=event.provider,
                        event_type=event.type,
                        provider_event_id=event.id,
                        payload=event.payload,
                    )
                )
                return created, False
        except WebhookAlreadyRecordedError:
            # concurrent delivery inserted the same event first
            async with self._uow_factory(readonly=True) as uow:
                existing = await uow.webhooks.get_by_provider_event(event.provider, event.id)
            return existing, existing.is_processed()

    async def _process(self, event: WebhookEvent) -> Tuple[Webhook, bool]:
        async with self._uow_factory() as uow:
            webhook = await uow.webhooks.get_by_provider_event(event.provider, event.id, for_update=True)
            if webhook.is_processed():
                return webhook, True

            webhook.start_attempt()
            handler = self._handlers.get((event.provider, event.type))
            if handler is None:
                logger.info(
                    "webhook_unhandled",
                    provider=event.provider,
                    event_id=event.id,
                    event_type=event.type,
                )
            else:
                await handler(uow, event)

            webhook.mark_processed()
            webhook = await uow.webhooks.update(webhook)

        logger.info(
            "webhook_processed",
            provider=event.provider,
            event_id=event.id,
            event_type=event.type,
            attempts=webhook.attempts,
        )
        return webhook, False

    async def _mark_failed(self, event: WebhookEvent, exc: Exception) -> None:
        logger.error(
            "webhook_processing_failed",
            provider=event.provider,
            event_id=event.id,
            event_type=event.type,
            error=str(exc),
        )
        async with self._uow_factory() as uow:
            webhook = await uow.webhooks.get_by_provider_event(event.provider, event.id, for_update=True)
            if webhook is None or webhook.is_processed():
                return
            webhook.start_attempt()
            webhook.mark_failed(str(exc) or exc.__class__.__name__)
            await uow.webhooks.update(webhook)

    @staticmethod
    def _result(webhook: Webhook, *, duplicate: bool) -> WebhookResult:
        return WebhookResult(
            webhook_id=webhook.id,
            provider=webhook.provider,
            event_id=webhook.provider_event_id,
            event_type=webhook.event_type,
            status=webhook.status.value,
            duplicate=duplicate,
        )


# Shared transitions

async def _load_payment(uow: AbstractUnitOfWork, event: WebhookEvent, provider_payment_id: Any) -> Optional[Payment]:
    if not provider_payment_id:
        logger.warning("webhook_payment_reference_missing", provider=event.provider, event_id=event.id)
        return None
    payment = await uow.payments.get_by_provider_payment_id(
        event.provider, str(provider_payment_id), for_update=True
    )
    if payment is None:
        logger.warning(
            "webhook_payment_not_found",
            provider=event.provider,
            event_id=event.id,
            provider_payment_id=str(provider_payment_id),
        )
    return payment


async def _apply_succeeded(uow: AbstractUnitOfWork, event: WebhookEvent, payment: Optional[Payment], snapshot: dict) -> None:
    if payment is None or not payment.mark_succeeded(snapshot):
        return
    payment = await uow.payments.update(payment)
    if await uow.transactions.count_by_payment(payment.id) == 0:
        await uow.transactions.create(Transaction.for_payment(payment, TransactionType.CHARGE))
    logger.info("payment_succeeded_by_webhook", provider=event.provider, payment_uuid=payment.uuid)


async def _apply_failed(
    uow: AbstractUnitOfWork,
    event: WebhookEvent,
    payment: Optional[Payment],
    snapshot: dict,
    reason: str,
) -> None:
    if payment is None or not payment.mark_failed(reason, snapshot):
        return
    await uow.payments.update(payment)
    logger.info("payment_failed_by_webhook", provider=event.provider, payment_uuid=payment.uuid, reason=reason)


async def _apply_canceled(uow: AbstractUnitOfWork, event: WebhookEvent, payment: Optional[Payment], snapshot: dict) -> None:
    if payment is None or not payment.mark_canceled(snapshot):
        return
    await uow.payments.update(payment)
    logger.info("payment_canceled_by_webhook", provider=event.provider, payment_uuid=payment.uuid)


# Stripe

@register_handler("stripe", "payment_intent.succeeded")
async def handle_stripe_intent_succeeded(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    intent = event.resource
    payment = await _load_payment(uow, event, intent.get("id"))
    await _apply_succeeded(uow, event, payment, intent)


@register_handler("stripe", "payment_intent.payment_failed")
async def handle_stripe_intent_failed(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    intent = event.resource
    reason = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
    payment = await _load_payment(uow, event, intent.get("id"))
    await _apply_failed(uow, event, payment, intent, reason)


@register_handler("stripe", "payment_intent.canceled")
async def handle_stripe_intent_canceled(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    intent = event.resource
    payment = await _load_payment(uow, event, intent.get("id"))
    await _apply_canceled(uow, event, payment, intent)


@register_handler("stripe", "charge.dispute.created")
async def handle_stripe_dispute_created(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    dispute = event.resource
    payment = await _load_payment(uow, event, dispute.get("payment_intent"))
    if payment is not None:
        logger.warning(
            "payment_dispute_created",
            provider=event.provider,
            payment_uuid=payment.uuid,
            dispute_id=dispute.get("id"),
            amount=dispute.get("amount"),
            reason=dispute.get("reason"),
        )


# PayPal

def _paypal_order_id(event: WebhookEvent) -> Optional[str]:
    related = ((event.resource.get("supplementary_data") or {}).get("related_ids") or {})
    return related.get("order_id")


@register_handler("paypal", "PAYMENT.CAPTURE.COMPLETED")
async def handle_paypal_capture_completed(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    payment = await _load_payment(uow, event, _paypal_order_id(event))
    await _apply_succeeded(uow, event, payment, event.payload)


@register_handler("paypal", "PAYMENT.CAPTURE.DENIED")
async def handle_paypal_capture_denied(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    payment = await _load_payment(uow, event, _paypal_order_id(event))
    await _apply_failed(uow, event, payment, event.payload, "Payment denied by PayPal")


@register_handler("paypal", "PAYMENT.CAPTURE.REFUNDED")
async def handle_paypal_capture_refunded(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    payment = await _load_payment(uow, event, _paypal_order_id(event))
    if payment is not None:
        logger.info(
            "payment_refunded_by_webhook",
            provider=event.provider,
            payment_uuid=payment.uuid,
            refund_amount=(event.resource.get("amount") or {}).get("value"),
        )


@register_handler("paypal", "CHECKOUT.ORDER.VOIDED")
async def handle_paypal_order_voided(uow: AbstractUnitOfWork, event: WebhookEvent) -> None:
    payment = await _load_payment(uow, event, event.resource.get("id"))
    await _apply_canceled(uow, event, payment, event.payload)


__all__ = ["WebhookReconciler", "WEBHOOK_HANDLERS", "register_handler", "WebhookHandler"]
