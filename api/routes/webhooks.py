"""
Provider webhook endpoint.

No owner header: authenticity comes from the provider signature. The raw
body is passed through untouched because signatures are computed over it.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_payment_service
from application.services.payment_service import PaymentService
from core.response import success_response


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}", summary="Receive provider webhook")
async def receive_webhook(
    provider: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    body = await request.body()
    result = (await service.ingest_webhook(provider, request.headers, body)).unwrap()
    message = "Duplicate event ignored" if result.duplicate else "Webhook processed"
    return success_response(data=result, message=message)
