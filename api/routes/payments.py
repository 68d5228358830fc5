"""
Payments API routes.

Thin adapters over the PaymentService facade: parse input, unwrap the
OperationResult (business errors go to the global handlers), wrap output in
the unified response envelope.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import get_owner_id, get_payment_service
from application.dtos.payments import (
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    PaymentFilters,
    RefundPaymentRequest,
)
from application.services.payment_service import PaymentService
from core.response import success_response
from domain.payment.entity import PaymentStatus, PaymentType


router = APIRouter(prefix="/payments", tags=["Payments"])


@router.get("", summary="List payments")
async def list_payments(
    status_: Optional[PaymentStatus] = Query(default=None, alias="status"),
    provider: Optional[str] = Query(default=None),
    type_: Optional[PaymentType] = Query(default=None, alias="type"),
    from_date: Optional[datetime] = Query(default=None),
    to_date: Optional[datetime] = Query(default=None),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    filters = PaymentFilters(
        status=status_,
        provider=provider,
        type=type_,
        from_date=from_date,
        to_date=to_date,
        skip=skip,
        limit=limit,
    )
    payments = (await service.list_payments(owner_id, filters)).unwrap()
    return success_response(data=payments)


@router.post("", summary="Create payment", status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: CreatePaymentRequest,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    payment = (await service.create_payment(owner_id, payload)).unwrap()
    return success_response(data=payment, message="Payment created")


@router.get("/stats", summary="Payment statistics")
async def payment_stats(
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    stats = (await service.get_payment_stats(owner_id)).unwrap()
    return success_response(data=stats)


@router.get("/paypal/success", summary="PayPal approval return")
async def paypal_success(
    token: Optional[str] = Query(default=None),
    payer_id: Optional[str] = Query(default=None, alias="PayerID"),
):
    # PayPal redirects the buyer here after approval; capture happens via /confirm
    return success_response(
        data={"order_id": token, "payer_id": payer_id},
        message="PayPal payment approved, confirm to capture",
    )


@router.get("/paypal/cancel", summary="PayPal cancel return")
async def paypal_cancel(token: Optional[str] = Query(default=None)):
    return success_response(data={"order_id": token}, message="PayPal payment canceled by payer")


@router.get("/{payment_uuid}", summary="Get payment")
async def get_payment(
    payment_uuid: str,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    payment = (await service.get_payment(owner_id, payment_uuid)).unwrap()
    return success_response(data=payment)


@router.post("/{payment_uuid}/confirm", summary="Confirm payment")
async def confirm_payment(
    payment_uuid: str,
    payload: Optional[ConfirmPaymentRequest] = None,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    payment = (await service.confirm_payment(owner_id, payment_uuid, payload)).unwrap()
    return success_response(data=payment, message="Payment confirmed")


@router.post("/{payment_uuid}/refund", summary="Refund payment", status_code=status.HTTP_201_CREATED)
async def refund_payment(
    payment_uuid: str,
    payload: Optional[RefundPaymentRequest] = None,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    refund = (await service.refund_payment(owner_id, payment_uuid, payload)).unwrap()
    return success_response(data=refund, message="Refund created")
