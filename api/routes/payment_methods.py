"""
Payment method API routes.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import get_owner_id, get_payment_service
from application.dtos.payments import RegisterPaymentMethodRequest, UpdatePaymentMethodRequest
from application.services.payment_service import PaymentService
from core.response import success_response


router = APIRouter(prefix="/payment-methods", tags=["Payment Methods"])


@router.get("", summary="List active payment methods")
async def list_payment_methods(
    provider: Optional[str] = Query(default=None),
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    methods = (await service.list_payment_methods(owner_id, provider)).unwrap()
    return success_response(data=methods)


@router.post("", summary="Register payment method", status_code=status.HTTP_201_CREATED)
async def create_payment_method(
    payload: RegisterPaymentMethodRequest,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    method = (await service.create_payment_method(owner_id, payload)).unwrap()
    return success_response(data=method, message="Payment method registered")


@router.get("/{method_id}", summary="Get payment method")
async def get_payment_method(
    method_id: int,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    method = (await service.get_payment_method(owner_id, method_id)).unwrap()
    return success_response(data=method)


@router.put("/{method_id}", summary="Update payment method flags")
async def update_payment_method(
    method_id: int,
    payload: UpdatePaymentMethodRequest,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    method = (await service.update_payment_method(owner_id, method_id, payload)).unwrap()
    return success_response(data=method, message="Payment method updated")


@router.post("/{method_id}/set-default", summary="Make payment method the default")
async def set_default_payment_method(
    method_id: int,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    method = (await service.set_default_payment_method(owner_id, method_id)).unwrap()
    return success_response(data=method, message="Default payment method updated")


@router.delete("/{method_id}", summary="Deactivate payment method")
async def delete_payment_method(
    method_id: int,
    owner_id: int = Depends(get_owner_id),
    service: PaymentService = Depends(get_payment_service),
):
    deleted = (await service.delete_payment_method(owner_id, method_id)).unwrap()
    return success_response(data={"deleted": deleted}, message="Payment method deleted")
