"""
Payment error taxonomy.

Every failure the engine reports is one of these types. They are plain
BusinessException subclasses so the FastAPI handlers and OperationResult can
render them uniformly.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException, DomainValidationException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class UnsupportedProviderError(BusinessException):
    def __init__(self, provider: str, *, supported: Optional[list[str]] = None):
        super().__init__(
            code=PaymentCode.UNSUPPORTED_PROVIDER,
            message=f"Unsupported payment provider: {provider}",
            error_type="UnsupportedProviderError",
            details={"provider": provider, "supported": supported or []},
            field="provider",
        )


class ProviderError(BusinessException):
    """The external processor rejected or could not complete a call."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        self.provider = provider
        self.provider_code = provider_code
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="ProviderError",
            details=full_details,
        )


class InvalidSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="InvalidSignatureError",
            details=full_details,
        )


class InvalidStateError(BusinessException):
    def __init__(self, message: str, *, entity: str, status: Optional[str] = None, entity_id: Optional[str] = None):
        details = {"entity": entity}
        if status is not None:
            details["status"] = status
        if entity_id is not None:
            details["id"] = entity_id
        super().__init__(
            code=PaymentCode.INVALID_STATE,
            message=message,
            error_type="InvalidStateError",
            details=details,
        )


class NotFoundError(BusinessException):
    def __init__(self, entity: str, identifier: Optional[str] = None):
        details = {"entity": entity}
        if identifier is not None:
            details["id"] = identifier
        super().__init__(
            code=BusinessCode.NOT_FOUND,
            message=f"{entity} not found",
            error_type="NotFoundError",
            details=details,
        )


class ValidationError(DomainValidationException):
    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(message, field=field, details=details, error_type="ValidationError")


class WebhookAlreadyRecordedError(BusinessException):
    """Raised by the ledger when (provider, provider_event_id) already exists."""

    def __init__(self, provider: str, provider_event_id: str):
        self.provider = provider
        self.provider_event_id = provider_event_id
        super().__init__(
            code=BusinessCode.BUSINESS_ERROR,
            message=f"Webhook event already recorded: {provider}/{provider_event_id}",
            error_type="WebhookAlreadyRecordedError",
            details={"provider": provider, "event_id": provider_event_id},
        )


__all__ = [
    "UnsupportedProviderError",
    "ProviderError",
    "InvalidSignatureError",
    "InvalidStateError",
    "NotFoundError",
    "ValidationError",
    "WebhookAlreadyRecordedError",
]
