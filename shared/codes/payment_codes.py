"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    UNSUPPORTED_PROVIDER = 60001
    SIGNATURE_ERROR = 60002

    # Lifecycle errors (61xxx)
    INVALID_STATE = 61000


# Provider -> internal payment status. Keys are normalized by the gateway
# (stripe: lower case, paypal: upper case) before lookup.
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "pending",
        "requires_confirmation": "pending",
        "requires_action": "pending",
        "requires_capture": "pending",
        "processing": "processing",
        "succeeded": "succeeded",
        "canceled": "canceled",
    },
    "paypal": {
        "CREATED": "pending",
        "SAVED": "pending",
        "APPROVED": "pending",
        "PAYER_ACTION_REQUIRED": "pending",
        "COMPLETED": "succeeded",
        "CANCELLED": "canceled",
        "FAILED": "failed",
    },
}

# Status used when the provider reports something outside the table above.
PROVIDER_STATUS_FALLBACK = {
    "stripe": "failed",
    "paypal": "pending",
}

# Stripe refund objects use their own status vocabulary.
REFUND_STATUS_TO_INTERNAL = {
    "stripe": {
        "pending": "pending",
        "requires_action": "pending",
        "succeeded": "succeeded",
        "failed": "failed",
        "canceled": "canceled",
    },
}
