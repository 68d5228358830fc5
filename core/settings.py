"""
Payment-related settings using pydantic-settings v2 with nested env keys.

This module is isolated so core.config.Settings stays focused on the app shell.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    connect: float = 3.0
    read: float = 10.0
    write: float = 10.0
    total: float = 20.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    # Stripe side network retries, on top of ours for connection errors
    max_network_retries: int = 0


class PayPalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    mode: Literal["sandbox", "live"] = "sandbox"
    webhook_id: Optional[str] = None
    verify_webhooks: bool = True
    brand_name: str = "Payment Orchestrator"

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class PaymentSettings(BaseSettings):
    default_provider: str = Field(default="stripe")
    supported_providers: list[str] = Field(default_factory=lambda: ["stripe", "paypal"])
    default_currency: str = "EUR"
    supported_currencies: list[str] = Field(default_factory=lambda: ["EUR", "USD", "GBP", "CAD"])
    min_amount: Decimal = Decimal("0.01")
    max_amount: Decimal = Decimal("999999.99")
    # Base URL used to build PayPal return/cancel links
    public_base_url: str = "http://localhost:8000"

    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return (v or "").upper()

    @field_validator("supported_currencies")
    @classmethod
    def _upper_currencies(cls, v: list[str]) -> list[str]:
        return [c.upper() for c in v]


payment_settings = PaymentSettings()
