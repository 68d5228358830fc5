"""
Provider registry for payment gateways.

Gateways are built explicitly from settings (or injected) and cached per
provider; nothing here is process-global.
"""
from __future__ import annotations

from typing import Callable, Mapping, Optional

from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.payment.exceptions import UnsupportedProviderError


logger = get_logger(__name__)

GatewayFactory = Callable[[PaymentSettings], PaymentGateway]


def _stripe_factory(settings: PaymentSettings) -> PaymentGateway:
    from .stripe_client import StripeGateway
    return StripeGateway.from_settings(settings)


def _paypal_factory(settings: PaymentSettings) -> PaymentGateway:
    from .paypal_client import PayPalGateway
    return PayPalGateway.from_settings(settings)


DEFAULT_FACTORIES: dict[str, GatewayFactory] = {
    "stripe": _stripe_factory,
    "paypal": _paypal_factory,
}


class ProviderRegistry:
    """Resolve a provider name to its gateway (case-insensitive)."""

    def __init__(
        self,
        settings: PaymentSettings,
        *,
        factories: Optional[Mapping[str, GatewayFactory]] = None,
        gateways: Optional[Mapping[str, PaymentGateway]] = None,
    ) -> None:
        self._settings = settings
        enabled = {p.lower() for p in settings.supported_providers}
        source = factories if factories is not None else DEFAULT_FACTORIES
        self._factories = {name: f for name, f in source.items() if name in enabled}
        self._gateways: dict[str, PaymentGateway] = {}
        for name, gateway in (gateways or {}).items():
            self._gateways[name.lower()] = gateway
            self._factories.setdefault(name.lower(), lambda _s, _g=gateway: _g)

    def supported_providers(self) -> list[str]:
        return sorted(self._factories)

    def resolve(self, provider: Optional[str] = None) -> PaymentGateway:
        name = (provider or self._settings.default_provider or "").strip().lower()
        if name not in self._factories:
            raise UnsupportedProviderError(name, supported=self.supported_providers())
        gateway = self._gateways.get(name)
        if gateway is None:
            gateway = self._factories[name](self._settings)
            self._gateways[name] = gateway
            logger.info("payment_gateway_initialized", provider=name)
        return gateway

    async def aclose(self) -> None:
        for gateway in self._gateways.values():
            close = getattr(gateway, "aclose", None)
            if close is not None:
                await close()
        self._gateways.clear()


def build_registry(settings: Optional[PaymentSettings] = None) -> ProviderRegistry:
    if settings is None:
        from core.settings import payment_settings
        settings = payment_settings
    return ProviderRegistry(settings)


__all__ = ["ProviderRegistry", "build_registry", "DEFAULT_FACTORIES"]
