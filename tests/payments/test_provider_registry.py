import pytest

from core.settings import PaymentSettings
from domain.payment.exceptions import UnsupportedProviderError
from infrastructure.external.payments import ProviderRegistry, build_registry


class _Closable:
    provider = "stripe"

    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


def test_resolve_is_case_insensitive(registry, stripe_gateway, paypal_gateway):
    assert registry.resolve("Stripe") is stripe_gateway
    assert registry.resolve(" PAYPAL ") is paypal_gateway


def test_resolve_defaults_to_configured_provider(registry, stripe_gateway):
    assert registry.resolve(None) is stripe_gateway
    assert registry.resolve("") is stripe_gateway


def test_unknown_provider_lists_supported(registry):
    with pytest.raises(UnsupportedProviderError) as exc:
        registry.resolve("alipay")
    assert exc.value.details == {"provider": "alipay", "supported": ["paypal", "stripe"]}


def test_factories_are_built_once_and_filtered_by_settings():
    built = []

    def factory(settings):
        built.append(settings)
        return _Closable()

    settings = PaymentSettings(supported_providers=["stripe"])
    registry = ProviderRegistry(settings, factories={"stripe": factory, "paypal": factory})

    assert registry.supported_providers() == ["stripe"]
    first = registry.resolve("stripe")
    assert registry.resolve("stripe") is first
    assert built == [settings]
    with pytest.raises(UnsupportedProviderError):
        registry.resolve("paypal")


@pytest.mark.asyncio
async def test_aclose_closes_built_gateways():
    gateway = _Closable()
    registry = ProviderRegistry(PaymentSettings(), factories={"stripe": lambda _s: gateway})
    registry.resolve("stripe")

    await registry.aclose()

    assert gateway.closed is True


def test_missing_credentials_fail_on_first_use():
    settings = PaymentSettings(supported_providers=["stripe", "paypal"])
    settings.stripe.secret_key = None
    registry = build_registry(settings)

    assert registry.supported_providers() == ["paypal", "stripe"]
    with pytest.raises(RuntimeError):
        registry.resolve("stripe")
