"""Payment provider registry."""

from fixitflow.billing.errors import ValidationError
from fixitflow.billing.providers.base import PaymentProvider, ProviderName
from fixitflow.billing.providers.paypal_provider import PayPalProvider
from fixitflow.billing.providers.stripe_provider import StripeProvider

_providers: dict[str, PaymentProvider] = {}


def get_provider(name: str) -> PaymentProvider:
    """Return the adapter for ``name`` ("stripe" or "paypal")."""
    try:
        key = ProviderName(name).value
    except ValueError:
        raise ValidationError(f"Unsupported payment provider: {name!r}") from None
    if key not in _providers:
        _providers[key] = StripeProvider() if key == ProviderName.STRIPE.value else PayPalProvider()
    return _providers[key]


def register_provider(provider: PaymentProvider) -> None:
    """Install a provider adapter under its name (alternative clients, tests)."""
    _providers[provider.name] = provider


def reset_providers() -> None:
    _providers.clear()


async def close_providers() -> None:
    for provider in _providers.values():
        close = getattr(provider, "close", None)
        if close is not None:
            await close()
    _providers.clear()


__all__ = [
    "PaymentProvider",
    "PayPalProvider",
    "ProviderName",
    "StripeProvider",
    "close_providers",
    "get_provider",
    "register_provider",
    "reset_providers",
]
