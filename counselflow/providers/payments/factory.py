from __future__ import annotations

from counselflow.core.config import get_settings
from counselflow.core.errors import DependencyFailure
from counselflow.providers.payments.fake import FakePaymentProvider
from counselflow.providers.payments.stripe_checkout import StripeCheckoutProvider


_provider = None


def get_payment_provider():
    # Cache the provider so the fake keeps its sessions across requests.
    global _provider
    if _provider is not None:
        return _provider
    settings = get_settings()
    name = (settings.payment_provider or "stripe").lower()
    if name == "fake":
        _provider = FakePaymentProvider()
    elif name == "stripe":
        _provider = StripeCheckoutProvider()
    else:
        raise DependencyFailure(f"Unsupported payment provider: {name}")
    return _provider


def set_payment_provider(provider) -> None:
    # Swap the provider for tests; None restores settings-based selection.
    global _provider
    _provider = provider
