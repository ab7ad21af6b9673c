"""Service provider helpers for wiring the checkout services with ports.

``get_checkout_service`` and ``get_reconciler`` return domain services
backed by the Django store. The cart port is the HTTP client when
``settings.USE_HTTP_ADAPTERS`` is truthy, otherwise a process-local
in-memory cart suitable for tests and local development.
"""

from django.conf import settings

from .adapters import InMemoryCart
from .domain import CartPort, CheckoutService, PaymentReconciler
from .http_adapters import HttpCartClient
from .repository import DjangoCheckoutStore

local_cart = InMemoryCart()


def get_cart() -> CartPort:
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpCartClient()
    return local_cart


def get_checkout_service() -> CheckoutService:
    return CheckoutService(cart=get_cart(), store=DjangoCheckoutStore())


def get_reconciler() -> PaymentReconciler:
    return PaymentReconciler(store=DjangoCheckoutStore())
