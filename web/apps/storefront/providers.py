"""Service provider helpers for wiring the storefront with its ports.

The views never build collaborators themselves: they ask these factories.
``settings.USE_HTTP_ADAPTERS`` selects the real payment provider client or
the in-process stub, which lets tests and local development swap
implementations without touching view logic.
"""

from django.conf import settings

from .adapters import PaymentGatewayStub
from .cart import CartStore, SessionKeyValueStore
from .catalog import CatalogAccessor
from .domain import CheckoutOrchestrator, PaymentGatewayPort, PaymentWebhookReceiver
from .http_adapters import MollieGatewayClient
from .repository import OrderRepository


def get_payment_gateway() -> PaymentGatewayPort:
    """Return the payment gateway adapter for this process.

    Returns:
        PaymentGatewayPort: ``MollieGatewayClient`` when
        ``settings.USE_HTTP_ADAPTERS`` is truthy, otherwise
        ``PaymentGatewayStub``.
    """
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return MollieGatewayClient()
    return PaymentGatewayStub()


def get_catalog() -> CatalogAccessor:
    return CatalogAccessor()


def get_cart_store(request) -> CartStore:
    """Cart store bound to the request's session."""
    return CartStore(SessionKeyValueStore(request.session), key=settings.CART_SESSION_KEY)


def get_checkout_orchestrator(cart_store: CartStore) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(cart_store=cart_store, gateway=get_payment_gateway())


def get_webhook_receiver() -> PaymentWebhookReceiver:
    return PaymentWebhookReceiver(gateway=get_payment_gateway(), orders=OrderRepository())
