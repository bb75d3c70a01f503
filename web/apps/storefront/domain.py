"""Domain models, ports and services for the storefront.

This module contains the dataclasses used as DTOs for products, cart lines
and payment sessions, protocol definitions (ports) for the external
dependencies (payment gateway, order storage), the error taxonomy shared
by the whole app, and the two domain services that drive a purchase: the
checkout orchestrator and the payment webhook receiver.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Protocol, List, Optional, Tuple

logger = logging.getLogger("storefront.domain")

CURRENCY = "EUR"
PLACEHOLDER_IMAGE = "images/products/IMG_6131.jpeg"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_ABSOLUTE_URL_RE = re.compile(r"^(https?:)?//", re.IGNORECASE)


# ---- Errors ----
class StorefrontError(Exception):
    """Base class for every error raised by the storefront domain."""


class ConfigurationError(StorefrontError):
    """A required setting (e.g. the provider API key) is missing."""


class ValidationError(StorefrontError, ValueError):
    """Input the caller can correct: empty cart, bad total, bad index."""


class EmptyCartError(ValidationError):
    pass


class InvalidTotalError(ValidationError):
    pass


class CartIndexError(ValidationError):
    pass


class GatewayError(StorefrontError):
    """The payment provider failed or answered with something unusable.

    Attributes:
        status_code: HTTP status returned by the provider, when there was one.
        detail: Provider body excerpt or transport error, for operators only.
    """

    def __init__(self, code: str, status_code: int | None = None, detail: str = ""):
        super().__init__(code)
        self.code = code
        self.status_code = status_code
        self.detail = detail


class CheckoutFailedError(StorefrontError):
    """Generic checkout failure safe to show to shoppers."""


class PersistenceReadError(StorefrontError):
    pass


class PersistenceWriteError(StorefrontError):
    pass


class CatalogError(StorefrontError):
    pass


# ---- Helpers ----
def slugify(value) -> str:
    """Derive the URL-safe product identifier from a title.

    The value is lowercased, decomposed (NFD) so accents become combining
    marks, stripped of those marks, and every run of characters outside
    ``[a-z0-9]`` is collapsed into a single hyphen. Leading and trailing
    hyphens are trimmed. The function is idempotent.

    Titles differing only in case, accents or punctuation collapse to the
    same slug ("Pokémon: Red" and "pokemon red" both give "pokemon-red").
    Catalog titles are expected to stay distinct after that normalization.

    Args:
        value: Title (anything convertible with ``str``).

    Returns:
        str: The slug, possibly empty for titles without any letter or digit.
    """
    text = unicodedata.normalize("NFD", str(value).lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _NON_ALNUM_RE.sub("-", text).strip("-")


def fix_image(path: Optional[str]) -> str:
    """Normalize a catalog image reference.

    Absolute and protocol-relative URLs are kept, relative paths lose their
    leading slashes, and a missing image becomes the placeholder picture.
    """
    if not path:
        return PLACEHOLDER_IMAGE
    t = str(path).strip()
    if _ABSOLUTE_URL_RE.match(t):
        return t
    return t.lstrip("/")


def to_cents(price: Decimal) -> int:
    """Convert a major-unit price to integer cents, rounding half up."""
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount_cents: int) -> str:
    """Render integer cents as a two-decimal major-unit string (3500 -> "35.00")."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Product:
    """A catalog record. Read-only, sourced from the catalog JSON.

    Attributes:
        title: Display title, also the source of the slug.
        price: Price in major currency units.
        image: Optional image path or URL as found in the catalog.
        category: Optional category name.
    """

    title: str
    price: Decimal
    image: Optional[str] = None
    category: Optional[str] = None

    @property
    def slug(self) -> str:
        return slugify(self.title)

    @property
    def price_cents(self) -> int:
        return to_cents(self.price)

    @property
    def image_ref(self) -> str:
        return fix_image(self.image)


@dataclass(frozen=True)
class CartItemInput:
    """What a caller hands to ``CartStore.add``: a line without quantity."""

    slug: str
    title: str
    unit_price_cents: int
    image: str = ""
    category: str = ""

    @classmethod
    def from_product(cls, product: Product) -> "CartItemInput":
        return cls(
            slug=product.slug,
            title=product.title,
            unit_price_cents=product.price_cents,
            image=product.image_ref,
            category=product.category or "",
        )


@dataclass
class CartItem:
    """A cart line. ``quantity`` is always >= 1 while the line is stored.

    Identity is ``(slug, unit_price_cents)``: the same product recorded at
    two different prices gives two lines.
    """

    slug: str
    title: str
    unit_price_cents: int
    image: str = ""
    category: str = ""
    quantity: int = 1

    @property
    def key(self) -> Tuple[str, int]:
        return (self.slug, self.unit_price_cents)

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        """Serialized form shared with the storefront client."""
        return {
            "title": self.title,
            "priceCents": self.unit_price_cents,
            "qty": self.quantity,
            "image": self.image,
            "slug": self.slug,
            "category": self.category,
        }


@dataclass
class Cart:
    """Ordered cart lines; insertion order is display order."""

    items: List[CartItem] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return sum(it.quantity for it in self.items)

    @property
    def total_cents(self) -> int:
        return sum(it.subtotal_cents for it in self.items)

    def to_dict(self) -> dict:
        return {"items": [it.to_dict() for it in self.items]}


@dataclass(frozen=True)
class LineItem:
    """A client-declared payment line. Its prices are advisory: the gateway
    adapter recomputes the charged total from these lines itself."""

    title: str
    unit_price_cents: int
    quantity: int
    slug: str = ""
    category: str = ""
    image: str = ""

    @classmethod
    def from_cart_item(cls, item: CartItem) -> "LineItem":
        return cls(
            title=item.title,
            unit_price_cents=item.unit_price_cents,
            quantity=item.quantity,
            slug=item.slug,
            category=item.category,
            image=item.image,
        )

    def to_metadata(self) -> dict:
        return {
            "title": self.title,
            "priceCents": self.unit_price_cents,
            "qty": self.quantity,
            "image": self.image,
            "slug": self.slug,
            "category": self.category,
        }


@dataclass
class PaymentSession:
    """A payment created at the provider. Not persisted locally; the
    provider keeps the authoritative record, retrievable by id."""

    provider_payment_id: str
    checkout_url: str
    amount_cents: int
    currency: str = CURRENCY
    metadata: dict = field(default_factory=dict)


@dataclass
class PaymentStatus:
    """Provider status of a payment plus the metadata echoed back."""

    payment_id: str
    status: str
    metadata: dict = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


def compute_total_cents(line_items: List[LineItem]) -> int:
    """Server-trusted total: sum of price x quantity over lines where both
    are positive. Client-declared totals are never used."""
    return sum(
        li.unit_price_cents * li.quantity
        for li in line_items
        if li.unit_price_cents > 0 and li.quantity > 0
    )


# ---- Ports (DIP) ----
class PaymentGatewayPort(Protocol):
    """Port describing the payment provider operations used by the domain."""

    def create_session(self, line_items: List[LineItem], customer: dict) -> PaymentSession:
        """Create a payment at the provider.

        Args:
            line_items: Client-declared lines; the total is recomputed from them.
            customer: Opaque customer object, round-tripped as metadata.

        Returns:
            PaymentSession with the checkout URL to redirect the shopper to.

        Raises:
            ConfigurationError: When the provider credential is missing.
            InvalidTotalError: When the recomputed total is not positive.
            GatewayError: When the provider fails or returns no checkout URL.
        """
        raise NotImplementedError()

    def get_status(self, payment_id: str) -> PaymentStatus:
        """Fetch the current status of a payment by provider id.

        Raises:
            ConfigurationError: When the provider credential is missing.
            GatewayError: When the provider answers with a non-success status.
        """
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Port for durable, idempotent storage of paid payments."""

    def record_paid(self, status: PaymentStatus) -> Tuple[object, bool]:
        """Store the paid payment once per provider payment id.

        Returns:
            tuple: ``(order_id, created)``; ``created`` is False on redelivery.
        """
        raise NotImplementedError()


# ---- Domain services ----
class CheckoutOrchestrator:
    """Turn the current cart into a provider payment session.

    The orchestrator never trusts its own total: it forwards the cart lines
    and lets the gateway adapter recompute the charged amount. On success
    the cart is cleared right away, before the shopper has paid. An
    abandoned payment therefore leaves an empty cart; that is accepted
    product behavior.
    """

    def __init__(self, cart_store, gateway: PaymentGatewayPort):
        """Initialize the orchestrator with its collaborators.

        Args:
            cart_store: ``CartStore`` holding the shopper's cart.
            gateway: ``PaymentGatewayPort`` used to create the payment.
        """
        self.cart_store = cart_store
        self.gateway = gateway

    def checkout(self, customer: Optional[dict] = None) -> PaymentSession:
        """Create a payment for the current cart and clear the cart.

        Args:
            customer: Optional customer object passed as provider metadata.

        Returns:
            PaymentSession whose ``checkout_url`` is the redirect target.

        Raises:
            EmptyCartError: If the cart has no lines (no gateway call is made).
            InvalidTotalError: If the recomputed total is not positive.
            ConfigurationError: If the provider is not configured.
            CheckoutFailedError: If the provider call failed; the cart is
                left untouched and the details only go to the logs.
        """
        cart = self.cart_store.get()
        if not cart.items:
            raise EmptyCartError("EMPTY_CART")

        line_items = [LineItem.from_cart_item(it) for it in cart.items]
        try:
            session = self.gateway.create_session(line_items, customer or {})
        except GatewayError as e:
            logger.error(
                "payment session creation failed",
                extra={"code": e.code, "provider_status": e.status_code, "provider_detail": e.detail},
            )
            raise CheckoutFailedError("PAYMENT_START_FAILED") from e

        try:
            self.cart_store.clear()
        except PersistenceWriteError:
            logger.warning("cart clear not persisted after checkout", exc_info=True)

        logger.info(
            "checkout started",
            extra={"payment_id": session.provider_payment_id, "amount_cents": session.amount_cents},
        )
        return session


class PaymentWebhookReceiver:
    """Resolve a provider callback to the payment's status.

    Lookup errors propagate so the HTTP layer can ask the provider to
    redeliver. Once the status is known the callback counts as received:
    paid payments are handed to the order store, and a failure there is
    logged without failing the callback.
    """

    def __init__(self, gateway: PaymentGatewayPort, orders: Optional[OrderStorePort] = None):
        self.gateway = gateway
        self.orders = orders

    def handle(self, payment_id: str) -> PaymentStatus:
        status = self.gateway.get_status(payment_id)
        logger.info(
            "payment status received",
            extra={"payment_id": status.payment_id, "status": status.status},
        )
        if status.is_paid and self.orders is not None:
            try:
                order_id, created = self.orders.record_paid(status)
            except Exception:
                logger.exception("order storage failed", extra={"payment_id": status.payment_id})
            else:
                logger.info(
                    "paid order recorded" if created else "paid order already recorded",
                    extra={"payment_id": status.payment_id, "order_id": str(order_id)},
                )
        return status
