"""Pydantic schemas for the storefront.

This module exposes the request/validation schemas used by the storefront
API, plus the schemas that guard data read back from outside the process:
the persisted cart state and the catalog records.
"""

import re
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


PAYMENT_ID_RE = re.compile(r"^[a-z]+_[A-Za-z0-9]+$")


class LineItemIn(BaseModel):
    """Input schema for a client-declared payment line.

    Prices and quantities are not range-checked here: lines with a
    non-positive price or quantity are ignored when the gateway adapter
    recomputes the total, and a non-positive total is rejected there.

    Attributes:
        title: Product title.
        price_cents: Unit price in cents (``priceCents`` on the wire).
        qty: Number of units.
        image: Image reference, echoed as metadata.
        slug: Product slug, echoed as metadata.
        category: Product category, echoed as metadata.
    """

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=200)
    price_cents: int = Field(alias="priceCents")
    qty: int
    image: str = ""
    slug: str = ""
    category: str = ""


class CreatePaymentDTO(BaseModel):
    """Schema for the stateless create-payment endpoint.

    Attributes:
        items: Client-declared lines. May be empty here; the empty case is
            reported as ``EMPTY_CART`` by the view.
        customer: Opaque customer object forwarded to the provider.
    """

    items: list[LineItemIn] = Field(default_factory=list)
    customer: dict = Field(default_factory=dict)


class CheckoutDTO(BaseModel):
    customer: dict = Field(default_factory=dict)


class AddToCartDTO(BaseModel):
    """Add a catalog product to the session cart by slug. The unit price
    is taken from the catalog, never from the request."""

    slug: str = Field(min_length=1, max_length=200)


class UpdateQuantityDTO(BaseModel):
    delta: int


class WebhookDTO(BaseModel):
    """Provider webhook body (form-encoded ``id=tr_xxx``)."""

    id: str = Field(min_length=3, max_length=64)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate the provider payment id format.

        Raises:
            ValueError: When the id does not look like ``<prefix>_<token>``.
        """
        v2 = v.strip()
        if not PAYMENT_ID_RE.match(v2):
            raise ValueError("Invalid payment id")
        return v2


class StoredCartItem(BaseModel):
    """One line of the persisted cart (client key names)."""

    title: str
    price_cents: int = Field(alias="priceCents", ge=0)
    qty: int = Field(gt=0)
    image: str = ""
    slug: str
    category: Optional[str] = ""


class StoredCart(BaseModel):
    items: list[StoredCartItem]


class ProductRecord(BaseModel):
    """A catalog record as found in the catalog JSON."""

    title: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    image: Optional[str] = None
    category: Optional[str] = None


class ProviderLink(BaseModel):
    href: str = Field(min_length=1)


class ProviderLinks(BaseModel):
    checkout: Optional[ProviderLink] = None


class ProviderPayment(BaseModel):
    """The part of a provider payment resource the storefront reads.

    ``metadata`` is whatever was sent at creation; the provider accepts any
    JSON there, so it is not constrained here.
    """

    id: str = ""
    status: str = "unknown"
    metadata: Any = None


class ProviderCreatedPayment(ProviderPayment):
    """A freshly created payment; ``_links.checkout.href`` is the redirect target."""

    model_config = ConfigDict(populate_by_name=True)

    links: ProviderLinks = Field(default_factory=ProviderLinks, alias="_links")
