"""Cart store persisted behind a small key-value interface.

The cart lives on the client: in production the key-value store is the
Django session, configured with the signed-cookie backend, so the
serialized cart travels with the shopper exactly as browser storage would.
Tests bind the store to an in-memory dictionary instead.

Reads fail open: anything unreadable becomes an empty cart. Writes update
the in-memory cart first and only then persist, so a failed write is
reported to the caller without undoing the change.
"""

import json
import logging
from typing import Callable, List, Optional, Protocol, Union

from pydantic import ValidationError as PydanticValidationError

from .domain import (
    Cart,
    CartIndexError,
    CartItem,
    CartItemInput,
    PersistenceReadError,
    PersistenceWriteError,
)
from .schemas import StoredCart

logger = logging.getLogger("storefront.cart")

CART_KEY = "GSE_CART"
REMOVE = "remove"


class KeyValueStore(Protocol):
    """Minimal persistence port used by ``CartStore``."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError()

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError()


class SessionKeyValueStore(KeyValueStore):
    """``KeyValueStore`` over a Django session (any ``SessionBase``)."""

    def __init__(self, session):
        self.session = session

    def get(self, key: str) -> Optional[str]:
        return self.session.get(key)

    def set(self, key: str, value: str) -> None:
        self.session[key] = value
        self.session.modified = True


def _parse(raw: str) -> Cart:
    try:
        state = StoredCart.model_validate(json.loads(raw))
    except (ValueError, TypeError, PydanticValidationError) as e:
        raise PersistenceReadError("CORRUPT_CART") from e
    return Cart(
        items=[
            CartItem(
                slug=it.slug,
                title=it.title,
                unit_price_cents=it.price_cents,
                image=it.image,
                category=it.category or "",
                quantity=it.qty,
            )
            for it in state.items
        ]
    )


class CartStore:
    """Owns the shopper's cart: read, mutate, persist, notify.

    Attributes:
        storage: ``KeyValueStore`` holding the serialized cart.
        key: Storage key of the cart (``{"items": [...]}`` as JSON).
    """

    def __init__(self, storage: KeyValueStore, key: str = CART_KEY):
        self.storage = storage
        self.key = key
        self._cart: Optional[Cart] = None
        self._observers: List[Callable[[int], None]] = []

    def subscribe(self, callback: Callable[[int], None]) -> None:
        """Register ``callback(total_count)``, called after every mutation."""
        self._observers.append(callback)

    def get(self) -> Cart:
        """Return the current cart, loading it from storage on first use.

        Absent, unreadable or malformed content yields an empty cart. This
        method never raises.
        """
        if self._cart is None:
            self._cart = self._load()
        return self._cart

    def _load(self) -> Cart:
        try:
            raw = self.storage.get(self.key)
        except Exception:
            logger.warning("cart storage unreadable, starting empty", exc_info=True)
            return Cart()
        if not raw:
            return Cart()
        try:
            return _parse(raw)
        except PersistenceReadError:
            logger.warning("corrupt cart in storage, starting empty", extra={"key": self.key})
            return Cart()

    def add(self, item: CartItemInput) -> Cart:
        """Add one unit of ``item``.

        A line with the same slug and the same unit price gets its quantity
        incremented; otherwise a new line with quantity 1 is appended.

        Raises:
            PersistenceWriteError: After the in-memory update, if saving failed.
        """
        cart = self.get()
        existing = next(
            (it for it in cart.items if it.key == (item.slug, item.unit_price_cents)),
            None,
        )
        if existing:
            existing.quantity += 1
        else:
            cart.items.append(
                CartItem(
                    slug=item.slug,
                    title=item.title,
                    unit_price_cents=item.unit_price_cents,
                    image=item.image,
                    category=item.category,
                    quantity=1,
                )
            )
        return self._commit()

    def set_quantity(self, index: int, delta: Union[int, str]) -> Cart:
        """Apply a relative quantity change to the line at ``index``.

        Args:
            index: Position of the line in the cart.
            delta: Signed change, or ``"remove"`` to drop the line. A line
                whose quantity ends at zero or below is removed.

        Raises:
            CartIndexError: If ``index`` does not point at a line.
            PersistenceWriteError: After the in-memory update, if saving failed.
        """
        cart = self.get()
        if not 0 <= index < len(cart.items):
            raise CartIndexError("INVALID_CART_INDEX")
        if delta == REMOVE:
            del cart.items[index]
        else:
            line = cart.items[index]
            line.quantity += int(delta)
            if line.quantity <= 0:
                del cart.items[index]
        return self._commit()

    def remove(self, index: int) -> Cart:
        return self.set_quantity(index, REMOVE)

    def clear(self) -> Cart:
        self.get().items.clear()
        return self._commit()

    def total_count(self) -> int:
        return self.get().total_count

    def total_cents(self) -> int:
        return self.get().total_cents

    def _commit(self) -> Cart:
        cart = self.get()
        count = cart.total_count
        for callback in self._observers:
            callback(count)
        try:
            self.storage.set(self.key, json.dumps(cart.to_dict(), separators=(",", ":")))
        except Exception as e:
            raise PersistenceWriteError("CART_NOT_SAVED") from e
        return cart
