"""Unit tests for the CartStore.

The store is bound to an in-memory key-value store so persistence can be
inspected (and broken) directly.
"""
import json

import pytest

from apps.storefront.adapters import InMemoryKeyValueStore
from apps.storefront.cart import CART_KEY, CartStore
from apps.storefront.domain import CartIndexError, CartItemInput, PersistenceWriteError

GAME_A = CartItemInput(slug="game-a", title="Game A", unit_price_cents=2000, image="a.jpeg", category="Switch")
GAME_B = CartItemInput(slug="game-b", title="Game B", unit_price_cents=1500)


class BrokenWriteStore(InMemoryKeyValueStore):
    """Reads fine, every write fails (e.g. storage quota exceeded)."""
    def set(self, key, value):
        raise OSError("quota exceeded")


class BrokenReadStore(InMemoryKeyValueStore):
    def get(self, key):
        raise OSError("storage unavailable")


def _stored(storage):
    return json.loads(storage.data[CART_KEY])


def test_get_without_state_returns_empty_cart():
    store = CartStore(InMemoryKeyValueStore())
    assert store.get().items == []
    assert store.total_count() == 0
    assert store.total_cents() == 0


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "[]",
        '{"items": "nope"}',
        '{"items": [{"title": "X", "priceCents": 100, "qty": 0, "slug": "x"}]}',
        '{"items": [{"title": "X", "priceCents": -5, "qty": 1, "slug": "x"}]}',
        '{"items": [{"priceCents": 100, "qty": 1}]}',
    ],
)
def test_corrupt_state_reads_as_empty_cart(raw):
    store = CartStore(InMemoryKeyValueStore({CART_KEY: raw}))
    assert store.get().to_dict() == {"items": []}


def test_unreadable_storage_reads_as_empty_cart():
    store = CartStore(BrokenReadStore())
    assert store.get().items == []


def test_reads_state_written_by_storefront_client():
    raw = json.dumps({"items": [
        {"title": "Game A", "priceCents": 2000, "qty": 2, "image": "a.jpeg", "slug": "game-a", "category": "Switch"},
        {"title": "Game B", "priceCents": 1500, "qty": 1, "slug": "game-b"},
    ]})
    store = CartStore(InMemoryKeyValueStore({CART_KEY: raw}))
    cart = store.get()
    assert [it.key for it in cart.items] == [("game-a", 2000), ("game-b", 1500)]
    assert cart.items[1].category == ""
    assert store.total_count() == 3
    assert store.total_cents() == 5500


def test_add_same_slug_and_price_twice_gives_one_line():
    storage = InMemoryKeyValueStore()
    store = CartStore(storage)
    store.add(GAME_A)
    store.add(GAME_A)
    cart = store.get()
    assert len(cart.items) == 1
    assert cart.items[0].quantity == 2
    assert _stored(storage)["items"][0]["qty"] == 2


def test_add_same_slug_different_price_gives_two_lines():
    store = CartStore(InMemoryKeyValueStore())
    store.add(GAME_A)
    store.add(CartItemInput(slug="game-a", title="Game A", unit_price_cents=1800))
    assert [it.key for it in store.get().items] == [("game-a", 2000), ("game-a", 1800)]


def test_insertion_order_is_kept():
    store = CartStore(InMemoryKeyValueStore())
    store.add(GAME_B)
    store.add(GAME_A)
    store.add(GAME_B)
    assert [it.slug for it in store.get().items] == ["game-b", "game-a"]


def test_decrementing_quantity_one_line_removes_it():
    store = CartStore(InMemoryKeyValueStore())
    store.add(GAME_A)
    store.add(GAME_B)
    store.set_quantity(0, -1)
    assert [it.slug for it in store.get().items] == ["game-b"]
    assert store.total_count() == 1


def test_large_negative_delta_removes_line_never_stores_zero_or_less():
    storage = InMemoryKeyValueStore()
    store = CartStore(storage)
    store.add(GAME_A)
    store.add(GAME_A)
    store.set_quantity(0, -5)
    assert store.get().items == []
    assert _stored(storage) == {"items": []}


def test_increment_and_remove():
    store = CartStore(InMemoryKeyValueStore())
    store.add(GAME_A)
    store.set_quantity(0, 3)
    assert store.get().items[0].quantity == 4
    store.remove(0)
    assert store.get().items == []


@pytest.mark.parametrize("index", [-1, 1, 10])
def test_invalid_index_is_rejected(index):
    store = CartStore(InMemoryKeyValueStore())
    store.add(GAME_A)
    with pytest.raises(CartIndexError):
        store.set_quantity(index, 1)
    assert store.get().items[0].quantity == 1


def test_totals_use_exact_integer_arithmetic():
    store = CartStore(InMemoryKeyValueStore())
    prices = [1, 999, 1999, 3333, 10]
    for i, price in enumerate(prices):
        item = CartItemInput(slug=f"p{i}", title=f"P{i}", unit_price_cents=price)
        for _ in range(i + 1):
            store.add(item)
    assert store.total_cents() == sum(p * (i + 1) for i, p in enumerate(prices))
    assert store.total_count() == sum(range(1, len(prices) + 1))


def test_clear_persists_empty_cart():
    storage = InMemoryKeyValueStore()
    store = CartStore(storage)
    store.add(GAME_A)
    store.clear()
    assert _stored(storage) == {"items": []}


def test_observers_receive_new_total_count():
    seen = []
    store = CartStore(InMemoryKeyValueStore())
    store.subscribe(seen.append)
    store.add(GAME_A)
    store.add(GAME_A)
    store.add(GAME_B)
    store.set_quantity(0, -1)
    store.clear()
    assert seen == [1, 2, 3, 2, 0]


def test_write_failure_is_reported_but_mutation_stands():
    store = CartStore(BrokenWriteStore())
    with pytest.raises(PersistenceWriteError):
        store.add(GAME_A)
    assert store.get().items[0].slug == "game-a"
    assert store.total_count() == 1
