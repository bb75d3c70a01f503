import json

import pytest

CATALOG = [
    {"title": "Game A", "price": 20.0, "image": "images/products/a.jpeg", "category": "Nintendo Switch"},
    {"title": "Game B", "price": "15.00", "category": "PlayStation 5"},
    {"title": "Pokémon Sun", "price": 19.99, "image": "/images/products/pokemon.jpeg", "category": "Nintendo 3DS"},
    {"title": "Controller", "price": 12.5},
]


@pytest.fixture
def catalog_path(tmp_path):
    path = tmp_path / "inventory_local.json"
    path.write_text(json.dumps(CATALOG), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings, catalog_path):
    settings.USE_HTTP_ADAPTERS = False
    settings.MOLLIE_API_KEY = "test_dummy"
    settings.MOLLIE_API_BASE = "https://api.mollie.test/v2"
    settings.PUBLIC_BASE_URL = "https://shop.test"
    settings.CATALOG_SOURCE = str(catalog_path)

    # throttle counters and breaker state must not leak between tests
    from django.core.cache import cache
    from apps.storefront.http_adapters import provider_cb
    cache.clear()
    provider_cb.on_success()
