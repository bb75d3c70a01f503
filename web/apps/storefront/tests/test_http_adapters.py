"""Unit tests for the payment provider HTTP adapter.

These tests verify that the Mollie client builds the right request,
recomputes the charged amount, and maps provider answers to sessions,
statuses or ``GatewayError`` by monkeypatching ``httpx.Client.post`` and
``httpx.Client.get``.
"""
import httpx, pytest

from apps.storefront.domain import ConfigurationError, GatewayError, InvalidTotalError, LineItem
from apps.storefront.http_adapters import MollieGatewayClient


class DummyResp:
    """Minimal httpx-like response stub for adapter tests.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict | None): JSON body to return from ``json()``; when
            None, ``json()`` raises like a non-JSON body would.
        text (str): Raw body.
    """
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text
    def json(self):
        if self._json is None:
            raise ValueError("not json")
        return self._json


def _created(payment_id="tr_WDqYK6vllg", checkout="https://www.mollie.com/checkout/select-method/WDqYK6vllg"):
    return {
        "resource": "payment",
        "id": payment_id,
        "status": "open",
        "_links": {"checkout": {"href": checkout, "type": "text/html"}},
    }


SCENARIO_A = [
    LineItem("Game A", 2000, 2, slug="game-a", category="Switch", image="a.jpeg"),
    LineItem("Game B", 1500, 1, slug="game-b"),
]


def test_create_session_submits_recomputed_amount(monkeypatch):
    """Two lines 2000x2 + 1500x1 are charged as "55.00" EUR."""
    sent = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        sent.update(url=url, json=json, headers=headers)
        return DummyResp(201, _created())

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    session = MollieGatewayClient().create_session(SCENARIO_A, {"name": "Sam"})

    assert session.provider_payment_id == "tr_WDqYK6vllg"
    assert session.checkout_url.startswith("https://www.mollie.com/checkout/")
    assert session.amount_cents == 5500
    assert sent["url"] == "https://api.mollie.test/v2/payments"
    body = sent["json"]
    assert body["amount"] == {"currency": "EUR", "value": "55.00"}
    assert body["description"] == "GameShop Enter bestelling"
    assert body["redirectUrl"] == "https://shop.test/thankyou.html"
    assert body["cancelUrl"] == "https://shop.test/cancel.html"
    assert body["webhookUrl"] == "https://shop.test/api/webhook/"
    assert body["locale"] == "nl_NL"
    assert body["metadata"]["customer"] == {"name": "Sam"}
    assert body["metadata"]["items"][0] == {
        "title": "Game A", "priceCents": 2000, "qty": 2, "image": "a.jpeg", "slug": "game-a", "category": "Switch",
    }
    assert sent["headers"]["Authorization"] == "Bearer test_dummy"
    assert sent["headers"]["Idempotency-Key"]


def test_create_session_ignores_non_positive_lines(monkeypatch):
    sent = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        sent["json"] = json
        return DummyResp(201, _created())

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    lines = SCENARIO_A + [LineItem("Bogus", -9999, 1), LineItem("Zero", 500, 0)]
    MollieGatewayClient().create_session(lines, {})
    assert sent["json"]["amount"]["value"] == "55.00"


@pytest.mark.parametrize(
    "lines",
    [
        [],
        [LineItem("Zero qty", 2000, 0)],
        [LineItem("Negative price", -2000, 2)],
        [LineItem("Negative qty", 2000, -1), LineItem("Free", 0, 3)],
    ],
)
def test_non_positive_total_is_rejected_without_network(monkeypatch, lines):
    def fake_post(self, *a, **kw):
        raise AssertionError("provider must not be called")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(InvalidTotalError) as e:
        MollieGatewayClient().create_session(lines, {})
    assert str(e.value) == "INVALID_TOTAL"


def test_missing_api_key_fails_fast(monkeypatch, settings):
    settings.MOLLIE_API_KEY = ""

    def fake_call(self, *a, **kw):
        raise AssertionError("provider must not be called")

    monkeypatch.setattr(httpx.Client, "post", fake_call, raising=True)
    monkeypatch.setattr(httpx.Client, "get", fake_call, raising=True)
    client = MollieGatewayClient()
    with pytest.raises(ConfigurationError):
        client.create_session(SCENARIO_A, {})
    with pytest.raises(ConfigurationError):
        client.get_status("tr_test123")


def test_api_key_is_read_at_call_time(monkeypatch, settings):
    seen = {}

    def fake_post(self, url, json=None, headers=None, **kw):
        seen["auth"] = headers["Authorization"]
        return DummyResp(201, _created())

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    client = MollieGatewayClient()
    settings.MOLLIE_API_KEY = "live_rotated"
    client.create_session(SCENARIO_A, {})
    assert seen["auth"] == "Bearer live_rotated"


def test_response_without_checkout_link_is_gateway_error(monkeypatch):
    body = _created()
    del body["_links"]["checkout"]
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, json=None, headers=None, **kw: DummyResp(201, body), raising=True)
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().create_session(SCENARIO_A, {})
    assert e.value.code == "NO_CHECKOUT_URL"


@pytest.mark.parametrize(
    "links",
    [
        {"checkout": "https://www.mollie.com/checkout/select-method/x"},
        {"checkout": {"type": "text/html"}},
        {"checkout": {"href": ""}},
        [{"checkout": {"href": "https://www.mollie.com/checkout/x"}}],
        "https://www.mollie.com/checkout/x",
    ],
)
def test_malformed_checkout_link_is_gateway_error(monkeypatch, links):
    body = {"id": "tr_x", "status": "open", "_links": links}
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, json=None, headers=None, **kw: DummyResp(201, body), raising=True)
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().create_session(SCENARIO_A, {})
    assert e.value.code == "NO_CHECKOUT_URL"


def test_non_json_response_is_gateway_error(monkeypatch):
    monkeypatch.setattr(httpx.Client, "post", lambda self, url, json=None, headers=None, **kw: DummyResp(201, None, "<html>"), raising=True)
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().create_session(SCENARIO_A, {})
    assert e.value.code == "CREATE_PAYMENT_BAD_BODY"


def test_provider_rejection_carries_status_for_logs(monkeypatch):
    def fake_post(self, url, json=None, headers=None, **kw):
        return DummyResp(422, {"status": 422, "title": "Unprocessable Entity"}, '{"detail": "The amount is lower than minimum"}')

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().create_session(SCENARIO_A, {})
    assert e.value.status_code == 422
    assert "minimum" in e.value.detail


def test_get_status_returns_status_and_metadata(monkeypatch):
    seen = {}

    def fake_get(self, url, headers=None, **kw):
        seen.update(url=url, headers=headers)
        return DummyResp(200, {"id": "tr_test123", "status": "paid", "metadata": {"items": [], "customer": {}}})

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    status = MollieGatewayClient().get_status("tr_test123")
    assert status.payment_id == "tr_test123"
    assert status.is_paid
    assert status.metadata == {"items": [], "customer": {}}
    assert seen["url"] == "https://api.mollie.test/v2/payments/tr_test123"
    assert seen["headers"]["Authorization"] == "Bearer test_dummy"


def test_get_status_escapes_payment_id(monkeypatch):
    seen = {}

    def fake_get(self, url, headers=None, **kw):
        seen["url"] = url
        return DummyResp(200, {"id": "x", "status": "open"})

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    MollieGatewayClient().get_status("tr/../x")
    assert seen["url"].endswith("/payments/tr%2F..%2Fx")


def test_get_status_not_found_is_gateway_error(monkeypatch):
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, headers=None, **kw: DummyResp(404, {"status": 404}), raising=True)
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().get_status("tr_missing")
    assert e.value.status_code == 404


@pytest.mark.parametrize("body", [{"id": 123, "status": "paid"}, {"id": "tr_test123", "status": ["paid"]}])
def test_get_status_malformed_body_is_gateway_error(monkeypatch, body):
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, headers=None, **kw: DummyResp(200, body), raising=True)
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().get_status("tr_test123")
    assert e.value.code == "GET_PAYMENT_BAD_BODY"


def test_get_status_ignores_non_object_metadata(monkeypatch):
    body = {"id": "tr_test123", "status": "paid", "metadata": "order-17"}
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, headers=None, **kw: DummyResp(200, body), raising=True)
    assert MollieGatewayClient().get_status("tr_test123").metadata == {}


def test_status_lookup_uses_short_budget(monkeypatch, settings):
    """Webhook lookups must answer well within the provider's webhook timeout."""
    settings.HTTP_TIMEOUT_SECS = 10
    settings.HTTP_RETRY_MAX = 3
    settings.HTTP_STATUS_TIMEOUT_SECS = 3
    settings.HTTP_STATUS_RETRY_MAX = 2
    seen = []

    def fake_get(self, url, headers=None, **kw):
        seen.append(self.timeout.read)
        raise httpx.ReadTimeout("slow provider")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().get_status("tr_test123")
    assert e.value.code == "GET_PAYMENT_TIMEOUT"
    assert seen == [3, 3]
