import httpx
import pytest

from apps.storefront.domain import GatewayError, LineItem

LINES = [LineItem("Game A", 2000, 1, slug="game-a")]


class R:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data or {}
        self.text = ""
    def json(self):
        return self._data


CREATED = {"id": "tr_retry1", "_links": {"checkout": {"href": "https://pay.test/c/tr_retry1"}}}


def test_create_retries_on_5xx_with_same_idempotency_key(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = []

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls.append(dict(headers))
        return R(502) if len(calls) == 1 else R(201, CREATED)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)

    from apps.storefront.http_adapters import MollieGatewayClient
    session = MollieGatewayClient().create_session(LINES, {})
    assert session.provider_payment_id == "tr_retry1"
    assert len(calls) == 2
    assert calls[0]["Idempotency-Key"] == calls[1]["Idempotency-Key"]
    assert calls[1]["X-Retry-Count"] == "1"


def test_no_retry_on_4xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_get(self, url, headers=None, **kwargs):
        calls["n"] += 1
        return R(401)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)

    from apps.storefront.http_adapters import MollieGatewayClient, provider_cb
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().get_status("tr_test123")
    assert e.value.status_code == 401
    assert calls["n"] == 1
    assert provider_cb.state == "CLOSED"


def test_transport_errors_exhaust_retries_then_gateway_error(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)

    from apps.storefront.http_adapters import MollieGatewayClient
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().create_session(LINES, {})
    assert e.value.code == "CREATE_PAYMENT_UNREACHABLE"
    assert calls["n"] == 3


def test_timeout_is_reported_as_gateway_error(monkeypatch, settings):
    settings.HTTP_STATUS_RETRY_MAX = 1

    def fake_get(self, url, headers=None, **kwargs):
        raise httpx.ReadTimeout("slow provider")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)

    from apps.storefront.http_adapters import MollieGatewayClient
    with pytest.raises(GatewayError) as e:
        MollieGatewayClient().get_status("tr_test123")
    assert e.value.code == "GET_PAYMENT_TIMEOUT"


def test_circuit_opens_after_repeated_failures(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    settings.HTTP_STATUS_RETRY_MAX = 1

    from apps.storefront.http_adapters import MollieGatewayClient, provider_cb
    monkeypatch.setattr(provider_cb, "fail_threshold", 2)
    calls = {"n": 0}

    def fake_get(self, url, headers=None, **kwargs):
        calls["n"] += 1
        return R(503)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)

    client = MollieGatewayClient()
    for _ in range(2):
        with pytest.raises(GatewayError):
            client.get_status("tr_test123")
    assert provider_cb.state == "OPEN"

    with pytest.raises(GatewayError) as e:
        client.get_status("tr_test123")
    assert e.value.code == "CIRCUIT_OPEN"
    assert calls["n"] == 2


def test_half_open_probe_closes_circuit_on_success(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    settings.HTTP_STATUS_RETRY_MAX = 1

    from apps.storefront.http_adapters import MollieGatewayClient, provider_cb
    monkeypatch.setattr(provider_cb, "fail_threshold", 1)
    monkeypatch.setattr(provider_cb, "reset_timeout", 0.0)
    responses = [R(500), R(200, {"id": "tr_test123", "status": "paid"})]
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, headers=None, **kw: responses.pop(0), raising=True)

    client = MollieGatewayClient()
    with pytest.raises(GatewayError):
        client.get_status("tr_test123")
    # reset_timeout of 0 turns OPEN into HALF_OPEN on the next check
    assert provider_cb.state == "HALF_OPEN"
    assert client.get_status("tr_test123").is_paid
    assert provider_cb.state == "CLOSED"
