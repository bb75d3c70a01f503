"""HTTP adapter for the payment provider with retries and a circuit breaker.

This module implements the ``PaymentGatewayPort`` against the Mollie v2
REST API using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the gateway middleware.
- A circuit breaker for the provider to avoid hammering it while it is
    unhealthy, with HALF_OPEN probing after a timeout.
- A retry policy with exponential backoff for transport errors and 5xx.
- Payment idempotency: every ``create_session`` call sends one
    ``Idempotency-Key`` for all its attempts, so a retried POST cannot
    create a second payment.

Every failure (timeout, exhausted retries, open circuit, non-success
status, unusable body) surfaces as ``GatewayError``.
"""

import logging
import os
import sys
import threading
import time
import uuid
from typing import Callable, List, Optional
from urllib.parse import quote

import httpx
from django.conf import settings
from django.utils.module_loading import import_string
from pydantic import ValidationError as PydanticValidationError

from .domain import (
    CURRENCY,
    ConfigurationError,
    GatewayError,
    InvalidTotalError,
    LineItem,
    PaymentGatewayPort,
    PaymentSession,
    PaymentStatus,
    compute_total_cents,
    format_amount,
)
from .schemas import ProviderCreatedPayment, ProviderPayment

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger("storefront.gateway")


def _is_test_mode() -> bool:
    return (
        "pytest" in sys.modules
        or os.environ.get("PYTEST_CURRENT_TEST") is not None
        or os.environ.get("PYTEST_RUNNING") == "1"
    )


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            GatewayError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise GatewayError("CIRCUIT_OPEN", detail=self.name)
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise GatewayError("CIRCUIT_HALF_OPEN_BUSY", detail=self.name)
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (
                self._failures >= self.fail_threshold and self._state != "OPEN"
            ):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


provider_cb = CircuitBreaker(
    "mollie",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy(max_retries: Optional[int] = None):
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    if max_retries is None:
        max_retries = getattr(settings, "HTTP_RETRY_MAX", 3)
    backoff = getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15)
    if _is_test_mode():
        backoff = 0.0
    return max(1, max_retries), backoff


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _excerpt(resp) -> str:
    return (getattr(resp, "text", "") or "")[:500]


def _json_object(resp, code: str) -> dict:
    """Decode a provider body that must be a JSON object, else ``GatewayError(code)``."""
    try:
        data = resp.json()
    except ValueError as e:
        raise GatewayError(code, status_code=resp.status_code, detail=_excerpt(resp)) from e
    if not isinstance(data, dict):
        raise GatewayError(code, status_code=resp.status_code, detail=_excerpt(resp))
    return data


# ---------------- Payment Gateway Adapter ---------------- #

class MollieGatewayClient(PaymentGatewayPort):
    """HTTP client for the payment provider with retry and circuit breaker.

    Args:
        api_key: Provider secret. When omitted it is read from
            ``settings.MOLLIE_API_KEY`` at call time, not at construction.
        base_url: Provider API root (``settings.MOLLIE_API_BASE``).
        public_base_url: Public root of this site, used to build the
            redirect, cancel and webhook URLs (``settings.PUBLIC_BASE_URL``).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        public_base_url: str | None = None,
        timeout: float | None = None,
    ):
        self._api_key = api_key
        self.base_url = (base_url or settings.MOLLIE_API_BASE).rstrip("/")
        self.public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        # The webhook waits on status lookups, so they get a tighter budget
        self.status_timeout = min(self.timeout, getattr(settings, "HTTP_STATUS_TIMEOUT_SECS", 3.0))

    def _auth_headers(self) -> dict:
        api_key = self._api_key or getattr(settings, "MOLLIE_API_KEY", "")
        if not api_key:
            raise ConfigurationError("MISSING_MOLLIE_API_KEY")
        return {"Authorization": f"Bearer {api_key}"}

    def _send(
        self,
        op: str,
        call: Callable[[httpx.Client, dict], httpx.Response],
        extras: dict,
        timeout: float | None = None,
        max_retries: int | None = None,
    ) -> httpx.Response:
        """Run ``call`` under the circuit breaker with retries.

        ``timeout`` and ``max_retries`` override the client defaults for one
        operation. Returns the first 2xx response. Anything else ends in
        ``GatewayError``.
        """
        max_retries, backoff = _retry_policy(max_retries)
        tries = 0

        state = provider_cb.before_call()
        headers = _request_headers({**extras, "X-Circuit-State": state, "X-Retry-Count": "0"})

        try:
            with httpx.Client(timeout=timeout or self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = call(client, headers)
                        if 200 <= resp.status_code < 300:
                            provider_cb.on_success()
                            return resp
                        if not _should_retry(resp, None):
                            # 4xx is the provider rejecting us, not the provider being down
                            provider_cb.on_success()
                            raise GatewayError(f"{op}_REJECTED", status_code=resp.status_code, detail=_excerpt(resp))
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= max_retries:
                        provider_cb.on_failure()
                        if exc is not None:
                            code = "TIMEOUT" if isinstance(exc, httpx.TimeoutException) else "UNREACHABLE"
                            raise GatewayError(f"{op}_{code}", detail=repr(exc)) from exc
                        raise GatewayError(f"{op}_FAILED", status_code=resp.status_code, detail=_excerpt(resp))

                    sleep_s = backoff * (2 ** (tries - 1))
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    if sleep_s > 0:
                        time.sleep(min(sleep_s, cap))
        finally:
            provider_cb.on_finish()

    def _payment_body(self, line_items: List[LineItem], customer: dict, total_cents: int) -> dict:
        base = self.public_base_url
        return {
            "amount": {"currency": CURRENCY, "value": format_amount(total_cents)},
            "description": getattr(settings, "PAYMENT_DESCRIPTION", "GameShop Enter bestelling"),
            "redirectUrl": f"{base}/thankyou.html",
            "cancelUrl": f"{base}/cancel.html",
            "webhookUrl": f"{base}/api/webhook/",
            "metadata": {
                "items": [li.to_metadata() for li in line_items],
                "customer": customer,
            },
            "locale": getattr(settings, "PAYMENT_LOCALE", "nl_NL"),
        }

    def create_session(self, line_items: List[LineItem], customer: dict) -> PaymentSession:
        """Create a provider payment for the given lines.

        The charged amount is recomputed here from price x quantity of each
        line with positive values; no client total is accepted.

        Args:
            line_items: Client-declared lines.
            customer: Opaque customer object forwarded as metadata.

        Returns:
            PaymentSession: Provider id, checkout URL and charged amount.

        Raises:
            ConfigurationError: If no API key is configured.
            InvalidTotalError: If the recomputed total is not positive.
            GatewayError: On provider failure or a response without
                ``_links.checkout.href``.
        """
        auth = self._auth_headers()
        total_cents = compute_total_cents(line_items)
        if total_cents <= 0:
            raise InvalidTotalError("INVALID_TOTAL")

        body = self._payment_body(line_items, customer, total_cents)
        extras = {**auth, "Idempotency-Key": str(uuid.uuid4())}
        resp = self._send(
            "CREATE_PAYMENT",
            lambda client, headers: client.post(f"{self.base_url}/payments", json=body, headers=headers),
            extras,
        )

        data = _json_object(resp, "CREATE_PAYMENT_BAD_BODY")
        try:
            payment = ProviderCreatedPayment.model_validate(data)
        except PydanticValidationError as e:
            # e.g. ``_links.checkout`` as a bare string, or ``_links`` as a list
            raise GatewayError("NO_CHECKOUT_URL", status_code=resp.status_code, detail=str(data)[:500]) from e
        if payment.links.checkout is None:
            raise GatewayError("NO_CHECKOUT_URL", status_code=resp.status_code, detail=str(data)[:500])

        return PaymentSession(
            provider_payment_id=payment.id,
            checkout_url=payment.links.checkout.href,
            amount_cents=total_cents,
            currency=CURRENCY,
            metadata=body["metadata"],
        )

    def get_status(self, payment_id: str) -> PaymentStatus:
        """Fetch a payment by provider id.

        Safe to repeat: this is a plain GET, so webhook redeliveries can
        call it any number of times.

        Raises:
            ConfigurationError: If no API key is configured.
            GatewayError: On provider failure or an unreadable body.
        """
        auth = self._auth_headers()
        url = f"{self.base_url}/payments/{quote(payment_id, safe='')}"
        resp = self._send(
            "GET_PAYMENT",
            lambda client, headers: client.get(url, headers=headers),
            auth,
            timeout=self.status_timeout,
            max_retries=getattr(settings, "HTTP_STATUS_RETRY_MAX", 2),
        )
        data = _json_object(resp, "GET_PAYMENT_BAD_BODY")
        try:
            payment = ProviderPayment.model_validate(data)
        except PydanticValidationError as e:
            raise GatewayError("GET_PAYMENT_BAD_BODY", status_code=resp.status_code, detail=str(data)[:500]) from e

        return PaymentStatus(
            payment_id=payment.id or payment_id,
            status=payment.status,
            metadata=payment.metadata if isinstance(payment.metadata, dict) else {},
        )
