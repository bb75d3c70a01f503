"""Payment provider sandbox built with FastAPI.

This service imitates the part of the Mollie v2 REST API the storefront
uses, so checkout can be exercised locally without a provider account:

- ``POST /v2/payments`` creates an ``open`` payment and returns it with a
  ``_links.checkout.href`` pointing back at this sandbox.
- ``GET /v2/payments/{id}`` returns the payment with its current status
  and the metadata sent at creation.
- ``POST /checkout/{id}?outcome=paid`` plays the shopper finishing the
  hosted checkout: the status changes and the webhook is delivered as a
  form-encoded ``id=<paymentId>`` POST, the way the provider does it.

Validation is performed with Pydantic models, persistence is delegated to
the SQLAlchemy-backed repository in ``repo.PaymentsRepo``.
"""

import os
import uuid
import logging
import time
from typing import Annotated, Literal, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from .repo import (
    FINAL_STATUSES,
    OPEN,
    IdempotencyKey,
    Payment,
    PaymentsRepo,
    canonical_hash,
    engine,
    get_session,
    init_db,
)

SANDBOX_API_KEY = os.getenv("SANDBOX_API_KEY", "test_sandbox")
SANDBOX_PUBLIC_URL = os.getenv("SANDBOX_PUBLIC_URL", "http://localhost:9002").rstrip("/")
WEBHOOK_TIMEOUT_SECS = float(os.getenv("WEBHOOK_TIMEOUT_SECS", "5"))

app = FastAPI(title="Payment Provider Sandbox")

Currency = constr(pattern=r"^[A-Z]{3}$")
AmountValue = constr(pattern=r"^\d+\.\d{2}$")

logger = logging.getLogger("provider_sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # short active wait until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class Amount(BaseModel):
    currency: Currency
    value: AmountValue


class CreatePaymentRequest(BaseModel):
    """Request body for payment creation (provider field names).

    Attributes:
        amount: Currency and two-decimal value, e.g. ``{"currency": "EUR", "value": "55.00"}``.
        description: Shown to the shopper on the checkout page.
        redirectUrl: Where the shopper lands after checkout.
        cancelUrl: Where the shopper lands after cancelling.
        webhookUrl: Called with ``id=<paymentId>`` on every status change.
        metadata: Opaque, echoed back on reads.
        locale: Checkout page locale.
    """
    amount: Amount
    description: str = Field(min_length=1, max_length=255)
    redirectUrl: str
    cancelUrl: Optional[str] = None
    webhookUrl: Optional[str] = None
    metadata: Optional[dict] = None
    locale: Optional[str] = None


def require_api_key(authorization: Annotated[Optional[str], Header()] = None):
    if authorization != f"Bearer {SANDBOX_API_KEY}":
        raise HTTPException(status_code=401, detail="Missing authentication, or failed to authenticate")


def _resource(p: Payment) -> dict:
    links = {"self": {"href": f"{SANDBOX_PUBLIC_URL}/v2/payments/{p.id}", "type": "application/hal+json"}}
    if p.status == OPEN:
        links["checkout"] = {"href": f"{SANDBOX_PUBLIC_URL}/checkout/{p.id}", "type": "text/html"}
    return {
        "resource": "payment",
        "id": p.id,
        "mode": "test",
        "status": p.status,
        "amount": {"currency": p.currency, "value": p.amount_value},
        "description": p.description,
        "redirectUrl": p.redirect_url,
        "cancelUrl": p.cancel_url,
        "webhookUrl": p.webhook_url,
        "metadata": p.metadata_,
        "locale": p.locale,
        "createdAt": p.created_at.isoformat(),
        "_links": links,
    }


def deliver_webhook(p: Payment) -> bool:
    """POST ``id=<paymentId>`` to the payment's webhook URL.

    Returns:
        bool: True when the receiver answered 2xx.
    """
    if not p.webhook_url:
        return False
    try:
        resp = httpx.post(p.webhook_url, data={"id": p.id}, timeout=WEBHOOK_TIMEOUT_SECS)
    except httpx.HTTPError as e:
        logger.warning("webhook delivery failed", extra={"payment_id": p.id, "error": repr(e)})
        return False
    logger.info("webhook delivered", extra={"payment_id": p.id, "status_code": resp.status_code})
    return 200 <= resp.status_code < 300


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/v2/payments", status_code=201, dependencies=[Depends(require_api_key)])
def create_payment(
    req: CreatePaymentRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create an open payment, once per ``Idempotency-Key``.

    A retry with the same key and payload returns the payment created the
    first time; the same key with another payload is a 409.
    """
    payload_hash = canonical_hash(req.model_dump())

    with get_session() as s:
        if idempotency_key:
            try:
                s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
                s.commit()
            except IntegrityError:
                s.rollback()
                rec = s.execute(
                    select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
                ).scalars().first()
                if not rec:
                    raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
                if rec.request_hash != payload_hash:
                    raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
                if rec.payment_id:
                    return _resource(PaymentsRepo().get(s, rec.payment_id))
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_IN_PROGRESS")

        payment = PaymentsRepo().create_payment(
            s,
            currency=req.amount.currency,
            amount_value=req.amount.value,
            description=req.description,
            redirect_url=req.redirectUrl,
            cancel_url=req.cancelUrl,
            webhook_url=req.webhookUrl,
            locale=req.locale,
            metadata_=req.metadata,
        )
        if idempotency_key:
            rec = s.get(IdempotencyKey, idempotency_key)
            rec.payment_id = payment.id
        s.commit()
        logger.info("payment created", extra={"payment_id": payment.id, "amount": payment.amount_value})
        return _resource(payment)


@app.get("/v2/payments/{payment_id}", dependencies=[Depends(require_api_key)])
def get_payment(payment_id: str):
    with get_session() as s:
        payment = PaymentsRepo().get(s, payment_id)
        if payment is None:
            raise HTTPException(status_code=404, detail="No payment exists with token " + payment_id)
        return _resource(payment)


@app.post("/checkout/{payment_id}")
def complete_checkout(payment_id: str, outcome: Literal["paid", "canceled", "expired", "failed"] = "paid"):
    """Simulate the shopper ending the hosted checkout with ``outcome``.

    Only an ``open`` payment can change; a payment that already reached a
    final status answers 409. The webhook is delivered after the commit.
    """
    with get_session() as s:
        payment = PaymentsRepo().get(s, payment_id)
        if payment is None:
            raise HTTPException(status_code=404, detail="NOT_FOUND")
        if payment.status in FINAL_STATUSES:
            raise HTTPException(status_code=409, detail="PAYMENT_FINALIZED")
        payment.status = outcome
        s.commit()
        delivered = deliver_webhook(payment)
        target = payment.redirect_url if outcome == "paid" else (payment.cancel_url or payment.redirect_url)
        return {"id": payment.id, "status": payment.status, "webhookDelivered": delivered, "redirectUrl": target}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response


def run():
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "9002")), log_level=os.getenv("LOG_LEVEL", "info"))
