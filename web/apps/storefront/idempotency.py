"""Replay protection for ``POST /api/create-payment``.

A storefront client that retries create-payment after a timeout must not
open a second payment. With an ``Idempotency-Key`` header the first request
claims the key and its answer is stored against it; a retry with the same
cart gets that answer back, and reusing the key for another cart is a
conflict.

Carts are compared by fingerprint of the validated request, so a retry
that reorders JSON keys or spells out defaults still counts as the same
cart.
"""

import hashlib
import json
from typing import Optional, Tuple

from django.db import IntegrityError, transaction

from .models import IdempotencyKey
from .schemas import CreatePaymentDTO

# Stored status of a claimed key whose request has not answered yet
PENDING = 0


class IdempotencyConflict(Exception):
    """The key was already used for a different cart."""


def cart_fingerprint(dto: CreatePaymentDTO) -> str:
    canonical = json.dumps(dto.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@transaction.atomic
def claim_key(key: str, dto: CreatePaymentDTO) -> Tuple[IdempotencyKey, bool]:
    """Claim ``key`` for this cart, or find the earlier claim.

    Returns:
        ``(record, replay)``. ``replay`` is False for the request that
        claimed the key. For a retry it is True and the record is locked
        until the surrounding transaction ends; ``record.response_status``
        is ``PENDING`` while the first request is still running.

    Raises:
        IdempotencyConflict: The key belongs to a different cart.
    """
    fingerprint = cart_fingerprint(dto)
    try:
        with transaction.atomic():
            return IdempotencyKey.objects.create(key=key, request_hash=fingerprint, response_status=PENDING), False
    except IntegrityError:
        record = IdempotencyKey.objects.select_for_update().get(key=key)
    if record.request_hash != fingerprint:
        raise IdempotencyConflict(key)
    return record, True


def store_response(record: IdempotencyKey, status_code: int, body: dict, payment_id: Optional[str] = None) -> None:
    record.response_status = status_code
    record.response_body = body
    fields = ["response_status", "response_body"]
    if payment_id is not None:
        record.payment_id = payment_id
        fields.append("payment_id")
    record.save(update_fields=fields)
