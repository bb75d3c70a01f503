"""Repository layer for persisting paid orders.

This module is the order-storage collaborator behind the payment webhook.
It keeps a thin interface so the domain layer is not coupled to Django ORM
details, and it is idempotent by provider payment id: the provider may
deliver the same webhook several times, and only the first delivery
creates a row.

The confirmation mail is tracked separately through
``OrderModel.notified_at``: a delivery that finds the order stored but not
yet confirmed sends the mail again, so an SMTP outage does not lose it.
"""

import logging

from django.conf import settings
from django.core.mail import send_mail
from django.db import IntegrityError, transaction
from django.utils import timezone

from .domain import CURRENCY, OrderStorePort, PaymentStatus
from .models import OrderModel

logger = logging.getLogger("storefront.orders")

INSERT_ATTEMPTS = 3


def _metadata_total(items) -> int:
    total = 0
    for it in items or []:
        try:
            price, qty = int(it.get("priceCents", 0)), int(it.get("qty", 0))
        except (AttributeError, TypeError, ValueError):
            continue
        if price > 0 and qty > 0:
            total += price * qty
    return total


class OrderRepository(OrderStorePort):
    """Repository that persists paid payments using Django ORM."""

    def record_paid(self, status: PaymentStatus):
        """Persist the order for a paid payment, once, and confirm it by mail.

        Args:
            status: Provider status of a payment whose status is ``paid``.
                Its metadata carries the line items and customer sent at
                payment creation.

        Returns:
            tuple: ``(order_id, created)``. ``created`` is False when an
            order already exists for ``status.payment_id``.

        Raises:
            IntegrityError: If the row could not be inserted after
                ``INSERT_ATTEMPTS`` order-number collisions.
            Exception: Whatever the mail backend raises; the order row is
                already committed and a later delivery retries the mail.
        """
        items = status.metadata.get("items") or []
        customer = status.metadata.get("customer") or {}
        defaults = {
            "status": OrderModel.Status.PAID,
            "total_cents": _metadata_total(items),
            "currency": CURRENCY,
            "items": items,
            "customer": customer,
        }
        obj, created = self._get_or_create(status.payment_id, defaults)
        if obj.notified_at is None:
            self._notify(obj)
        return obj.id, created

    def _get_or_create(self, payment_id: str, defaults: dict):
        # get_or_create already resolves a concurrent insert of the same
        # payment id; an IntegrityError reaching here is an internal_id clash
        # with a different payment, so the insert is retried with a new number.
        for attempt in range(1, INSERT_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    return OrderModel.objects.get_or_create(payment_id=payment_id, defaults=defaults)
            except IntegrityError:
                existing = OrderModel.objects.filter(payment_id=payment_id).first()
                if existing is not None:
                    return existing, False
                if attempt == INSERT_ATTEMPTS:
                    raise
                logger.warning(
                    "order number collision, retrying insert",
                    extra={"payment_id": payment_id, "attempt": attempt},
                )

    def _notify(self, order: OrderModel) -> None:
        email = (order.customer or {}).get("email") if isinstance(order.customer, dict) else None
        if not email:
            return
        total = f"{order.total_cents // 100},{order.total_cents % 100:02d}"
        send_mail(
            subject=f"Bestelling {order.internal_id} ontvangen",
            message=(
                f"Bedankt voor je bestelling bij GameShop Enter.\n\n"
                f"Bestelnummer: {order.internal_id}\n"
                f"Totaal: € {total}\n"
            ),
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[email],
            fail_silently=False,
        )
        OrderModel.objects.filter(pk=order.pk, notified_at__isnull=True).update(notified_at=timezone.now())
        logger.info("order confirmation sent", extra={"order_id": str(order.id)})
