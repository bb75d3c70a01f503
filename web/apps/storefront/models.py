import uuid
from django.db import models, transaction


class OrderModel(models.Model):
    # UUID PK exposed in logs and mails
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter, used as the human order number
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    # Provider payment id; one order per paid payment, whatever the redeliveries
    payment_id = models.CharField(max_length=64, unique=True)

    class Status(models.TextChoices):
        PAID = "PAID"
        SHIPPED = "SHIPPED"
        CANCELLED = "CANCELLED"

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PAID)
    total_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="EUR")
    items = models.JSONField(default=list)
    customer = models.JSONField(default=dict)
    # Set once the confirmation mail went out; unset means a delivery should (re)send it
    notified_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation. Two concurrent
        # inserts can read the same max; the unique constraint rejects one and
        # OrderRepository retries it.
        if self.internal_id is None:
            with transaction.atomic():
                last = (
                    OrderModel.objects.select_for_update()
                    .order_by("-internal_id")
                    .first()
                )
                self.internal_id = 1 if not last or last.internal_id is None else last.internal_id + 1

        super().save(*args, **kwargs)


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    payment_id = models.CharField(max_length=64, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
