"""SQLAlchemy repository for sandbox payments.

This module manages persistence for the payments the sandbox hands out,
using SQLAlchemy. A payment keeps what the storefront sent (amount,
URLs, metadata) and its current status; an internal, monotonic numeric
sequence (internal_id) orders them.

Database connection parameters are read from the ``SANDBOX_DATABASE_URL``
environment variable, defaulting to a local SQLite file.
"""

import os
import uuid
import hashlib, json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, String, BigInteger, DateTime, JSON, select
from sqlalchemy.orm import DeclarativeBase, mapped_column, Session
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("SANDBOX_DATABASE_URL", "sqlite+pysqlite:///./provider_sandbox.db")

if DATABASE_URL.startswith("sqlite") and ":memory:" in DATABASE_URL:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
elif DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

OPEN = "open"
FINAL_STATUSES = {"paid", "canceled", "expired", "failed"}


class Base(DeclarativeBase):
    pass


class Payment(Base):
    """SQLAlchemy model representing a sandbox payment.

    Attributes:
        id: Public provider id (``tr_`` + 10 hex chars).
        internal_id: Internal monotonically increasing identifier.
        status: ``open`` until the simulated checkout ends it.
        currency: Three-letter ISO currency code.
        amount_value: Amount as the two-decimal string the client sent.
        metadata_: Opaque metadata, echoed back on every read.
    """

    __tablename__ = "payments"

    id = mapped_column(String(32), primary_key=True)
    internal_id = mapped_column(BigInteger, unique=True, nullable=True)
    status = mapped_column(String(16), nullable=False, default=OPEN)
    currency = mapped_column(String(3), nullable=False)
    amount_value = mapped_column(String(20), nullable=False)
    description = mapped_column(String(255), nullable=False)
    redirect_url = mapped_column(String(500), nullable=False)
    cancel_url = mapped_column(String(500), nullable=True)
    webhook_url = mapped_column(String(500), nullable=True)
    locale = mapped_column(String(10), nullable=True)
    metadata_ = mapped_column("metadata", JSON, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False)


class IdempotencyKey(Base):
    """Persisted idempotency records to deduplicate payment creation.

    Attributes:
        key: Unique idempotency key provided by the client.
        request_hash: Canonical SHA-256 hex digest of the original request.
        payment_id: Id of the payment created for this key.
    """
    __tablename__ = "idempotency_keys"
    key = mapped_column(String(200), primary_key=True)
    request_hash = mapped_column(String(64), nullable=False)
    payment_id = mapped_column(String(32), nullable=True)


def canonical_hash(payload: dict) -> str:
    """Compute a deterministic SHA-256 hash of a request payload."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@contextmanager
def get_session():
    """Yield a SQLAlchemy session bound to the configured engine."""
    with Session(engine) as s:
        yield s


def _next_internal_id(session: Session) -> int:
    """Compute the next internal_id using a lock on the current max."""
    last = (
        session.execute(
            select(Payment)
            .order_by(Payment.internal_id.desc())
            .with_for_update(skip_locked=False)
            .limit(1)
        )
        .scalars()
        .first()
    )
    return 1 if not last or last.internal_id is None else last.internal_id + 1


class PaymentsRepo:
    """Repository for creating and reading sandbox payments."""

    def create_payment(self, session: Session, **fields) -> Payment:
        """Create and persist a new open payment in ``session``.

        Args:
            session: Open session; the caller commits.
            **fields: Column values (currency, amount_value, description,
                redirect_url, cancel_url, webhook_url, locale, metadata_).

        Returns:
            Payment: The new payment, flushed so its id is usable.
        """
        payment = Payment(
            id=f"tr_{uuid.uuid4().hex[:10]}",
            internal_id=_next_internal_id(session),
            status=OPEN,
            created_at=datetime.now(timezone.utc),
            **fields,
        )
        session.add(payment)
        session.flush()
        return payment

    def get(self, session: Session, payment_id: str) -> Optional[Payment]:
        return session.get(Payment, payment_id)


def init_db():
    Base.metadata.create_all(engine)
