"""Donations database models.

Four tables make up one reconciled notification: the notification record
(dedup boundary), the donor, the payment, and the append-only trail entry.
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from givepay.common.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TrailEntryType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"


class NotificationRecord(Base):
    """One row per distinct processor event id; never updated or deleted."""

    __tablename__ = "notification_records"

    external_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), index=True)
    payload: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"))
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Donor(Base):
    """Donor identity; resolved by email during reconciliation."""

    __tablename__ = "donors"
    __table_args__ = (UniqueConstraint("email", name="uq_donors_email"),)

    donor_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )


class Payment(Base):
    """Current state of a donation payment, matched by checkout or intent id."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_payments_amount_non_negative"),
        UniqueConstraint("external_checkout_id", name="uq_payments_external_checkout_id"),
        UniqueConstraint("external_payment_intent_id", name="uq_payments_external_payment_intent_id"),
    )

    payment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    donor_id: Mapped[str | None] = mapped_column(ForeignKey("donors.donor_id"), nullable=True, index=True)
    recipient_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    amount_minor: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, index=True)
    external_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_checkout_id: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TransactionTrailEntry(Base):
    """Immutable record of one financial effect on a payment."""

    __tablename__ = "transaction_trail"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.payment_id"), index=True)
    entry_type: Mapped[str] = mapped_column(String(50))
    amount_minor: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    # Microsecond client-side stamp; trail reads order by it.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
