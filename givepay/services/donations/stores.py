"""Store-side steps of one reconciliation unit of work.

Every method takes the caller's session and runs inside its transaction; none
of them commits or rolls back the outer transaction. Inserts that may race
with a concurrent unit of work run inside a savepoint, so a lost race only
discards the savepoint and the outer transaction stays usable.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from givepay.common.errors import (
    IntegrityViolation,
    ValidationError,
    classify_integrity_error,
    is_unique_violation,
)
from givepay.common.logging import logger
from givepay.common.metrics import donors_created_total, lost_create_races_total, trail_entries_total
from givepay.services.donations.models import (
    Donor,
    NotificationRecord,
    Payment,
    PaymentStatus,
    TransactionTrailEntry,
)
from givepay.services.donations.schemas import MAX_AMOUNT_MINOR


class RecordOutcome(str, Enum):
    INSERTED = "INSERTED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"


@dataclass(frozen=True)
class MatchKeys:
    checkout_id: str
    payment_intent_id: str | None = None


@dataclass(frozen=True)
class PaymentFields:
    amount_minor: int
    currency: str | None = None
    donor_id: str | None = None
    campaign_id: str | None = None
    recipient_id: str | None = None


def _violation(exc: IntegrityError, message: str) -> IntegrityViolation:
    violation = classify_integrity_error(exc)
    return IntegrityViolation(message, kind=violation.kind, constraint=violation.constraint)


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


class EventStore:
    """Dedup boundary: one notification record per processor event id."""

    def record_once(self, db, external_event_id: str, event_type: str, payload: dict[str, Any]) -> RecordOutcome:
        """Insert the notification record, or report that it already exists.

        A unique violation here is the redelivery signal, including the case
        where an identical delivery committed while this one was waiting on the
        index. Any other constraint failure is a defect and is raised.
        """

        try:
            with db.begin_nested():
                db.add(
                    NotificationRecord(
                        external_event_id=external_event_id,
                        event_type=event_type,
                        payload=payload,
                    )
                )
        except IntegrityError as exc:
            if is_unique_violation(exc):
                return RecordOutcome.ALREADY_PROCESSED
            raise _violation(exc, f"notification insert rejected event_id={external_event_id}") from exc
        return RecordOutcome.INSERTED


class DonorResolver:
    """Maps a contact email to a stable donor id, creating the donor on first sight."""

    def __init__(self, service_name: str = "donations") -> None:
        self.service_name = service_name

    def _find(self, db, email: str) -> Donor | None:
        return db.execute(select(Donor).where(Donor.email == email)).scalar_one_or_none()

    def resolve(self, db, email: str | None, display_name: str | None) -> str | None:
        email = normalize_email(email)
        if email is None:
            return None

        existing = self._find(db, email)
        if existing is not None:
            return existing.donor_id

        donor = Donor(donor_id=str(uuid4()), full_name=display_name, email=email)
        try:
            with db.begin_nested():
                db.add(donor)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise _violation(exc, "donor insert rejected") from exc
            # Another unit of work created this email first; its row is committed.
            lost_create_races_total.labels(service=self.service_name, entity="donor").inc()
            logger.info("donor create lost race, re-reading winner")
            winner = self._find(db, email)
            if winner is None:
                raise _violation(exc, "donor insert conflicted but no donor matches the email") from exc
            return winner.donor_id

        donors_created_total.labels(service=self.service_name, source="webhook").inc()
        logger.info("donor created donor_id=%s", donor.donor_id)
        return donor.donor_id


class PaymentReconciler:
    """Creates or refreshes the payment row a notification refers to."""

    def __init__(self, default_currency: str = "USD", service_name: str = "donations") -> None:
        self.default_currency = default_currency
        self.service_name = service_name

    def normalize_currency(self, currency: str | None) -> str:
        code = (currency or self.default_currency).strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValidationError(f"invalid currency {currency!r}")
        return code

    @staticmethod
    def validate_amount(amount_minor: Any) -> int:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor < 0:
            raise ValidationError(f"amount must be a non-negative integer, got {amount_minor!r}")
        if amount_minor > MAX_AMOUNT_MINOR:
            raise ValidationError(f"amount exceeds {MAX_AMOUNT_MINOR}, got {amount_minor}")
        return amount_minor

    def _match(self, db, keys: MatchKeys) -> list[Payment]:
        conditions = [Payment.external_checkout_id == keys.checkout_id]
        if keys.payment_intent_id:
            conditions.append(Payment.external_payment_intent_id == keys.payment_intent_id)
        rows = db.execute(select(Payment).where(or_(*conditions))).scalars().all()
        # Checkout id is always present, so its match wins when both ids hit different rows.
        return sorted(rows, key=lambda row: row.external_checkout_id != keys.checkout_id)

    def _refresh(
        self,
        db,
        payment_id: str,
        keys: MatchKeys,
        fields: PaymentFields,
        amount: int,
        currency: str,
        fill_intent: bool,
    ) -> None:
        """Refresh status/amount/currency; fill attribution only where it is null.

        COALESCE runs in the UPDATE itself so a concurrent first writer, whose
        row version the database re-reads after the lock wait, is never
        overwritten.
        """

        values = {
            "status": PaymentStatus.SUCCESS.value,
            "amount_minor": amount,
            "currency": currency,
            "donor_id": func.coalesce(Payment.donor_id, fields.donor_id),
            "campaign_id": func.coalesce(Payment.campaign_id, fields.campaign_id),
            "recipient_id": func.coalesce(Payment.recipient_id, fields.recipient_id),
        }
        if fill_intent and keys.payment_intent_id:
            values["external_payment_intent_id"] = func.coalesce(
                Payment.external_payment_intent_id, keys.payment_intent_id
            )
        db.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def upsert(self, db, keys: MatchKeys, fields: PaymentFields) -> str:
        """Return the payment id for `keys`, inserting or updating as needed."""

        if not keys.checkout_id:
            raise ValidationError("checkout id is required to match a payment")
        amount = self.validate_amount(fields.amount_minor)
        currency = self.normalize_currency(fields.currency)

        matches = self._match(db, keys)
        if len(matches) > 1:
            logger.warning(
                "payment keys match multiple rows checkout_id=%s payment_intent_id=%s using=%s",
                keys.checkout_id,
                keys.payment_intent_id,
                matches[0].payment_id,
            )

        if not matches:
            payment = Payment(
                payment_id=str(uuid4()),
                donor_id=fields.donor_id,
                campaign_id=fields.campaign_id,
                recipient_id=fields.recipient_id,
                amount_minor=amount,
                currency=currency,
                status=PaymentStatus.SUCCESS.value,
                external_payment_intent_id=keys.payment_intent_id,
                external_checkout_id=keys.checkout_id,
            )
            try:
                with db.begin_nested():
                    db.add(payment)
                return payment.payment_id
            except IntegrityError as exc:
                if not is_unique_violation(exc):
                    raise _violation(exc, f"payment insert rejected checkout_id={keys.checkout_id}") from exc
                lost_create_races_total.labels(service=self.service_name, entity="payment").inc()
                logger.info("payment create lost race checkout_id=%s, re-reading winner", keys.checkout_id)
                matches = self._match(db, keys)
                if not matches:
                    raise _violation(exc, "payment insert conflicted but no payment matches the keys") from exc

        payment_id = matches[0].payment_id
        try:
            self._refresh(db, payment_id, keys, fields, amount, currency, fill_intent=len(matches) == 1)
        except IntegrityError as exc:
            raise _violation(exc, f"payment update rejected payment_id={payment_id}") from exc
        return payment_id


class LedgerAppender:
    """Append-only writer for transaction trail entries."""

    def __init__(self, service_name: str = "donations") -> None:
        self.service_name = service_name

    def append(self, db, payment_id: str, entry_type: str, amount_minor: int, currency: str) -> str:
        entry = TransactionTrailEntry(
            id=str(uuid4()),
            payment_id=payment_id,
            entry_type=entry_type,
            amount_minor=amount_minor,
            currency=currency,
        )
        db.add(entry)
        try:
            db.flush()
        except IntegrityError as exc:
            raise _violation(exc, f"trail append rejected payment_id={payment_id}") from exc
        trail_entries_total.labels(service=self.service_name, entry_type=entry_type).inc()
        return entry.id
