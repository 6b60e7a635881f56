"""Webhook reconciliation orchestration.

Runs the four store steps for one checkout-completed notification inside a
single transaction, decides commit vs rollback, and reports a terminal state
that the HTTP layer maps to an acknowledgment.
"""

from contextlib import nullcontext
from dataclasses import dataclass, field
from time import perf_counter

from sqlalchemy import select
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from givepay.common.db import ConnectionGate
from givepay.common.errors import (
    UNIQUE,
    IntegrityViolation,
    PoolSaturated,
    ReconciliationError,
    TransientStoreError,
    ValidationError,
    classify_integrity_error,
    is_transient,
)
from givepay.common.logging import event_id_ctx, logger, payment_id_ctx
from givepay.common.metrics import (
    donors_created_total,
    duplicate_events_skipped_total,
    pool_rejections_total,
    reconciliation_latency_seconds,
)
from givepay.common.state_machine import ReconciliationState, validate_transition
from givepay.common.tracing import tracer
from givepay.services.donations.models import Donor, Payment, TransactionTrailEntry, TrailEntryType
from givepay.services.donations.schemas import CHECKOUT_COMPLETED, CheckoutCompleted, DonorCreateRequest
from givepay.services.donations.stores import (
    DonorResolver,
    EventStore,
    LedgerAppender,
    MatchKeys,
    PaymentFields,
    PaymentReconciler,
    RecordOutcome,
    normalize_email,
)


@dataclass
class ReconciliationResult:
    """Terminal state of one unit of work plus the ids it touched."""

    external_event_id: str
    state: ReconciliationState = ReconciliationState.STARTED
    donor_id: str | None = None
    payment_id: str | None = None
    trail_entry_id: str | None = None
    history: list[ReconciliationState] = field(default_factory=lambda: [ReconciliationState.STARTED])

    def advance(self, new_state: ReconciliationState) -> None:
        validate_transition(self.state, new_state)
        self.state = new_state
        self.history.append(new_state)


def translate_store_error(exc: BaseException) -> BaseException:
    """Map a raw failure from the unit of work onto the service taxonomy."""

    if isinstance(exc, ReconciliationError):
        return exc
    if isinstance(exc, IntegrityError):
        violation = classify_integrity_error(exc)
        return IntegrityViolation(str(exc.orig), kind=violation.kind, constraint=violation.constraint)
    if isinstance(exc, DataError):
        # Value the column cannot hold.
        return ValidationError(f"value rejected by store: {exc.orig}")
    if isinstance(exc, (DBAPIError, PoolTimeoutError)) and is_transient(exc):
        return TransientStoreError(str(exc))
    return exc


class ReconciliationCoordinator:
    """Owns the transaction for one notification and the retry contract."""

    def __init__(
        self,
        session_factory,
        gate: ConnectionGate | None = None,
        default_currency: str = "USD",
        service_name: str = "donations",
    ) -> None:
        self.session_factory = session_factory
        self.gate = gate
        self.service_name = service_name
        self.event_store = EventStore()
        self.donors = DonorResolver(service_name)
        self.payments = PaymentReconciler(default_currency, service_name)
        self.ledger = LedgerAppender(service_name)

    def process(self, event: CheckoutCompleted) -> ReconciliationResult:
        """Reconcile one notification; returns COMMITTED or IGNORED, raises otherwise.

        Raises `ValidationError` (nothing written), `TransientStoreError`
        (rolled back, safe to redeliver) or `IntegrityViolation` (rolled back,
        needs investigation).
        """

        if event.event_type != CHECKOUT_COMPLETED:
            raise ValidationError(f"unsupported event type {event.event_type!r}")
        if not event.checkout_id:
            raise ValidationError("checkout id is required")

        started = perf_counter()
        terminal = ReconciliationState.ROLLED_BACK
        event_token = event_id_ctx.set(event.external_event_id)
        try:
            with tracer.start_as_current_span("reconcile_notification") as span:
                span.set_attribute("givepay.event_id", event.external_event_id)
                span.set_attribute("givepay.checkout_id", event.checkout_id)
                result = self._admitted(event)
                span.set_attribute("givepay.terminal_state", result.state.value)
            terminal = result.state
            return result
        finally:
            reconciliation_latency_seconds.labels(
                service=self.service_name,
                terminal_state=terminal.value,
            ).observe(max(0.0, perf_counter() - started))
            event_id_ctx.reset(event_token)

    def _admitted(self, event: CheckoutCompleted) -> ReconciliationResult:
        try:
            admission = self.gate.admit() if self.gate is not None else nullcontext()
            with admission:
                return self._run(event)
        except PoolSaturated:
            pool_rejections_total.labels(service=self.service_name).inc()
            logger.warning("unit of work rejected, connection queue full")
            raise

    def _run(self, event: CheckoutCompleted) -> ReconciliationResult:
        result = ReconciliationResult(external_event_id=event.external_event_id)
        payment_token = None
        # Closing the session returns its connection to the pool on every path.
        with self.session_factory() as db:
            try:
                outcome = self.event_store.record_once(
                    db, event.external_event_id, event.event_type, event.raw_payload
                )
                if outcome is RecordOutcome.ALREADY_PROCESSED:
                    db.rollback()
                    result.advance(ReconciliationState.IGNORED)
                    duplicate_events_skipped_total.labels(
                        service=self.service_name,
                        event_type=event.event_type,
                    ).inc()
                    logger.info("duplicate notification skipped event_id=%s", event.external_event_id)
                    return result
                result.advance(ReconciliationState.DEDUPLICATED)

                result.donor_id = self.donors.resolve(db, event.email, event.customer_name)
                result.advance(ReconciliationState.DONOR_RESOLVED)

                currency = self.payments.normalize_currency(event.currency)
                result.payment_id = self.payments.upsert(
                    db,
                    MatchKeys(checkout_id=event.checkout_id, payment_intent_id=event.payment_intent_id),
                    PaymentFields(
                        amount_minor=event.amount_total,
                        currency=currency,
                        donor_id=result.donor_id,
                        campaign_id=event.campaign_id,
                        recipient_id=event.recipient_id,
                    ),
                )
                payment_token = payment_id_ctx.set(result.payment_id)
                result.advance(ReconciliationState.PAYMENT_UPSERTED)

                result.trail_entry_id = self.ledger.append(
                    db,
                    result.payment_id,
                    TrailEntryType.PAYMENT_SUCCEEDED.value,
                    event.amount_total,
                    currency,
                )
                result.advance(ReconciliationState.LEDGER_APPENDED)

                db.commit()
                result.advance(ReconciliationState.COMMITTED)
                logger.info(
                    "notification reconciled event_id=%s payment_id=%s donor_id=%s amount_minor=%s currency=%s",
                    event.external_event_id,
                    result.payment_id,
                    result.donor_id,
                    event.amount_total,
                    currency,
                )
                return result
            except Exception as exc:
                db.rollback()
                result.advance(ReconciliationState.ROLLED_BACK)
                error = translate_store_error(exc)
                if isinstance(error, IntegrityViolation):
                    logger.exception(
                        "reconciliation rolled back on integrity violation event_id=%s kind=%s constraint=%s",
                        event.external_event_id,
                        error.kind,
                        error.constraint,
                    )
                elif isinstance(error, ValidationError):
                    logger.warning("reconciliation rejected event_id=%s error=%s", event.external_event_id, error)
                else:
                    logger.warning(
                        "reconciliation rolled back event_id=%s after_state=%s error=%s",
                        event.external_event_id,
                        result.history[-2].value,
                        error,
                    )
                if error is exc:
                    raise
                raise error from exc
            finally:
                if payment_token is not None:
                    payment_id_ctx.reset(payment_token)


class DonorDirectory:
    """Read/insert operations behind the `/donors` endpoints."""

    def __init__(self, session_factory, service_name: str = "donations") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def list_recent(self, limit: int = 5) -> list[Donor]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Donor).order_by(Donor.created_at.desc(), Donor.donor_id).limit(limit)
                ).scalars()
            )

    def create(self, req: DonorCreateRequest) -> Donor:
        """Insert a donor; raises `IntegrityViolation(kind=UNIQUE)` for a taken email."""

        donor = Donor(full_name=req.full_name, email=normalize_email(req.email), country=req.country)
        with self.session_factory() as db:
            db.add(donor)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                violation = classify_integrity_error(exc)
                if violation.kind == UNIQUE:
                    raise IntegrityViolation(
                        "donor email already registered", kind=UNIQUE, constraint=violation.constraint
                    ) from exc
                raise
            db.refresh(donor)
        donors_created_total.labels(service=self.service_name, source="api").inc()
        return donor


def load_payment(session_factory, payment_id: str) -> tuple[Payment, list[TransactionTrailEntry]] | None:
    """Fetch one payment with its trail entries, oldest first."""

    with session_factory() as db:
        payment = db.get(Payment, payment_id)
        if payment is None:
            return None
        entries = (
            db.execute(
                select(TransactionTrailEntry)
                .where(TransactionTrailEntry.payment_id == payment_id)
                .order_by(TransactionTrailEntry.created_at, TransactionTrailEntry.id)
            )
            .scalars()
            .all()
        )
        return payment, list(entries)
