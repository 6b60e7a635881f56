"""End-to-end behavior of one reconciliation unit of work."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import checkout_event, count_rows

from givepay.common.db import ConnectionGate
from givepay.common.errors import FOREIGN_KEY, IntegrityViolation, PoolSaturated, TransientStoreError, ValidationError
from givepay.common.state_machine import ReconciliationState
from givepay.services.donations.models import Donor, Payment, TransactionTrailEntry
from givepay.services.donations.service import ReconciliationCoordinator, load_payment

S = ReconciliationState


def test_scenario_a_first_notification(coordinator, session_factory):
    result = coordinator.process(checkout_event(event_id="evt_1", checkout_id="cs_1", email="a@x.com", amount_total=500))

    assert result.state is S.COMMITTED
    assert result.history == [
        S.STARTED,
        S.DEDUPLICATED,
        S.DONOR_RESOLVED,
        S.PAYMENT_UPSERTED,
        S.LEDGER_APPENDED,
        S.COMMITTED,
    ]
    assert count_rows(session_factory) == {
        "notification_records": 1,
        "donors": 1,
        "payments": 1,
        "transaction_trail": 1,
    }
    with session_factory() as db:
        donor = db.execute(select(Donor)).scalar_one()
        payment = db.execute(select(Payment)).scalar_one()
        entry = db.execute(select(TransactionTrailEntry)).scalar_one()
    assert donor.email == "a@x.com"
    assert payment.status == "success"
    assert payment.amount_minor == 500
    assert payment.currency == "USD"
    assert payment.external_checkout_id == "cs_1"
    assert payment.donor_id == donor.donor_id
    assert entry.entry_type == "payment_succeeded"
    assert entry.amount_minor == 500
    assert entry.payment_id == payment.payment_id


def test_scenario_b_redelivery_is_ignored(coordinator, session_factory):
    """Same event id twice: one set of effects, second call acknowledged as IGNORED."""

    event = checkout_event(event_id="evt_1", checkout_id="cs_1", email="a@x.com", amount_total=500)
    coordinator.process(event)
    before = count_rows(session_factory)

    result = coordinator.process(event)

    assert result.state is S.IGNORED
    assert result.payment_id is None
    assert count_rows(session_factory) == before


def test_scenario_c_corrected_amount(coordinator, session_factory):
    first = coordinator.process(checkout_event(event_id="evt_1", checkout_id="cs_1", email="a@x.com", amount_total=500))
    second = coordinator.process(checkout_event(event_id="evt_2", checkout_id="cs_1", email="a@x.com", amount_total=700))

    assert second.state is S.COMMITTED
    assert second.payment_id == first.payment_id
    assert second.donor_id == first.donor_id
    counts = count_rows(session_factory)
    assert counts["payments"] == 1
    assert counts["transaction_trail"] == 2
    assert counts["notification_records"] == 2
    payment, entries = load_payment(session_factory, first.payment_id)
    assert payment.amount_minor == 700
    assert payment.donor_id == first.donor_id
    assert [e.amount_minor for e in entries] == [500, 700]


def test_trail_reads_back_in_append_order(coordinator, session_factory):
    for n in range(20):
        checkout_id = f"cs_order_{n}"
        first = coordinator.process(checkout_event(event_id=f"evt_a_{n}", checkout_id=checkout_id, amount_total=500))
        coordinator.process(checkout_event(event_id=f"evt_b_{n}", checkout_id=checkout_id, amount_total=700))
        _, entries = load_payment(session_factory, first.payment_id)
        assert [e.amount_minor for e in entries] == [500, 700], checkout_id


def test_campaign_attribution_is_not_overwritten(coordinator, session_factory):
    first = coordinator.process(checkout_event(event_id="evt_1", checkout_id="cs_1", campaign_id="camp-a"))
    coordinator.process(checkout_event(event_id="evt_2", checkout_id="cs_1", campaign_id="camp-b"))
    with session_factory() as db:
        assert db.get(Payment, first.payment_id).campaign_id == "camp-a"


def test_notification_without_email_has_no_donor(coordinator, session_factory):
    result = coordinator.process(checkout_event(event_id="evt_9", checkout_id="cs_9", email=None))
    assert result.state is S.COMMITTED
    assert result.donor_id is None
    counts = count_rows(session_factory)
    assert counts["donors"] == 0
    assert counts["payments"] == 1


def test_ledger_failure_rolls_back_everything(coordinator, session_factory, monkeypatch):
    """A failed trail append leaves no record, donor, or payment behind."""

    real_append = coordinator.ledger.append

    def append_to_missing_payment(db, payment_id, entry_type, amount_minor, currency):
        return real_append(db, "missing-payment", entry_type, amount_minor, currency)

    monkeypatch.setattr(coordinator.ledger, "append", append_to_missing_payment)

    with pytest.raises(IntegrityViolation) as excinfo:
        coordinator.process(checkout_event(event_id="evt_1", checkout_id="cs_1", email="a@x.com"))

    assert excinfo.value.kind == FOREIGN_KEY
    assert count_rows(session_factory) == {
        "notification_records": 0,
        "donors": 0,
        "payments": 0,
        "transaction_trail": 0,
    }


def test_rolled_back_notification_can_be_redelivered(coordinator, session_factory, monkeypatch):
    """After a transient failure the same event id is processed normally on retry."""

    def unavailable(*_args, **_kwargs):
        raise OperationalError("SELECT donors", {}, Exception("server closed the connection"))

    event = checkout_event(event_id="evt_1", checkout_id="cs_1")
    with monkeypatch.context() as patch:
        patch.setattr(coordinator.donors, "resolve", unavailable)
        with pytest.raises(TransientStoreError):
            coordinator.process(event)
    assert count_rows(session_factory)["notification_records"] == 0

    assert coordinator.process(event).state is S.COMMITTED
    assert count_rows(session_factory)["transaction_trail"] == 1


def test_invalid_currency_is_a_validation_error(coordinator, session_factory):
    with pytest.raises(ValidationError):
        coordinator.process(checkout_event(event_id="evt_1", currency="usd").model_copy(update={"currency": "us"}))
    assert count_rows(session_factory)["notification_records"] == 0


def test_non_checkout_event_is_rejected(coordinator):
    event = checkout_event().model_copy(update={"event_type": "payment_intent.created"})
    with pytest.raises(ValidationError):
        coordinator.process(event)


def test_saturated_gate_rejects_without_touching_the_store(session_factory):
    gate = ConnectionGate(1)
    coordinator = ReconciliationCoordinator(session_factory, gate=gate)
    with gate.admit():
        with pytest.raises(PoolSaturated):
            coordinator.process(checkout_event())
    assert count_rows(session_factory)["notification_records"] == 0
    # The slot is released once the holder finishes.
    assert coordinator.process(checkout_event()).state is S.COMMITTED
