"""Concurrent units of work against a shared file-backed database."""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from conftest import checkout_event, count_rows

from givepay.common.db import Base, build_engine, build_session_factory
from givepay.common.errors import TransientStoreError
from givepay.common.state_machine import ReconciliationState
from givepay.services.donations.service import ReconciliationCoordinator

WORKERS = 8


@pytest.fixture
def file_session_factory(test_settings, tmp_path):
    config = test_settings.model_copy(update={"database_url": f"sqlite:///{tmp_path / 'race.db'}"})
    engine = build_engine(config)
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


def run_together(coordinator, events):
    """Start every event at once; collect the terminal state or the transient error."""

    barrier = Barrier(len(events))

    def work(event):
        barrier.wait()
        try:
            return coordinator.process(event).state
        except TransientStoreError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(events)) as pool:
        return list(pool.map(work, events))


def test_same_event_delivered_concurrently_commits_once(file_session_factory):
    coordinator = ReconciliationCoordinator(file_session_factory)
    event = checkout_event(event_id="evt_race", checkout_id="cs_race", email="race@x.com")

    outcomes = run_together(coordinator, [event] * WORKERS)

    committed = [o for o in outcomes if o is ReconciliationState.COMMITTED]
    others = [o for o in outcomes if o is not ReconciliationState.COMMITTED]
    assert len(committed) == 1
    assert all(o is ReconciliationState.IGNORED or isinstance(o, TransientStoreError) for o in others)
    assert count_rows(file_session_factory) == {
        "notification_records": 1,
        "donors": 1,
        "payments": 1,
        "transaction_trail": 1,
    }
    assert coordinator.process(event).state is ReconciliationState.IGNORED


def test_distinct_events_for_one_checkout_share_donor_and_payment(file_session_factory):
    coordinator = ReconciliationCoordinator(file_session_factory)
    events = [
        checkout_event(event_id=f"evt_{n}", checkout_id="cs_shared", email="Shared@X.com", amount_total=100 + n)
        for n in range(WORKERS)
    ]

    outcomes = run_together(coordinator, events)

    committed = sum(1 for o in outcomes if o is ReconciliationState.COMMITTED)
    assert committed >= 1
    assert all(o is ReconciliationState.COMMITTED or isinstance(o, TransientStoreError) for o in outcomes)
    counts = count_rows(file_session_factory)
    assert counts["donors"] == 1
    assert counts["payments"] == 1
    assert counts["transaction_trail"] == committed
    assert counts["notification_records"] == committed

    # Redelivery of the events that were asked to retry completes the set.
    for event, outcome in zip(events, outcomes):
        if isinstance(outcome, TransientStoreError):
            assert coordinator.process(event).state is ReconciliationState.COMMITTED
    assert count_rows(file_session_factory) == {
        "notification_records": WORKERS,
        "donors": 1,
        "payments": 1,
        "transaction_trail": WORKERS,
    }
