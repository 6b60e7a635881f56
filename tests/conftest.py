"""Shared fixtures: in-memory SQLite engine, coordinator, and event builders."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import hashlib
import hmac
import time

import pytest
from sqlalchemy import func, select

from givepay.common.config import CommonSettings
from givepay.common.db import Base, build_engine, build_session_factory
from givepay.services.donations.models import Donor, NotificationRecord, Payment, TransactionTrailEntry
from givepay.services.donations.schemas import CHECKOUT_COMPLETED, parse_checkout_completed, parse_envelope
from givepay.services.donations.service import ReconciliationCoordinator

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def test_settings():
    return CommonSettings(database_url="sqlite://", stripe_webhook_secret=WEBHOOK_SECRET, db_queue_limit=5)


@pytest.fixture
def engine(test_settings):
    engine = build_engine(test_settings)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def coordinator(session_factory):
    return ReconciliationCoordinator(session_factory)


def stripe_event(
    event_id="evt_1",
    checkout_id="cs_1",
    email="a@x.com",
    name="Ada",
    amount_total=500,
    currency="usd",
    payment_intent=None,
    campaign_id=None,
    recipient_id=None,
    event_type=CHECKOUT_COMPLETED,
):
    """Raw processor payload shaped like a checkout-completed webhook."""

    metadata = {}
    if campaign_id is not None:
        metadata["campaign_id"] = campaign_id
    if recipient_id is not None:
        metadata["recipient_id"] = recipient_id
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": checkout_id,
                "payment_intent": payment_intent,
                "amount_total": amount_total,
                "currency": currency,
                "customer_details": {"email": email, "name": name},
                "metadata": metadata,
            }
        },
    }


def checkout_event(**kwargs):
    payload = stripe_event(**kwargs)
    return parse_checkout_completed(parse_envelope(payload), payload)


def count_rows(session_factory) -> dict[str, int]:
    with session_factory() as db:
        return {
            model.__tablename__: db.execute(select(func.count()).select_from(model)).scalar_one()
            for model in (NotificationRecord, Donor, Payment, TransactionTrailEntry)
        }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256)
    return f"t={timestamp},v1={digest.hexdigest()}"
