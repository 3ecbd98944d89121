# tests/conftest.py
import os
import tempfile
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import app.dependencies as deps
from app.db import Base, get_db, make_engine
from app.dependencies import get_clock, get_gateway, get_notifier
from app.errors import GatewayUnavailable
from app.gateway import GatewayPayment, PaymentIntent
from app.main import app
from app.models import Reservation, TimeBlock
from app.schedule import BUSINESS_TZ

# All tests run "at" 09:00 on the first of June, club time
NOW = datetime(2024, 6, 1, 9, 0, tzinfo=BUSINESS_TZ)
DAY = date(2024, 6, 1)
ADMIN_TOKEN = "test-admin-token"


class FakeGateway:
    """Stands in for MercadoPago at the service seam."""

    def __init__(self):
        self.intents = []
        self.lookups = []
        self.payments = {}
        self.fail_create = None
        self.fail_lookup = None

    def create_intent(self, title, description, amount, currency, correlation_key, return_urls, payer=None):
        self.intents.append({
            "title": title,
            "description": description,
            "amount": amount,
            "currency": currency,
            "correlation_key": correlation_key,
            "return_urls": return_urls,
            "payer": payer,
        })
        if self.fail_create:
            raise self.fail_create
        n = len(self.intents)
        return PaymentIntent(intent_id=f"pref-{n}", redirect_url=f"https://mp.example/checkout/pref-{n}")

    def set_payment(self, payment_id, status, reservation_id, payment_method="visa"):
        self.payments[str(payment_id)] = GatewayPayment(
            payment_id=str(payment_id),
            status=status,
            external_reference=reservation_id,
            payment_method=payment_method,
        )

    def get_payment(self, payment_id):
        self.lookups.append(payment_id)
        if self.fail_lookup:
            raise self.fail_lookup
        if payment_id not in self.payments:
            raise GatewayUnavailable(f"unknown payment {payment_id}")
        return self.payments[payment_id]


class RecordingNotifier:
    def __init__(self):
        self.confirmed = []
        self.fail = False

    def on_reservation_confirmed(self, reservation_id):
        self.confirmed.append(reservation_id)
        if self.fail:
            raise RuntimeError("mail server down")


@pytest.fixture(scope="function")
def test_engine():
    os.environ["SKIP_DB_INIT"] = "1"

    # temp DB
    tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    tmp.close()
    engine = make_engine(f"sqlite:///{tmp.name}")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()
        os.unlink(tmp.name)

@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture(scope="function")
def test_db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def gateway():
    return FakeGateway()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def clock():
    return lambda: NOW

@pytest.fixture(scope="function")
def client(test_db_session, gateway, notifier, clock, monkeypatch):
    def override_get_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock
    monkeypatch.setattr(deps, "ADMIN_API_TOKEN", ADMIN_TOKEN)

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()

# —— Factories ——
@pytest.fixture
def make_reservation(test_db_session):
    def _make_reservation(sport="futbol", day=DAY, time="14:00", duration=90,
                          status="pending", amount="22500.00", created_at=None):
        hours, minutes = time.split(":")
        start = int(hours) * 60 + int(minutes)
        reservation_id = str(uuid.uuid4())
        r = Reservation(
            id=reservation_id,
            sport=sport,
            booking_date=day,
            start_minute=start,
            duration_minutes=duration,
            end_minute=start + duration,
            customer_name="Lionel",
            customer_phone="+54 11 5555 0000",
            customer_email="lionel@example.com",
            amount=Decimal(amount),
            payment_status=status,
            created_at=created_at or NOW - timedelta(minutes=5),
            updated_at=created_at or NOW - timedelta(minutes=5),
        )
        test_db_session.add(r)
        test_db_session.commit()
        return reservation_id
    return _make_reservation

@pytest.fixture
def make_block(test_db_session):
    def _make_block(sport="futbol", day=DAY, start="18:00", end="20:00", reason="Mantenimiento"):
        sh, sm = start.split(":")
        eh, em = end.split(":")
        block_id = str(uuid.uuid4())
        b = TimeBlock(
            id=block_id,
            sport=sport,
            block_date=day,
            start_minute=int(sh) * 60 + int(sm),
            end_minute=int(eh) * 60 + int(em),
            reason=reason,
            created_by="Admin",
            created_at=NOW,
        )
        test_db_session.add(b)
        test_db_session.commit()
        return block_id
    return _make_block
