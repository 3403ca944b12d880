# tests/conftest.py
import json
import os
from datetime import timedelta
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select, update

# Point tests at a throwaway database (set DATABASE_URL to run against Postgres)
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./marketpay_test.db")

from marketpay.main import app, get_payout_scheduler, get_processors  # noqa
from marketpay.db import engine, SessionLocal  # noqa
from marketpay.models import (  # noqa
    Base, LedgerEntry, Order, OrderStatus, PaymentMethod, PayoutBatch, PlatformSetting,
    SellerProfile, now_utc
)
from marketpay.processor import ProcessorError  # noqa
from marketpay.scheduler import PayoutScheduler  # noqa


class FakeProcessor:
    """Records calls; destinations in ``failing`` raise ProcessorError."""

    def __init__(self):
        self.transfers = []
        self.payouts = []
        self.refunds = []
        self.failing = set()
        self.fail_refunds = False

    def transfer(self, destination_account_id, amount_cents, metadata):
        if destination_account_id in self.failing:
            raise ProcessorError(f"transfer to {destination_account_id} declined")
        self.transfers.append((destination_account_id, amount_cents, dict(metadata)))
        return f"tr_{len(self.transfers)}"

    def payout(self, destination_account_id, amount_cents, metadata):
        if destination_account_id in self.failing:
            raise ProcessorError(f"payout on {destination_account_id} declined")
        self.payouts.append((destination_account_id, amount_cents, dict(metadata)))
        return f"po_{len(self.payouts)}"

    def refund(self, payment_reference_id, amount_cents):
        if self.fail_refunds:
            raise ProcessorError("charge already disputed")
        self.refunds.append((payment_reference_id, amount_cents))
        return f"re_{len(self.refunds)}"


class Factory:
    """Writes fixtures straight to the database, each call in its own session."""

    def seller(self, account_id=None, email=None, commission_rate=None,
               payout_method=PaymentMethod.STRIPE, total_sales=0, total_revenue_cents=0):
        seller_id = uuid4()
        with SessionLocal() as db:
            db.add(SellerProfile(
                user_id=seller_id,
                processor_account_id=account_id,
                processor_payout_email=email,
                payout_method=payout_method,
                commission_rate_override=commission_rate,
                onboarding_status="completed",
                total_sales=total_sales,
                total_revenue_cents=total_revenue_cents,
            ))
            db.commit()
        return seller_id

    def order(self, seller_id, amount_cents=10000, method=PaymentMethod.STRIPE, payment_reference_id=None):
        order_id = uuid4()
        with SessionLocal() as db:
            db.add(Order(
                id=order_id,
                order_number=f"ORD-{order_id.hex[:12].upper()}",
                buyer_id=uuid4(),
                seller_id=seller_id,
                amount_cents=amount_cents,
                payment_method=method,
                status=OrderStatus.PENDING,
                processor_payment_reference_id=payment_reference_id,
            ))
            db.commit()
        return order_id

    def setting(self, key, value):
        with SessionLocal() as db:
            db.merge(PlatformSetting(key=key, value=json.dumps(value)))
            db.commit()

    def load(self, model, key):
        with SessionLocal() as db:
            return db.get(model, key)

    def entries(self, **filters):
        with SessionLocal() as db:
            return db.execute(
                select(LedgerEntry).filter_by(**filters).order_by(LedgerEntry.created_at)
            ).scalars().all()

    def batches(self):
        with SessionLocal() as db:
            return db.execute(select(PayoutBatch)).scalars().all()

    def backdate(self, order_id, days):
        with SessionLocal() as db:
            db.execute(
                update(LedgerEntry)
                .where(LedgerEntry.order_id == order_id)
                .values(created_at=now_utc() - timedelta(days=days))
            )
            db.commit()


@pytest.fixture(autouse=True)
def create_schema_and_clean_db():
    # Ensure tables exist (startup also does this, but be explicit for tests)
    Base.metadata.create_all(bind=engine)
    # Empty every table between tests so they don't interfere
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def factory():
    return Factory()


@pytest.fixture
def fake_processor():
    return FakeProcessor()


@pytest.fixture
def processors(fake_processor):
    return {PaymentMethod.STRIPE: fake_processor}


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


@pytest.fixture
def client(processors):
    scheduler = PayoutScheduler(SessionLocal, processors)
    app.dependency_overrides[get_processors] = lambda: processors
    app.dependency_overrides[get_payout_scheduler] = lambda: scheduler
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
