"""
Pytest fixtures for storefront backend tests.

Provides test database setup, a fresh checkout/notification runtime per test,
catalog and campaign factories, and a manual scheduler for reconnection.
"""

from datetime import timedelta

import pytest
from storefront import create_app
from storefront.extensions import db
from storefront.models import Customer, DiscountCampaign, DiscountRule, LegacyDiscount, Product, ProductVariant
from storefront.runtime import build_runtime
from storefront.time_utils import utcnow


class ManualScheduler:
    """Records scheduled callbacks so tests can fire them on demand."""

    def __init__(self):
        self.pending = []

    def schedule(self, delay_seconds, callback):
        job = _Job(delay_seconds, callback)
        self.pending.append(job)
        return job

    @property
    def delays_ms(self):
        return [round(job.delay_seconds * 1000) for job in self.pending if not job.cancelled]

    def run_next(self):
        while self.pending:
            job = self.pending.pop(0)
            if not job.cancelled:
                job.callback()
                return job
        raise AssertionError("no scheduled job")


class _Job:
    def __init__(self, delay_seconds, callback):
        self.delay_seconds = delay_seconds
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'NOTIFICATIONS_AUTOSTART': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app, runtime):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def scheduler():
    return ManualScheduler()


@pytest.fixture(scope='function')
def runtime(app, db_session, scheduler):
    """Fresh bus, sessions, notifications and supervisor for each test."""
    rt = build_runtime(app, scheduler=scheduler)
    yield rt
    rt.supervisor.stop()


@pytest.fixture(scope='function')
def store(runtime):
    return runtime.store


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(name="Widget", price_cents=1000, stock=10, **kwargs):
        product = Product(name=name, price_cents=price_cents, stock=stock, **kwargs)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_variant(db_session):
    def _make(product, label="Large", price_cents=1500, stock=5):
        variant = ProductVariant(product_id=product.id, label=label, price_cents=price_cents, stock=stock)
        db_session.add(variant)
        db_session.commit()
        return variant
    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    counter = {"n": 0}

    def _make(role="customer"):
        counter["n"] += 1
        customer = Customer(email=f"{role}{counter['n']}@test.local", full_name=f"Test {role}", role=role)
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture(scope='function')
def make_campaign(db_session):
    """
    Create an active campaign with one rule for product.

    Window defaults to yesterday .. +ends_in_days.
    """
    def _make(product, kind="percentage", discount_value=0, *, ends_in_days=10,
              status="active", name=None, **rule_fields):
        now = utcnow()
        campaign = DiscountCampaign(
            name=name or f"{kind} offer",
            kind=kind,
            status=status,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=ends_in_days),
        )
        db_session.add(campaign)
        db_session.flush()
        rule = DiscountRule(
            campaign_id=campaign.id,
            product_id=product.id,
            discount_value=discount_value,
            **rule_fields,
        )
        db_session.add(rule)
        db_session.commit()
        return campaign, rule
    return _make


@pytest.fixture(scope='function')
def make_legacy_discount(db_session):
    def _make(product, percentage, ends_in_days=10):
        now = utcnow()
        row = LegacyDiscount(
            product_id=product.id,
            percentage=percentage,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=ends_in_days),
        )
        db_session.add(row)
        db_session.commit()
        return row
    return _make


@pytest.fixture(scope='function')
def staff(make_customer):
    return make_customer(role="worker")
