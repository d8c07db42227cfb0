"""Shared fixtures: in-memory database, fake gateway, wired services."""

import os

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["API_KEY"] = "test-api-key"
os.environ["SELCOM_API_SECRET"] = "test-secret"
os.environ["TRACING_ENABLED"] = "false"
os.environ["RATE_LIMIT_BACKEND"] = "memory"

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event, select, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cvpay.common.db import Base
from cvpay.common.state_machine import CV_PENDING_PAYMENT, PENDING
from cvpay.services.affiliates.models import Affiliate
from cvpay.services.affiliates.service import AffiliateService
from cvpay.services.gateway.client import GatewayError
from cvpay.services.gateway.schemas import OrderCreated, PushAccepted
from cvpay.services.gateway.signing import SignatureVerifier
from cvpay.services.payments import store
from cvpay.services.payments.models import CV, Payment
from cvpay.services.payments.service import ReconciliationService


TEST_SECRET = "test-secret"


class FakeGateway:
    """Records calls and replays canned gateway answers."""

    def __init__(self):
        self.order_result = OrderCreated(
            resultcode="000",
            reference="ORDER-REF",
            message="Order creation successful",
            payment_token="tok-1",
            payment_gateway_url="https://checkout.example/pay/tok-1",
        )
        self.push_result = PushAccepted(resultcode="111", reference="PUSH-REF", message="Request in progress")
        self.statuses = {}
        self.error = None
        self.orders = []
        self.pushes = []
        self.status_calls = []

    async def create_order(self, **kwargs):
        self.orders.append(kwargs)
        if self.error:
            raise GatewayError(self.error)
        return self.order_result

    async def push_payment(self, order_id, msisdn):
        self.pushes.append((order_id, msisdn))
        if self.error:
            raise GatewayError(self.error)
        return self.push_result

    async def get_order_status(self, order_id):
        self.status_calls.append(order_id)
        if self.error:
            raise GatewayError(self.error)
        return self.statuses.get(order_id)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def affiliates(session_factory):
    return AffiliateService(session_factory)


@pytest.fixture
def service(session_factory, gateway, affiliates):
    return ReconciliationService(
        session_factory,
        gateway=gateway,
        affiliates=affiliates,
        verifier=SignatureVerifier(TEST_SECRET),
    )


@pytest.fixture
def seed_payment(session_factory):
    """Insert a CV and its payment; returns (order_id, cv_id)."""

    def _seed(status=PENDING, affiliate_id=None, amount=5000, cv_status=CV_PENDING_PAYMENT):
        cv_id = str(uuid4())
        order_id = f"CV-{cv_id}-1760770000000"
        with session_factory() as db:
            db.add(CV(id=cv_id, template_id="modern", data={"personalInfo": {"firstName": "Asha"}}, status=cv_status))
            db.flush()
            payment = store.create_payment(
                db,
                order_id=order_id,
                cv_id=cv_id,
                amount=amount,
                currency="TZS",
                msisdn="255712345678",
                affiliate_id=affiliate_id,
            )
            if status != PENDING:
                db.execute(update(Payment).where(Payment.id == payment.id).values(status=status))
            db.commit()
        return order_id, cv_id

    return _seed


@pytest.fixture
def approved_affiliate(session_factory):
    """An approved affiliate at 10% commission; returns the Affiliate row."""

    with session_factory() as db:
        affiliate = Affiliate(
            user_id=f"user-{uuid4()}",
            full_name="Neema Juma",
            email="neema@example.com",
            phone="255755000111",
            referral_code="neemaj1x2",
            status="approved",
            commission_rate=Decimal("10"),
            total_clicks=0,
            total_conversions=0,
            total_earnings=0,
            available_balance=0,
        )
        db.add(affiliate)
        db.commit()
        db.refresh(affiliate)
        return affiliate


@pytest.fixture
def load_payment(session_factory):
    def _load(order_id):
        with session_factory() as db:
            return db.execute(select(Payment).where(Payment.order_id == order_id)).scalar_one_or_none()

    return _load


@pytest.fixture
def load_cv(session_factory):
    def _load(cv_id):
        with session_factory() as db:
            return db.get(CV, cv_id)

    return _load
