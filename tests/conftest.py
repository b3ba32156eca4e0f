import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_creditpay.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("SETTLE_RETRY_WAIT", "0")

from decimal import Decimal

import pytest
import stripe
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from creditpay import monitoring
from creditpay.database import Base
from creditpay.errors import GatewayUnconfigured, IntentCreationFailed
from creditpay.gateway import IntentHandle, ConfirmResult, ProcessorStatus, intent_id_from_secret
from creditpay.ledger import CreditLedger
from creditpay.orders import ExchangeRateSource, PricingResolver
from creditpay.reconciler import SettlementReconciler, CheckoutSessionStore


class FakeGateway:
    """Stands in for Stripe; confirm results are queued per test."""

    def __init__(self):
        self.public_key = "pk_test_123"
        self.fail_creation = False
        self.created = []
        self.confirmed = []
        self.confirm_results = []
        self.retrieve_results = {}

    def is_configured(self):
        return bool(self.public_key)

    def get_public_key(self):
        if not self.public_key:
            raise GatewayUnconfigured("Stripe publishable key is not configured")
        return self.public_key

    def create_intent(self, order, user_id):
        if self.fail_creation:
            raise IntentCreationFailed("Processor rejected the order")
        n = len(self.created) + 1
        handle = IntentHandle(f"pi_test_{n}", f"pi_test_{n}_secret_{n}")
        self.created.append(handle)
        return handle

    def confirm(self, client_secret, details):
        self.confirmed.append((client_secret, details))
        status, reason = self.confirm_results.pop(0) if self.confirm_results else (ProcessorStatus.SUCCEEDED, None)
        return ConfirmResult(intent_id_from_secret(client_secret), status, reason)

    def retrieve(self, intent_id):
        return ConfirmResult(intent_id, self.retrieve_results.get(intent_id, ProcessorStatus.SUCCEEDED))

    def construct_event(self, payload, signature):
        return stripe.Webhook.construct_event(payload, signature, "whsec_test")


@pytest.fixture(autouse=True)
def reset_alerts():
    monitoring.reset()
    yield
    monitoring.reset()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def ledger(session_factory):
    return CreditLedger(session_factory)


@pytest.fixture
def rates():
    return ExchangeRateSource(Decimal("10"))


@pytest.fixture
def resolver(rates):
    return PricingResolver(rates, buy_fee_rate=Decimal("0.05"), min_credits=5, max_credits=100000)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def reconciler(gateway, ledger, resolver):
    return SettlementReconciler(
        gateway, ledger, resolver, CheckoutSessionStore(), max_action_attempts=3, settle_retry_wait=0,
    )
