from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Numeric, DateTime, ForeignKey
from creditpay.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class PaymentIntentRecord(Base):
    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True)                   # Stripe PaymentIntent ID
    user_id = Column(String, index=True, nullable=False)
    order_id = Column(String, unique=True, nullable=False)
    kind = Column(String, nullable=False)                   # CREDIT_TOPUP | SUBSCRIPTION_ACTIVATION
    credit_amount = Column(Integer, nullable=False, default=0)
    tier_id = Column(String, nullable=True)
    charge_cents = Column(Integer, nullable=False)
    fee_cents = Column(Integer, nullable=False, default=0)
    exchange_rate = Column(Numeric(18, 6), nullable=False)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False)                 # created | processing | requires_action | succeeded | failed
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class SettlementRecord(Base):
    """Append-only; one row per settled intent."""
    __tablename__ = "settlements"

    intent_id = Column(String, ForeignKey("payment_intents.id"), primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    kind = Column(String, nullable=False)
    credits_granted = Column(Integer, nullable=False, default=0)
    subscription_tier = Column(String, nullable=True)
    source = Column(String, nullable=False)                 # client | notification | sweep | no_payment
    applied_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class CreditEntry(Base):
    __tablename__ = "credit_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    reference_id = Column(String, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    tier_id = Column(String, nullable=False)
    intent_id = Column(String, unique=True, nullable=False)
    status = Column(String, nullable=False, default="ACTIVE")      # ACTIVE | CANCELLED
    started_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)


class DailyClaim(Base):
    """One row per user per UTC day; the primary key makes a claim happen once."""
    __tablename__ = "daily_claims"

    user_id = Column(String, primary_key=True)
    claim_date = Column(String, primary_key=True)           # ISO date
    tier_id = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    claimed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
