"""
Credit / entitlement ledger.

Settlement is an insert-if-absent keyed by the payment intent id. The
client path and the webhook path both call ``settle``; whichever reaches
the ``settlements`` primary key first applies the grant, the other one
reads the existing row back and reports it as already settled.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from creditpay.errors import UnknownIntent, SnapshotMismatch, NoActiveSubscription, DailyCreditsAlreadyClaimed
from creditpay.models import PaymentIntentRecord, SettlementRecord, CreditEntry, Subscription, DailyClaim
from creditpay.orders import Order, OrderKind, OrderSnapshot, TIERS, to_cents, from_cents

logger = logging.getLogger(__name__)

# A declined intent can still be confirmed again with the same client secret
FINAL_STATUS = "succeeded"
LIVE_SUBSCRIPTION_STATUSES = ("ACTIVE", "CANCELLED")
SUBSCRIPTION_PERIOD = timedelta(days=30)


@dataclass(frozen=True)
class SettlementResult:
    intent_id: str
    already_settled: bool
    credits_granted: int = 0
    subscription_activated: Optional[str] = None

    def as_dict(self):
        return {
            "intent_id": self.intent_id,
            "already_settled": self.already_settled,
            "credits_granted": self.credits_granted,
            "subscription_activated": self.subscription_activated,
        }


def snapshot_of(record: PaymentIntentRecord) -> OrderSnapshot:
    return OrderSnapshot(
        kind=OrderKind(record.kind),
        credit_amount=record.credit_amount or 0,
        tier_id=record.tier_id,
        charge_amount=from_cents(record.charge_cents),
        exchange_rate_snapshot=Decimal(record.exchange_rate),
        fee_amount=from_cents(record.fee_cents),
    )


def _aware(moment: datetime) -> datetime:
    # SQLite hands DateTime columns back without tzinfo
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _result(record: SettlementRecord, already_settled: bool) -> SettlementResult:
    return SettlementResult(
        intent_id=record.intent_id,
        already_settled=already_settled,
        credits_granted=record.credits_granted,
        subscription_activated=record.subscription_tier,
    )


class CreditLedger:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def record_intent(self, intent_id: str, user_id: str, order: Order, status: str = "created"):
        db = self.session_factory()
        try:
            db.add(PaymentIntentRecord(
                id=intent_id,
                user_id=user_id,
                order_id=order.order_id,
                kind=order.kind.value,
                credit_amount=order.credit_amount,
                tier_id=order.tier_id,
                charge_cents=order.charge_cents,
                fee_cents=to_cents(order.fee_amount),
                exchange_rate=order.exchange_rate_snapshot,
                currency=order.currency,
                status=status,
            ))
            db.commit()
        finally:
            db.close()

    def get_intent(self, intent_id: str) -> Optional[PaymentIntentRecord]:
        db = self.session_factory()
        try:
            return db.get(PaymentIntentRecord, intent_id)
        finally:
            db.close()

    def mark_status(self, intent_id: str, status: str) -> bool:
        db = self.session_factory()
        try:
            intent = db.get(PaymentIntentRecord, intent_id)
            if intent is None:
                return False
            if intent.status in (FINAL_STATUS, status):
                return True
            intent.status = status
            db.commit()
            return True
        finally:
            db.close()

    def settle(self, intent_id: str, snapshot: OrderSnapshot, source: str) -> SettlementResult:
        db = self.session_factory()
        try:
            intent = db.get(PaymentIntentRecord, intent_id)
            if intent is None:
                raise UnknownIntent(f"No payment intent {intent_id}")
            if not snapshot.matches(snapshot_of(intent)):
                logger.warning("Rejected settlement for %s: order snapshot mismatch", intent_id)
                raise SnapshotMismatch(f"Order snapshot does not match intent {intent_id}")

            existing = db.get(SettlementRecord, intent_id)
            if existing is not None:
                return _result(existing, already_settled=True)

            record = SettlementRecord(
                intent_id=intent_id,
                user_id=intent.user_id,
                kind=intent.kind,
                source=source,
            )
            if intent.kind == OrderKind.CREDIT_TOPUP.value:
                record.credits_granted = intent.credit_amount
            else:
                record.subscription_tier = intent.tier_id

            try:
                db.add(record)
                db.flush()
                self._apply(db, intent, record)
                db.commit()
            except IntegrityError:
                db.rollback()
                winner = db.get(SettlementRecord, intent_id, populate_existing=True)
                if winner is None:
                    raise
                logger.info("Settlement for %s already applied by a concurrent caller", intent_id)
                return _result(winner, already_settled=True)

            logger.info(
                "Settled %s via %s: %s credits, tier %s",
                intent_id, source, record.credits_granted, record.subscription_tier,
            )
            return _result(record, already_settled=False)
        finally:
            db.close()

    def settle_recorded(self, intent_id: str, source: str) -> SettlementResult:
        """Settle with the snapshot stored at intent creation."""
        intent = self.get_intent(intent_id)
        if intent is None:
            raise UnknownIntent(f"No payment intent {intent_id}")
        return self.settle(intent_id, snapshot_of(intent), source)

    def _apply(self, db, intent: PaymentIntentRecord, record: SettlementRecord):
        if record.credits_granted:
            db.add(CreditEntry(
                user_id=intent.user_id,
                amount=record.credits_granted,
                reason="CREDIT_PURCHASE",
                reference_id=intent.id,
            ))
        if record.subscription_tier:
            now = datetime.now(timezone.utc)
            db.add(Subscription(
                user_id=intent.user_id,
                tier_id=record.subscription_tier,
                intent_id=intent.id,
                status="ACTIVE",
                started_at=now,
                expires_at=now + SUBSCRIPTION_PERIOD,
            ))

    def get_settlement(self, intent_id: str) -> Optional[SettlementResult]:
        db = self.session_factory()
        try:
            record = db.get(SettlementRecord, intent_id)
            return _result(record, already_settled=True) if record else None
        finally:
            db.close()

    def balance(self, user_id: str) -> int:
        db = self.session_factory()
        try:
            total = db.scalar(select(func.coalesce(func.sum(CreditEntry.amount), 0)).where(CreditEntry.user_id == user_id))
            return int(total)
        finally:
            db.close()

    def entries(self, user_id: str, page: int = 1, per_page: int = 20) -> list:
        db = self.session_factory()
        try:
            rows = db.scalars(
                select(CreditEntry)
                .where(CreditEntry.user_id == user_id)
                .order_by(CreditEntry.id.desc())
                .offset((max(page, 1) - 1) * per_page)
                .limit(per_page)
            ).all()
            return [
                {
                    "id": row.id,
                    "amount": row.amount,
                    "reason": row.reason,
                    "reference_id": row.reference_id,
                    "created_at": row.created_at.isoformat(),
                }
                for row in rows
            ]
        finally:
            db.close()

    @staticmethod
    def _live_subscription(db, user_id: str, now: datetime) -> Optional[Subscription]:
        """Latest subscription still inside its paid period, cancelled or not."""
        return db.scalars(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
                Subscription.expires_at > now,
            )
            .order_by(Subscription.id.desc())
            .limit(1)
        ).first()

    def current_subscription(self, user_id: str, today: Optional[date] = None) -> Optional[dict]:
        now = datetime.now(timezone.utc)
        day = (today or now.date()).isoformat()
        db = self.session_factory()
        try:
            sub = self._live_subscription(db, user_id, now)
            if sub is None:
                return None
            claimed = db.get(DailyClaim, (user_id, day)) is not None
            return {
                "tier": sub.tier_id,
                "status": sub.status,
                "intent_id": sub.intent_id,
                "daily_credits": TIERS[sub.tier_id].daily_credits,
                "can_claim_today": not claimed,
                "started_at": sub.started_at.isoformat(),
                "expires_at": sub.expires_at.isoformat(),
                "cancelled_at": sub.cancelled_at.isoformat() if sub.cancelled_at else None,
                "days_remaining": max((_aware(sub.expires_at) - now).days, 0),
            }
        finally:
            db.close()

    def cancel_subscription(self, user_id: str) -> dict:
        """Daily credits stay claimable until the paid period ends."""
        now = datetime.now(timezone.utc)
        db = self.session_factory()
        try:
            sub = self._live_subscription(db, user_id, now)
            if sub is None or sub.status != "ACTIVE":
                raise NoActiveSubscription(f"No active subscription for {user_id}")
            sub.status = "CANCELLED"
            sub.cancelled_at = now
            db.commit()
            logger.info("Subscription %s (%s) cancelled by %s", sub.id, sub.tier_id, user_id)
        finally:
            db.close()
        return self.current_subscription(user_id)

    def claim_daily(self, user_id: str, today: Optional[date] = None) -> dict:
        now = datetime.now(timezone.utc)
        day = (today or now.date()).isoformat()
        db = self.session_factory()
        try:
            sub = self._live_subscription(db, user_id, now)
            if sub is None:
                raise NoActiveSubscription(f"No active subscription for {user_id}")
            credits = TIERS[sub.tier_id].daily_credits

            try:
                db.add(DailyClaim(user_id=user_id, claim_date=day, tier_id=sub.tier_id, credits=credits))
                db.flush()
                db.add(CreditEntry(
                    user_id=user_id,
                    amount=credits,
                    reason="DAILY_CLAIM",
                    reference_id=f"daily:{user_id}:{day}",
                ))
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DailyCreditsAlreadyClaimed(f"Daily credits for {day} already claimed")
        finally:
            db.close()

        logger.info("User %s claimed %s daily credits for %s", user_id, credits, day)
        return {"credited": credits, "claim_date": day, "new_balance": self.balance(user_id)}

    def unsettled_intents(self, older_than: timedelta = timedelta(minutes=10)) -> list:
        cutoff = datetime.now(timezone.utc) - older_than
        db = self.session_factory()
        try:
            return db.scalars(
                select(PaymentIntentRecord.id)
                .outerjoin(SettlementRecord, SettlementRecord.intent_id == PaymentIntentRecord.id)
                .where(
                    SettlementRecord.intent_id.is_(None),
                    PaymentIntentRecord.created_at <= cutoff,
                )
                .order_by(PaymentIntentRecord.created_at)
            ).all()
        finally:
            db.close()
