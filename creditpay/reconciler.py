"""
Settlement reconciler.

Drives one checkout from intent creation through payment confirmation to
ledger settlement. The processor's success is what the buyer sees; the
ledger grant happens through ``CreditLedger.settle`` from this client path
and, independently, from the Stripe webhook. Either may arrive first.
"""
import enum
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from tenacity import Retrying, stop_after_attempt, wait_fixed, retry_if_not_exception_type

from creditpay.errors import (
    ErrorCode,
    InvalidTransition,
    SessionNotFound,
    SettlementRejected,
    ProcessorUnavailable,
)
from creditpay.gateway import ProcessorStatus
from creditpay.ledger import CreditLedger, SettlementResult
from creditpay.monitoring import report_settlement_degraded
from creditpay.orders import Order, PricingResolver, PurchaseRequest

logger = logging.getLogger(__name__)


class IntentState(str, enum.Enum):
    CREATED = "CREATED"
    AWAITING_PAYMENT_METHOD = "AWAITING_PAYMENT_METHOD"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REQUIRES_ACTION = "REQUIRES_ACTION"


class LedgerState(str, enum.Enum):
    UNSETTLED = "UNSETTLED"
    SETTLED = "SETTLED"


TRANSITIONS = {
    IntentState.CREATED: {IntentState.AWAITING_PAYMENT_METHOD, IntentState.SUCCEEDED},
    IntentState.AWAITING_PAYMENT_METHOD: {IntentState.PROCESSING},
    IntentState.PROCESSING: {IntentState.SUCCEEDED, IntentState.FAILED, IntentState.REQUIRES_ACTION},
    IntentState.REQUIRES_ACTION: {IntentState.AWAITING_PAYMENT_METHOD, IntentState.FAILED},
    IntentState.SUCCEEDED: set(),
    IntentState.FAILED: set(),
}

# Mirror written to payment_intents.status
PROCESSOR_MIRROR = {
    IntentState.PROCESSING: "processing",
    IntentState.REQUIRES_ACTION: "requires_action",
    IntentState.SUCCEEDED: "succeeded",
    IntentState.FAILED: "failed",
}


@dataclass
class CheckoutSession:
    user_id: str
    purchase: PurchaseRequest
    order: Optional[Order] = None
    intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    publishable_key: Optional[str] = None
    state: IntentState = IntentState.CREATED
    ledger_state: LedgerState = LedgerState.UNSETTLED
    decline_reason: Optional[str] = None
    action_attempts: int = 0
    settlement: Optional[SettlementResult] = None
    handle: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    history: list = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)

    def transition(self, target: IntentState):
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target)
        logger.debug("Checkout %s: %s -> %s", self.handle, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    def view(self) -> dict:
        order = self.order
        data = {
            "session_id": self.handle,
            "state": self.state.value,
            "ledger_state": self.ledger_state.value,
            "payment_intent_id": self.intent_id,
            "decline_reason": self.decline_reason,
            "kind": self.purchase.kind.value,
        }
        if order is not None:
            data.update({
                "amount": str(order.charge_amount),
                "base": str(order.base_amount),
                "fee": str(order.fee_amount),
                "rate": str(order.exchange_rate_snapshot),
                "currency": order.currency,
                "credit_amount": order.credit_amount,
                "tier": order.tier_id,
            })
        return data


class OutcomeStatus(str, enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    PROCESSING = "PROCESSING"


STATE_OUTCOME = {
    IntentState.REQUIRES_ACTION: OutcomeStatus.REQUIRES_ACTION,
    IntentState.PROCESSING: OutcomeStatus.PROCESSING,
    IntentState.SUCCEEDED: OutcomeStatus.SUCCEEDED,
    IntentState.FAILED: OutcomeStatus.FAILED,
}

OUTCOME_CODES = {
    OutcomeStatus.FAILED: ErrorCode.PAYMENT_DECLINED,
    OutcomeStatus.REQUIRES_ACTION: ErrorCode.REQUIRES_ACTION,
}


@dataclass(frozen=True)
class PaymentOutcome:
    status: OutcomeStatus
    intent_id: str
    decline_reason: Optional[str] = None
    settled: bool = False
    credits_granted: int = 0
    subscription_activated: Optional[str] = None

    @property
    def code(self) -> Optional[ErrorCode]:
        return OUTCOME_CODES.get(self.status)

    def as_dict(self):
        return {
            "status": self.status.value,
            "code": self.code.value if self.code else None,
            "payment_intent_id": self.intent_id,
            "decline_reason": self.decline_reason,
            "settled": self.settled,
            "credits_granted": self.credits_granted,
            "subscription_activated": self.subscription_activated,
        }


class CheckoutSessionStore:
    """
    In-process registry of checkout sessions, oldest first.

    Finished sessions are dropped once they are older than ``ttl``;
    abandoned ones once they are older than ``max_age``. Pruning runs on
    every ``add``. Nothing is lost from the ledger: an evicted session only
    stops being addressable by its handle.
    """

    def __init__(self, ttl: timedelta = timedelta(hours=1), max_age: timedelta = timedelta(hours=24)):
        self.ttl = ttl
        self.max_age = max(max_age, ttl)
        self._lock = threading.Lock()
        self._sessions = OrderedDict()

    def add(self, session: CheckoutSession):
        with self._lock:
            self._prune(datetime.now(timezone.utc))
            self._sessions[session.handle] = session

    def _prune(self, now: datetime):
        for handle, session in list(self._sessions.items()):
            age = now - session.created_at
            if age < self.ttl:
                break
            if session.is_terminal or age >= self.max_age:
                del self._sessions[handle]
                logger.debug("Evicted checkout %s in state %s", handle, session.state.value)

    def get(self, handle: str) -> CheckoutSession:
        with self._lock:
            session = self._sessions.get(handle)
        if session is None:
            raise SessionNotFound(f"No checkout session {handle}")
        return session

    def __len__(self):
        with self._lock:
            return len(self._sessions)


class SettlementReconciler:
    def __init__(
        self,
        gateway,
        ledger: CreditLedger,
        resolver: PricingResolver,
        sessions: CheckoutSessionStore = None,
        max_action_attempts: int = 3,
        settle_attempts: int = 2,
        settle_retry_wait: float = 0.5,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.resolver = resolver
        self.sessions = sessions if sessions is not None else CheckoutSessionStore()
        self.max_action_attempts = max_action_attempts
        self.settle_attempts = settle_attempts
        self.settle_retry_wait = settle_retry_wait

    def get_session(self, handle: str) -> CheckoutSession:
        return self.sessions.get(handle)

    def begin_checkout(self, user_id: str, purchase: PurchaseRequest) -> CheckoutSession:
        session = CheckoutSession(user_id=user_id, purchase=purchase)
        session.order = self.resolver.price(purchase)

        if not session.order.requires_payment:
            self._settle_without_payment(session)
            self.sessions.add(session)
            return session

        session.publishable_key = self.gateway.get_public_key()
        handle = self.gateway.create_intent(session.order, user_id)
        self.ledger.record_intent(handle.intent_id, user_id, session.order)

        session.intent_id = handle.intent_id
        session.client_secret = handle.client_secret
        session.transition(IntentState.AWAITING_PAYMENT_METHOD)
        self.sessions.add(session)
        logger.info("Checkout %s awaiting payment for intent %s", session.handle, handle.intent_id)
        return session

    def _settle_without_payment(self, session: CheckoutSession):
        intent_id = f"nopay_{uuid.uuid4().hex}"
        self.ledger.record_intent(intent_id, session.user_id, session.order, status="succeeded")
        session.intent_id = intent_id
        session.settlement = self.ledger.settle(intent_id, session.order.snapshot(), source="no_payment")
        session.ledger_state = LedgerState.SETTLED
        session.transition(IntentState.SUCCEEDED)
        logger.info("Checkout %s needs no payment; settled as %s", session.handle, intent_id)

    def submit_payment(self, handle: str, details: dict) -> PaymentOutcome:
        session = self.sessions.get(handle)
        with session.lock:
            if session.state == IntentState.REQUIRES_ACTION:
                session.transition(IntentState.AWAITING_PAYMENT_METHOD)
            if session.state != IntentState.AWAITING_PAYMENT_METHOD:
                raise InvalidTransition(session.state, IntentState.PROCESSING)

            session.transition(IntentState.PROCESSING)
            self._mirror(session)
            try:
                result = self.gateway.confirm(session.client_secret, details)
            except ProcessorUnavailable:
                logger.warning("Checkout %s left PROCESSING, processor unreachable", session.handle)
                raise
            return self._apply(session, result.status, result.decline_reason)

    def refresh(self, handle: str) -> PaymentOutcome:
        """Poll the processor for a checkout still in PROCESSING."""
        session = self.sessions.get(handle)
        with session.lock:
            if session.state not in STATE_OUTCOME:
                # Nothing was submitted yet
                raise InvalidTransition(session.state, IntentState.PROCESSING)
            if session.state != IntentState.PROCESSING:
                return self._outcome(session)
            result = self.gateway.retrieve(session.intent_id)
            return self._apply(session, result.status, result.decline_reason)

    def retry_checkout(self, handle: str) -> CheckoutSession:
        """Start over with a freshly priced order and a new intent."""
        previous = self.sessions.get(handle)
        if previous.state != IntentState.FAILED:
            raise InvalidTransition(previous.state, IntentState.CREATED)
        session = self.begin_checkout(previous.user_id, previous.purchase)
        logger.info("Checkout %s retried as %s (intent %s)", handle, session.handle, session.intent_id)
        return session

    def _apply(self, session: CheckoutSession, status: ProcessorStatus, reason: Optional[str]) -> PaymentOutcome:
        if status == ProcessorStatus.PROCESSING:
            return self._outcome(session)

        if status == ProcessorStatus.SUCCEEDED:
            session.transition(IntentState.SUCCEEDED)
            self._mirror(session)
            self._settle_client_path(session)
        elif status == ProcessorStatus.REQUIRES_ACTION:
            session.transition(IntentState.REQUIRES_ACTION)
            session.action_attempts += 1
            if session.action_attempts > self.max_action_attempts:
                session.decline_reason = "Additional authentication was not completed"
                session.transition(IntentState.FAILED)
            self._mirror(session)
        else:
            session.decline_reason = reason or "Payment failed. Please try again."
            session.transition(IntentState.FAILED)
            self._mirror(session)
            logger.info("Checkout %s declined: %s", session.handle, session.decline_reason)
        return self._outcome(session)

    def _mirror(self, session: CheckoutSession):
        status = PROCESSOR_MIRROR.get(session.state)
        if status is None:
            return
        try:
            self.ledger.mark_status(session.intent_id, status)
        except SQLAlchemyError:
            logger.exception("Could not record status %s for intent %s", status, session.intent_id)

    def _settle_client_path(self, session: CheckoutSession):
        retrying = Retrying(
            stop=stop_after_attempt(self.settle_attempts),
            wait=wait_fixed(self.settle_retry_wait),
            retry=retry_if_not_exception_type(SettlementRejected),
            reraise=True,
        )
        try:
            session.settlement = retrying(
                self.ledger.settle, session.intent_id, session.order.snapshot(), "client"
            )
        except SettlementRejected:
            logger.error("Ledger rejected client-path settlement for %s", session.intent_id, exc_info=True)
            return
        except Exception:
            logger.warning(
                "Client-path settlement for %s failed; deferring to webhook", session.intent_id, exc_info=True,
            )
            return
        session.ledger_state = LedgerState.SETTLED

    def _outcome(self, session: CheckoutSession) -> PaymentOutcome:
        settlement = session.settlement
        return PaymentOutcome(
            status=STATE_OUTCOME[session.state],
            intent_id=session.intent_id,
            decline_reason=session.decline_reason,
            settled=session.ledger_state == LedgerState.SETTLED,
            credits_granted=settlement.credits_granted if settlement else 0,
            subscription_activated=settlement.subscription_activated if settlement else None,
        )


def sweep_unsettled(gateway, ledger: CreditLedger, older_than: timedelta = timedelta(minutes=10)) -> dict:
    """
    Settle intents the processor reports as paid but neither path settled.

    Returns counts of settled, failed and still-pending intents. Ledger
    errors on a paid intent are escalated as SETTLEMENT_DEGRADED.
    """
    summary = {"settled": 0, "failed": 0, "pending": 0, "degraded": 0}
    for intent_id in ledger.unsettled_intents(older_than):
        try:
            result = gateway.retrieve(intent_id)
        except ProcessorUnavailable:
            logger.warning("Sweep could not retrieve %s", intent_id)
            summary["pending"] += 1
            continue

        if result.status == ProcessorStatus.SUCCEEDED:
            try:
                ledger.mark_status(intent_id, "succeeded")
                ledger.settle_recorded(intent_id, source="sweep")
            except SQLAlchemyError as e:
                report_settlement_degraded(intent_id, f"sweep: {e}")
                summary["degraded"] += 1
                continue
            summary["settled"] += 1
        elif result.status == ProcessorStatus.FAILED:
            ledger.mark_status(intent_id, "failed")
            summary["failed"] += 1
        else:
            summary["pending"] += 1
    logger.info("Settlement sweep finished: %s", summary)
    return summary
