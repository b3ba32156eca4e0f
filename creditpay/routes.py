import dataclasses
import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from creditpay import config
from creditpay.auth import verify_admin, verify_token
from creditpay.database import SessionLocal
from creditpay.errors import SessionNotFound, UnknownIntent, PaymentNotSucceeded
from creditpay.gateway import StripeGateway, ProcessorStatus
from creditpay.ledger import CreditLedger, snapshot_of
from creditpay.orders import ExchangeRateSource, PricingResolver, PurchaseRequest, OrderKind
from creditpay.reconciler import CheckoutSessionStore, SettlementReconciler

logger = logging.getLogger(__name__)

router = APIRouter()

checkout_sessions = CheckoutSessionStore(
    ttl=config.checkout_session_ttl(),
    max_age=config.checkout_session_max_age(),
)
exchange_rate = ExchangeRateSource(config.credits_per_unit())


def get_ledger() -> CreditLedger:
    return CreditLedger(SessionLocal)


def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_resolver() -> PricingResolver:
    return PricingResolver(
        exchange_rate,
        buy_fee_rate=config.buy_fee_rate(),
        min_credits=config.min_credit_purchase(),
        max_credits=config.max_credit_purchase(),
        currency=config.currency(),
    )


def get_reconciler(
    gateway: StripeGateway = Depends(get_gateway),
    ledger: CreditLedger = Depends(get_ledger),
    resolver: PricingResolver = Depends(get_resolver),
) -> SettlementReconciler:
    return SettlementReconciler(
        gateway,
        ledger,
        resolver,
        checkout_sessions,
        max_action_attempts=config.max_action_attempts(),
        settle_retry_wait=config.settle_retry_wait(),
    )


class CreditCheckoutRequest(BaseModel):
    credit_amount: int = Field(..., gt=0)


class SubscriptionCheckoutRequest(BaseModel):
    tier: str


class SubmitPaymentRequest(BaseModel):
    payment_method: str
    return_url: Optional[str] = None


class ConfirmSettlementRequest(BaseModel):
    payment_intent_id: str
    credit_amount: Optional[int] = None
    tier: Optional[str] = None


class ExchangeRateUpdate(BaseModel):
    rate: Decimal = Field(..., gt=0)


def _own_session(reconciler: SettlementReconciler, handle: str, user_id: str):
    session = reconciler.get_session(handle)
    if session.user_id != user_id:
        raise SessionNotFound(f"No checkout session {handle}")
    return session


def _checkout_view(session) -> dict:
    data = session.view()
    if session.client_secret and not session.is_terminal:
        data["client_secret"] = session.client_secret
        data["publishable_key"] = session.publishable_key
    return data


@router.get("/stripe/status")
def stripe_status(gateway: StripeGateway = Depends(get_gateway)):
    return {"enabled": gateway.is_configured()}


@router.get("/stripe/publishable-key")
def publishable_key(gateway: StripeGateway = Depends(get_gateway)):
    return {"publishable_key": gateway.get_public_key()}


@router.get("/exchange/rate")
def current_rate(resolver: PricingResolver = Depends(get_resolver)):
    return resolver.quote()


@router.put("/exchange/rate")
def update_rate(
    request: ExchangeRateUpdate,
    admin_id: str = Depends(verify_admin),
    resolver: PricingResolver = Depends(get_resolver),
):
    # Orders already priced keep the rate they captured
    resolver.rate_source.update(request.rate)
    logger.info("Exchange rate set to %s by %s", resolver.rate_source.current(), admin_id)
    return resolver.quote()


@router.get("/subscriptions/tiers")
def subscription_tiers(resolver: PricingResolver = Depends(get_resolver)):
    return resolver.tier_catalog()


@router.post("/checkout/credits")
def checkout_credits(
    request: CreditCheckoutRequest,
    user_id: str = Depends(verify_token),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    purchase = PurchaseRequest(kind=OrderKind.CREDIT_TOPUP, credit_amount=request.credit_amount)
    return _checkout_view(reconciler.begin_checkout(user_id, purchase))


@router.post("/checkout/subscriptions")
def checkout_subscription(
    request: SubscriptionCheckoutRequest,
    user_id: str = Depends(verify_token),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    purchase = PurchaseRequest(kind=OrderKind.SUBSCRIPTION_ACTIVATION, tier_id=request.tier.upper())
    return _checkout_view(reconciler.begin_checkout(user_id, purchase))


@router.get("/checkout/{handle}")
def checkout_status(
    handle: str,
    user_id: str = Depends(verify_token),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    return _own_session(reconciler, handle, user_id).view()


@router.post("/checkout/{handle}/submit")
def submit_payment(
    handle: str,
    request: SubmitPaymentRequest,
    user_id: str = Depends(verify_token),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    _own_session(reconciler, handle, user_id)
    outcome = reconciler.submit_payment(handle, request.model_dump())
    return outcome.as_dict()


@router.post("/checkout/{handle}/refresh")
def refresh_payment(
    handle: str,
    user_id: str = Depends(verify_token),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    _own_session(reconciler, handle, user_id)
    return reconciler.refresh(handle).as_dict()


@router.post("/checkout/{handle}/retry")
def retry_checkout(
    handle: str,
    user_id: str = Depends(verify_token),
    reconciler: SettlementReconciler = Depends(get_reconciler),
):
    _own_session(reconciler, handle, user_id)
    return _checkout_view(reconciler.retry_checkout(handle))


@router.post("/settlements/confirm")
def confirm_settlement(
    request: ConfirmSettlementRequest,
    user_id: str = Depends(verify_token),
    gateway: StripeGateway = Depends(get_gateway),
    ledger: CreditLedger = Depends(get_ledger),
):
    intent = ledger.get_intent(request.payment_intent_id)
    if intent is None or intent.user_id != user_id:
        raise UnknownIntent(f"No payment intent {request.payment_intent_id}")

    status = gateway.retrieve(intent.id)
    if status.status != ProcessorStatus.SUCCEEDED:
        raise PaymentNotSucceeded(f"Payment intent {intent.id} is {status.status.value}")

    claimed = snapshot_of(intent)
    if request.credit_amount is not None:
        claimed = dataclasses.replace(claimed, credit_amount=request.credit_amount)
    if request.tier is not None:
        claimed = dataclasses.replace(claimed, tier_id=request.tier.upper())

    ledger.mark_status(intent.id, "succeeded")
    return ledger.settle(intent.id, claimed, source="client").as_dict()


@router.get("/credits/balance")
def credit_balance(user_id: str = Depends(verify_token), ledger: CreditLedger = Depends(get_ledger)):
    return {"balance": ledger.balance(user_id)}


@router.get("/credits/ledger")
def credit_ledger(page: int = 1, user_id: str = Depends(verify_token), ledger: CreditLedger = Depends(get_ledger)):
    return {"page": page, "entries": ledger.entries(user_id, page=page)}


@router.get("/subscriptions/current")
def current_subscription(user_id: str = Depends(verify_token), ledger: CreditLedger = Depends(get_ledger)):
    return {"subscription": ledger.current_subscription(user_id)}


@router.post("/subscriptions/cancel")
def cancel_subscription(user_id: str = Depends(verify_token), ledger: CreditLedger = Depends(get_ledger)):
    return {"subscription": ledger.cancel_subscription(user_id)}


@router.post("/subscriptions/claim-daily")
def claim_daily_credits(user_id: str = Depends(verify_token), ledger: CreditLedger = Depends(get_ledger)):
    return ledger.claim_daily(user_id)
