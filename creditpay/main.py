import logging

import stripe
from fastapi import FastAPI, Request, Header, HTTPException, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from creditpay.config import configure_logging
from creditpay.database import Base, engine
from creditpay.errors import CheckoutError, SettlementRejected
from creditpay.gateway import StripeGateway
from creditpay.ledger import CreditLedger
from creditpay.monitoring import report_settlement_degraded
from creditpay.routes import router, get_gateway, get_ledger

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Credit Settlement Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)

INTENT_STATUS_EVENTS = {
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "failed",
    "payment_intent.processing": "processing",
    "payment_intent.requires_action": "requires_action",
}


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code.value, "detail": exc.message},
    )


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    gateway: StripeGateway = Depends(get_gateway),
    ledger: CreditLedger = Depends(get_ledger),
):
    payload = await request.body()

    try:
        event = gateway.construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    intent_id = event["data"]["object"]["id"]

    try:
        if event_type == "payment_intent.succeeded":
            settle_from_notification(ledger, intent_id)
        elif event_type in INTENT_STATUS_EVENTS:
            ledger.mark_status(intent_id, INTENT_STATUS_EVENTS[event_type])
    except SQLAlchemyError as e:
        report_settlement_degraded(intent_id, f"notification: {e}")
        raise HTTPException(status_code=500, detail="Settlement deferred")

    return {"ok": True}


def settle_from_notification(ledger: CreditLedger, intent_id: str):
    if not ledger.mark_status(intent_id, "succeeded"):
        logger.warning("Webhook for unknown payment intent %s ignored", intent_id)
        return
    try:
        result = ledger.settle_recorded(intent_id, source="notification")
    except SettlementRejected:
        logger.error("Ledger rejected webhook settlement for %s", intent_id, exc_info=True)
        return
    if result.already_settled:
        logger.info("Webhook for %s found it already settled", intent_id)
