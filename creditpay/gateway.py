import enum
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from creditpay import config
from creditpay.errors import GatewayUnconfigured, IntentCreationFailed, ProcessorUnavailable
from creditpay.orders import Order

logger = logging.getLogger(__name__)


class ProcessorStatus(str, enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    PROCESSING = "PROCESSING"


STRIPE_STATUS = {
    "succeeded": ProcessorStatus.SUCCEEDED,
    "requires_action": ProcessorStatus.REQUIRES_ACTION,
    "requires_confirmation": ProcessorStatus.REQUIRES_ACTION,
    "requires_payment_method": ProcessorStatus.FAILED,
    "canceled": ProcessorStatus.FAILED,
    "processing": ProcessorStatus.PROCESSING,
}


@dataclass(frozen=True)
class IntentHandle:
    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class ConfirmResult:
    intent_id: str
    status: ProcessorStatus
    decline_reason: Optional[str] = None


def intent_id_from_secret(client_secret: str) -> str:
    intent_id, sep, _ = client_secret.partition("_secret_")
    if not sep or not intent_id:
        raise ValueError("Malformed client secret")
    return intent_id


def _decline_reason(intent) -> Optional[str]:
    error = getattr(intent, "last_payment_error", None)
    if not error:
        return None
    return getattr(error, "message", None) or "Payment failed. Please try again."


def _to_result(intent) -> ConfirmResult:
    status = STRIPE_STATUS.get(intent.status, ProcessorStatus.FAILED)
    reason = None
    if status == ProcessorStatus.FAILED:
        reason = _decline_reason(intent) or f"Payment {intent.status}"
    return ConfirmResult(intent_id=intent.id, status=status, decline_reason=reason)


class StripeGateway:
    def __init__(self, secret_key: str = None, publishable_key: str = None, webhook_secret: str = None):
        self.secret_key = secret_key if secret_key is not None else config.stripe_secret_key()
        self.publishable_key = publishable_key if publishable_key is not None else config.stripe_publishable_key()
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.stripe_webhook_secret()

    def _authenticate(self):
        if not self.secret_key:
            raise GatewayUnconfigured("Stripe secret key is not configured")
        stripe.api_key = self.secret_key

    def is_configured(self) -> bool:
        return bool(self.secret_key and self.publishable_key)

    def get_public_key(self) -> str:
        if not self.publishable_key:
            raise GatewayUnconfigured("Stripe publishable key is not configured")
        return self.publishable_key

    def create_intent(self, order: Order, user_id: str) -> IntentHandle:
        self._authenticate()
        if not order.requires_payment:
            raise IntentCreationFailed("Order has nothing to charge")

        try:
            intent = stripe.PaymentIntent.create(
                amount=order.charge_cents,
                currency=order.currency,
                automatic_payment_methods={"enabled": True},
                metadata={
                    "user_id": user_id,
                    "order_id": order.order_id,
                    "kind": order.kind.value,
                    "credit_amount": str(order.credit_amount),
                    "tier_id": order.tier_id or "",
                    "exchange_rate": str(order.exchange_rate_snapshot),
                },
                idempotency_key=order.order_id,
            )
        except stripe.StripeError as e:
            logger.warning("PaymentIntent creation failed for order %s: %s", order.order_id, e)
            raise IntentCreationFailed(getattr(e, "user_message", None) or str(e)) from e

        if not getattr(intent, "client_secret", None):
            raise IntentCreationFailed("Processor returned no client secret")

        logger.info("Created PaymentIntent %s for order %s", intent.id, order.order_id)
        return IntentHandle(intent_id=intent.id, client_secret=intent.client_secret)

    def confirm(self, client_secret: str, details: dict) -> ConfirmResult:
        self._authenticate()
        intent_id = intent_id_from_secret(client_secret)
        params = {"payment_method": details.get("payment_method")}
        if details.get("return_url"):
            params["return_url"] = details["return_url"]

        try:
            intent = stripe.PaymentIntent.confirm(intent_id, **params)
        except stripe.CardError as e:
            return ConfirmResult(
                intent_id=intent_id,
                status=ProcessorStatus.FAILED,
                decline_reason=e.user_message or "Your card was declined.",
            )
        except stripe.InvalidRequestError as e:
            return ConfirmResult(
                intent_id=intent_id,
                status=ProcessorStatus.FAILED,
                decline_reason=e.user_message or str(e),
            )
        except stripe.StripeError as e:
            logger.warning("Confirming %s failed at the processor: %s", intent_id, e)
            raise ProcessorUnavailable(str(e)) from e
        return _to_result(intent)

    def retrieve(self, intent_id: str) -> ConfirmResult:
        self._authenticate()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            raise ProcessorUnavailable(str(e)) from e
        return _to_result(intent)

    def construct_event(self, payload: bytes, signature: str):
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
