"""Checkout and settlement error taxonomy."""
import enum


class ErrorCode(str, enum.Enum):
    GATEWAY_UNCONFIGURED = "GATEWAY_UNCONFIGURED"
    INTENT_CREATION_FAILED = "INTENT_CREATION_FAILED"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    SETTLEMENT_DEGRADED = "SETTLEMENT_DEGRADED"
    INVALID_ORDER = "INVALID_ORDER"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    UNKNOWN_INTENT = "UNKNOWN_INTENT"
    SNAPSHOT_MISMATCH = "SNAPSHOT_MISMATCH"
    PAYMENT_NOT_SUCCEEDED = "PAYMENT_NOT_SUCCEEDED"
    PROCESSOR_UNAVAILABLE = "PROCESSOR_UNAVAILABLE"
    NO_ACTIVE_SUBSCRIPTION = "NO_ACTIVE_SUBSCRIPTION"
    DAILY_CREDITS_CLAIMED = "DAILY_CREDITS_CLAIMED"


class CheckoutError(Exception):
    code = None
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value


class GatewayUnconfigured(CheckoutError):
    """Operator misconfiguration; never retried."""
    code = ErrorCode.GATEWAY_UNCONFIGURED
    status_code = 503


class IntentCreationFailed(CheckoutError):
    """The order must be re-priced before another attempt."""
    code = ErrorCode.INTENT_CREATION_FAILED
    status_code = 502


class InvalidOrder(CheckoutError):
    code = ErrorCode.INVALID_ORDER
    status_code = 422


class InvalidTransition(CheckoutError):
    code = ErrorCode.INVALID_TRANSITION
    status_code = 409

    def __init__(self, current, target):
        super().__init__(f"Cannot move checkout from {current.value} to {target.value}")
        self.current = current
        self.target = target


class SessionNotFound(CheckoutError):
    code = ErrorCode.SESSION_NOT_FOUND
    status_code = 404


class SettlementRejected(CheckoutError):
    """Base for settlement attempts the ledger refuses outright."""
    status_code = 409


class UnknownIntent(SettlementRejected):
    code = ErrorCode.UNKNOWN_INTENT
    status_code = 404


class SnapshotMismatch(SettlementRejected):
    code = ErrorCode.SNAPSHOT_MISMATCH


class PaymentNotSucceeded(SettlementRejected):
    code = ErrorCode.PAYMENT_NOT_SUCCEEDED


class ProcessorUnavailable(CheckoutError):
    """The processor could not be reached; the intent outcome is unknown."""
    code = ErrorCode.PROCESSOR_UNAVAILABLE
    status_code = 503


class NoActiveSubscription(CheckoutError):
    code = ErrorCode.NO_ACTIVE_SUBSCRIPTION
    status_code = 404


class DailyCreditsAlreadyClaimed(CheckoutError):
    code = ErrorCode.DAILY_CREDITS_CLAIMED
    status_code = 409
