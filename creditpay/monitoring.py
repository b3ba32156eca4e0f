import logging
import threading

from creditpay.errors import ErrorCode

alert_logger = logging.getLogger("creditpay.alerts")

_lock = threading.Lock()
_degraded = []


def report_settlement_degraded(intent_id: str, reason: str):
    """Escalate a paid-but-unsettled intent for manual reconciliation."""
    with _lock:
        _degraded.append(intent_id)
    alert_logger.critical(
        "%s intent_id=%s reason=%s",
        ErrorCode.SETTLEMENT_DEGRADED.value,
        intent_id,
        reason,
        extra={"intent_id": intent_id, "alert": ErrorCode.SETTLEMENT_DEGRADED.value},
    )


def degraded_intents() -> list:
    with _lock:
        return list(_degraded)


def reset():
    with _lock:
        _degraded.clear()
