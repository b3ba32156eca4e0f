import os
import logging
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Settings live in the project-root .env; real environment variables win
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def stripe_secret_key():
    return os.getenv("STRIPE_SECRET_KEY")


def stripe_publishable_key():
    return os.getenv("STRIPE_PUBLISHABLE_KEY")


def stripe_webhook_secret():
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def jwt_secret():
    return os.getenv("JWT_SECRET")


def currency() -> str:
    return os.getenv("CURRENCY", "usd").lower()


def credits_per_unit() -> Decimal:
    return Decimal(os.getenv("CREDITS_PER_UNIT", "10"))


def buy_fee_rate() -> Decimal:
    return Decimal(os.getenv("BUY_FEE_RATE", "0.05"))


def min_credit_purchase() -> int:
    return int(os.getenv("MIN_CREDIT_PURCHASE", "5"))


def max_credit_purchase() -> int:
    return int(os.getenv("MAX_CREDIT_PURCHASE", "100000"))


def max_action_attempts() -> int:
    return int(os.getenv("MAX_ACTION_ATTEMPTS", "3"))


def settle_retry_wait() -> float:
    return float(os.getenv("SETTLE_RETRY_WAIT", "0.5"))


def checkout_session_ttl() -> timedelta:
    return timedelta(minutes=int(os.getenv("CHECKOUT_SESSION_TTL_MINUTES", "60")))


def checkout_session_max_age() -> timedelta:
    return timedelta(minutes=int(os.getenv("CHECKOUT_SESSION_MAX_AGE_MINUTES", "1440")))


def admin_user_ids() -> set:
    return {uid.strip() for uid in os.getenv("ADMIN_USER_IDS", "").split(",") if uid.strip()}


def configure_logging():
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
