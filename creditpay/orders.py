"""
Order snapshots and the pricing resolver.

An Order is priced once, immediately before a payment intent is created,
and never changes afterwards. The exchange rate captured here is the one
settlement uses, whatever the live rate is by the time the payment lands.
"""
import enum
import threading
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from creditpay.errors import InvalidOrder

CENT = Decimal("0.01")
# Same scale as payment_intents.exchange_rate
RATE_PLACES = Decimal("0.000001")


class OrderKind(str, enum.Enum):
    CREDIT_TOPUP = "CREDIT_TOPUP"
    SUBSCRIPTION_ACTIVATION = "SUBSCRIPTION_ACTIVATION"


def to_cents(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


def _money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _rate(rate) -> Decimal:
    rate = Decimal(rate)
    rounded = rate.quantize(RATE_PLACES, rounding=ROUND_HALF_UP)
    return rate if rate == rounded else rounded


@dataclass(frozen=True)
class OrderSnapshot:
    """The part of an order the ledger checks before granting anything."""
    kind: OrderKind
    credit_amount: int
    tier_id: Optional[str]
    charge_amount: Decimal
    exchange_rate_snapshot: Decimal
    fee_amount: Decimal

    def matches(self, other: "OrderSnapshot") -> bool:
        return (
            self.kind == other.kind
            and self.credit_amount == other.credit_amount
            and (self.tier_id or None) == (other.tier_id or None)
            and _money(self.charge_amount) == _money(other.charge_amount)
            and _rate(self.exchange_rate_snapshot) == _rate(other.exchange_rate_snapshot)
            and _money(self.fee_amount) == _money(other.fee_amount)
        )


@dataclass(frozen=True)
class Order:
    kind: OrderKind
    charge_amount: Decimal
    exchange_rate_snapshot: Decimal
    fee_amount: Decimal = Decimal("0.00")
    credit_amount: int = 0
    tier_id: Optional[str] = None
    currency: str = "usd"
    order_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def base_amount(self) -> Decimal:
        return self.charge_amount - self.fee_amount

    @property
    def charge_cents(self) -> int:
        return to_cents(self.charge_amount)

    @property
    def requires_payment(self) -> bool:
        return self.charge_amount > 0

    def snapshot(self) -> OrderSnapshot:
        return OrderSnapshot(
            kind=self.kind,
            credit_amount=self.credit_amount,
            tier_id=self.tier_id,
            charge_amount=self.charge_amount,
            exchange_rate_snapshot=self.exchange_rate_snapshot,
            fee_amount=self.fee_amount,
        )


@dataclass(frozen=True)
class Tier:
    id: str
    name: str
    daily_credits: int
    price_credits: int

    @property
    def monthly_credits(self) -> int:
        return self.daily_credits * 30


TIERS = {
    "FREE": Tier("FREE", "Free", daily_credits=1, price_credits=0),
    "STARTER": Tier("STARTER", "Starter", daily_credits=5, price_credits=100),
    "PRO": Tier("PRO", "Pro", daily_credits=15, price_credits=250),
    "APEX": Tier("APEX", "Apex", daily_credits=40, price_credits=600),
}


@dataclass(frozen=True)
class PurchaseRequest:
    """What the buyer asked for, before pricing."""
    kind: OrderKind
    credit_amount: int = 0
    tier_id: Optional[str] = None


class ExchangeRateSource:
    """Live credits-per-currency-unit rate."""

    def __init__(self, rate: Decimal):
        self._lock = threading.Lock()
        self._rate = self._validate(rate)

    @staticmethod
    def _validate(rate) -> Decimal:
        rate = _rate(rate)
        if rate <= 0:
            raise ValueError("Exchange rate must be positive")
        return rate

    def current(self) -> Decimal:
        with self._lock:
            return self._rate

    def update(self, rate):
        with self._lock:
            self._rate = self._validate(rate)


class PricingResolver:
    def __init__(
        self,
        rate_source: ExchangeRateSource,
        buy_fee_rate: Decimal = Decimal("0.05"),
        min_credits: int = 5,
        max_credits: int = 100000,
        currency: str = "usd",
        tiers: dict = None,
    ):
        self.rate_source = rate_source
        self.buy_fee_rate = Decimal(buy_fee_rate)
        self.min_credits = min_credits
        self.max_credits = max_credits
        self.currency = currency
        self.tiers = tiers if tiers is not None else TIERS

    def price(self, purchase: PurchaseRequest) -> Order:
        if purchase.kind == OrderKind.CREDIT_TOPUP:
            return self.price_credit_topup(purchase.credit_amount)
        return self.price_subscription(purchase.tier_id)

    def price_credit_topup(self, credit_amount: int) -> Order:
        if not isinstance(credit_amount, int) or isinstance(credit_amount, bool):
            raise InvalidOrder("Credit amount must be a whole number")
        if credit_amount < self.min_credits:
            raise InvalidOrder(f"Minimum purchase is {self.min_credits} credits")
        if credit_amount > self.max_credits:
            raise InvalidOrder(f"Maximum purchase is {self.max_credits} credits")

        rate = self.rate_source.current()
        base = _money(Decimal(credit_amount) / rate)
        fee = _money(base * self.buy_fee_rate)
        return Order(
            kind=OrderKind.CREDIT_TOPUP,
            credit_amount=credit_amount,
            charge_amount=base + fee,
            exchange_rate_snapshot=rate,
            fee_amount=fee,
            currency=self.currency,
        )

    def price_subscription(self, tier_id: str) -> Order:
        tier = self.tiers.get((tier_id or "").upper())
        if tier is None:
            raise InvalidOrder(f"Unknown tier: {tier_id}")

        rate = self.rate_source.current()
        return Order(
            kind=OrderKind.SUBSCRIPTION_ACTIVATION,
            tier_id=tier.id,
            charge_amount=_money(Decimal(tier.price_credits) / rate),
            exchange_rate_snapshot=rate,
            fee_amount=Decimal("0.00"),
            currency=self.currency,
        )

    def quote(self) -> dict:
        rate = self.rate_source.current()
        return {
            "rate": str(rate),
            "buy_fee_rate": str(self.buy_fee_rate),
            "credit_price": str((Decimal(1) / rate).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)),
            "currency": self.currency,
            "min_credits": self.min_credits,
            "max_credits": self.max_credits,
        }

    def tier_catalog(self) -> list:
        rate = self.rate_source.current()
        return [
            {
                "id": tier.id,
                "name": tier.name,
                "daily_credits": tier.daily_credits,
                "monthly_credits": tier.monthly_credits,
                "price": str(_money(Decimal(tier.price_credits) / rate)),
                "currency": self.currency,
            }
            for tier in self.tiers.values()
        ]
