"""Operator entry point: settle paid intents that neither path settled."""
import argparse
import logging
from datetime import timedelta

from creditpay.config import configure_logging
from creditpay.database import Base, engine, SessionLocal
from creditpay.gateway import StripeGateway
from creditpay.ledger import CreditLedger
from creditpay.reconciler import sweep_unsettled

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile unsettled payment intents")
    parser.add_argument("--older-than", type=int, default=10, help="minutes since intent creation")
    args = parser.parse_args(argv)

    configure_logging()
    Base.metadata.create_all(bind=engine)
    summary = sweep_unsettled(StripeGateway(), CreditLedger(SessionLocal), timedelta(minutes=args.older_than))
    return 1 if summary["degraded"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
