#!/usr/bin/env python3
"""
Re-initiate a failed Paystack payout.

Usage:
    # Retry one payout by its Payment id
    python retry_failed_payout.py --payment-id 5b0c...

    # List failed payouts for a creator
    python retry_failed_payout.py --creator-email creator@example.com --list
"""

import argparse
import os
import sys

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from creatorpay.core.exceptions import CreatorPayError
from creatorpay.core.logging import setup_logging
from creatorpay.db.session import SessionLocal
from creatorpay.models import Payment, User
from creatorpay.models.payment import TYPE_PAYOUT, STATUS_FAILED
from creatorpay.services.payout_service import PayoutRetryError, retry_failed_payout
from creatorpay.services.webhook_services import get_webhook_services


def list_failed_payouts(email: str) -> bool:
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email.strip().lower()).first()
        if not user:
            print(f"❌ User not found: {email}")
            return False

        payouts = db.query(Payment).filter(
            Payment.creator_id == user.id,
            Payment.type == TYPE_PAYOUT,
            Payment.status == STATUS_FAILED,
        ).order_by(Payment.created_at.desc()).all()

        if not payouts:
            print(f"ℹ️  No failed payouts for {email}")
            return True

        for payout in payouts:
            print(
                f"{payout.id}  {payout.amount_cents} {payout.currency}  "
                f"{payout.paystack_transaction_ref or payout.stripe_payout_id}  {payout.failure_reason}"
            )
        return True
    finally:
        db.close()


def retry(payment_id: str) -> bool:
    db = SessionLocal()
    try:
        payout = retry_failed_payout(db, get_webhook_services(), payment_id)
        print(f"✅ Retried as {payout.paystack_transaction_ref}: {payout.status}")
        return payout.status != STATUS_FAILED
    except (PayoutRetryError, CreatorPayError) as e:
        print(f"❌ {e}")
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Retry failed Paystack payouts")
    parser.add_argument("--payment-id", help="Payment id of the failed payout")
    parser.add_argument("--creator-email", help="Creator email (with --list)")
    parser.add_argument("--list", action="store_true", help="List failed payouts for --creator-email")
    args = parser.parse_args()

    setup_logging()

    if args.list:
        if not args.creator_email:
            parser.error("--list requires --creator-email")
        ok = list_failed_payouts(args.creator_email)
    elif args.payment_id:
        ok = retry(args.payment_id)
    else:
        parser.error("Provide --payment-id or --creator-email with --list")
        return

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
