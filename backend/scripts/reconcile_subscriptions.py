#!/usr/bin/env python3
"""
Reconcile Stripe subscriptions with student records.

Applies every subscription of a program's Stripe account to the students of
its customer, exactly like a customer.subscription.updated webhook would.
Use it after missed webhooks or when onboarding existing subscriptions.

Usage:
    # Preview what would be linked
    python reconcile_subscriptions.py --program dugsi --dry-run

    # Reconcile active Mahad subscriptions
    python reconcile_subscriptions.py --program mahad --status active
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tuition_billing.core.config import Program, settings
from tuition_billing.core.logging import setup_logging
from tuition_billing.db.session import SessionLocal
from tuition_billing.services.reconciliation_service import (
    LINKED, UNMATCHED, SKIPPED, ERROR,
    reconcile_subscriptions, export_unmatched
)
from tuition_billing.services.stripe_service import build_stripe_accounts, list_subscriptions


def main():
    parser = argparse.ArgumentParser(description="Reconcile Stripe subscriptions with student records")
    parser.add_argument("--program", required=True, choices=["dugsi", "mahad"], help="Program whose Stripe account to read")
    parser.add_argument("--status", default="active", help="Stripe subscription status filter (default: active, 'all' for every status)")
    parser.add_argument("--dry-run", action="store_true", help="Report matches without writing anything")
    parser.add_argument("--output-dir", default=".", help="Directory for the unmatched CSV")
    args = parser.parse_args()

    setup_logging()
    program = Program(args.program.upper())
    account = build_stripe_accounts(settings)[program]
    if account.client is None:
        print(f"❌ Stripe secret key for {program.value} is not configured")
        return 1

    print("=" * 60)
    print(f"Subscription reconciliation: {program.value}{' (DRY RUN)' if args.dry_run else ''}")
    print("=" * 60)

    db = SessionLocal()
    try:
        results = reconcile_subscriptions(
            list_subscriptions(account.client, status=args.status),
            program,
            db,
            dry_run=args.dry_run
        )
    finally:
        db.close()

    for r in results:
        if r.result == LINKED:
            print(f"✅ {r.subscription_id}: linked {r.updated} students ({r.customer_id})")
        elif r.result == UNMATCHED:
            print(f"⚠️  {r.subscription_id}: {r.reason}")
        elif r.result == ERROR:
            print(f"❌ {r.subscription_id}: {r.reason}")
        else:
            print(f"⏭️  {r.subscription_id}: skipped ({r.reason})")

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    print(f"Total processed:  {len(results)}")
    for label, key in (("Linked", LINKED), ("Unmatched", UNMATCHED), ("Skipped", SKIPPED), ("Errors", ERROR)):
        print(f"{label + ':':<18}{sum(1 for r in results if r.result == key)}")

    csv_file = export_unmatched(results, args.output_dir)
    if csv_file:
        print(f"\nUnmatched exported to: {csv_file}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
