"""Bulk reconciliation of Stripe subscriptions with student records"""
import csv
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tuition_billing.core.config import Program
from tuition_billing.models.student import Student
from tuition_billing.models.subscription import SubscriptionStatus
from tuition_billing.schemas.webhooks import StripeSubscription
from tuition_billing.services.stripe_service import extract_customer_id, to_plain_dict
from tuition_billing.services.subscription_service import (
    parse_subscription_status,
    sync_subscription_snapshot,
)

logger = logging.getLogger(__name__)

LINKED = "linked"
UNMATCHED = "unmatched"
SKIPPED = "skipped"
ERROR = "error"

CSV_FIELDS = ["subscription_id", "customer_id", "subscription_status", "result", "reason"]


@dataclass
class ReconciliationResult:
    subscription_id: Optional[str]
    customer_id: Optional[str]
    subscription_status: Optional[str]
    result: str
    reason: str = ""
    updated: int = 0


def reconcile_subscription(raw: Any, program: Program, db: Session, dry_run: bool = False) -> ReconciliationResult:
    """Apply one Stripe subscription snapshot the same way the webhook does"""
    data = to_plain_dict(raw)
    try:
        subscription = StripeSubscription.model_validate(data)
    except ValidationError as e:
        return ReconciliationResult(data.get("id"), None, data.get("status"), ERROR, f"Invalid subscription: {e}")

    customer_id = extract_customer_id(subscription.customer)
    result = ReconciliationResult(subscription.id, customer_id, subscription.status, LINKED)

    if not customer_id:
        result.result, result.reason = UNMATCHED, "Invalid or missing customer ID in subscription"
        return result

    status = parse_subscription_status(subscription.status)
    if status is None:
        result.result, result.reason = ERROR, f"Invalid subscription status: {subscription.status}"
        return result
    if status == SubscriptionStatus.CANCELED:
        result.result, result.reason = SKIPPED, "canceled subscription"
        return result

    if dry_run:
        count = db.query(Student).filter(
            Student.stripe_customer_id == customer_id,
            Student.program == program.value
        ).count()
        if count == 0:
            result.result, result.reason = UNMATCHED, f"No students found for customer {customer_id}"
        else:
            result.reason, result.updated = "dry_run", count
        return result

    try:
        updated = sync_subscription_snapshot(subscription, customer_id, status, program, db)
    except SQLAlchemyError as e:
        logger.error(f"Failed to reconcile subscription {subscription.id}: {e}", exc_info=True)
        result.result, result.reason = ERROR, str(e)
        return result

    if updated == 0:
        result.result, result.reason = UNMATCHED, f"No students found for customer {customer_id}"
    else:
        result.updated = updated
    return result


def reconcile_subscriptions(
    subscriptions: Iterable[Any],
    program: Program,
    db: Session,
    dry_run: bool = False
) -> List[ReconciliationResult]:
    results = []
    for raw in subscriptions:
        result = reconcile_subscription(raw, program, db, dry_run=dry_run)
        logger.info(f"{result.subscription_id}: {result.result} {result.reason}".rstrip())
        results.append(result)
    return results


def export_unmatched(results: List[ReconciliationResult], output_dir: str = ".") -> Optional[str]:
    """Write unmatched and failed subscriptions to a timestamped CSV.

    Returns:
        Path of the written file, or None when everything matched
    """
    unmatched = [r for r in results if r.result in (UNMATCHED, ERROR)]
    if not unmatched:
        return None

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    path = os.path.join(output_dir, f"reconciliation-unmatched-{timestamp}.csv")
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for r in unmatched:
            writer.writerow({
                "subscription_id": r.subscription_id,
                "customer_id": r.customer_id,
                "subscription_status": r.subscription_status,
                "result": r.result,
                "reason": r.reason,
            })
    return path
