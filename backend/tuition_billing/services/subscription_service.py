"""Subscription reconciliation and cancellation for Stripe subscription events"""
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from tuition_billing.core.config import Program
from tuition_billing.db.session import transaction
from tuition_billing.models.billing_assignment import BillingAssignment
from tuition_billing.models.student import Student, StudentStatus
from tuition_billing.models.subscription import Subscription, SubscriptionStatus
from tuition_billing.schemas.webhooks import (
    HandlerResult,
    StripeSubscription,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
)
from tuition_billing.services.payment_service import calculate_dugsi_rate
from tuition_billing.services.stripe_service import (
    extract_customer_id,
    extract_period_dates,
    get_charged_amount,
)

logger = logging.getLogger(__name__)

# Membership status every subscription status maps to
MEMBERSHIP_STATUS_BY_SUBSCRIPTION_STATUS = {
    SubscriptionStatus.ACTIVE: StudentStatus.ENROLLED,
    SubscriptionStatus.PAST_DUE: StudentStatus.ENROLLED,  # Grace period, access is kept
    SubscriptionStatus.TRIALING: StudentStatus.REGISTERED,
    SubscriptionStatus.UNPAID: StudentStatus.WITHDRAWN,
    SubscriptionStatus.CANCELED: StudentStatus.WITHDRAWN,
    SubscriptionStatus.INCOMPLETE: StudentStatus.REGISTERED,
    SubscriptionStatus.INCOMPLETE_EXPIRED: StudentStatus.REGISTERED,
    SubscriptionStatus.PAUSED: StudentStatus.REGISTERED,
}


def parse_subscription_status(value: Any) -> Optional[SubscriptionStatus]:
    if not isinstance(value, str):
        return None
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def map_membership_status(status: SubscriptionStatus) -> StudentStatus:
    return MEMBERSHIP_STATUS_BY_SUBSCRIPTION_STATUS[status]


def _append_history(history: Optional[List[str]], subscription_id: str) -> List[str]:
    # New list so SQLAlchemy sees the JSON column change
    history = list(history or [])
    if subscription_id not in history:
        history.append(subscription_id)
    return history


def _lock_students(db: Session, customer_id: str, program: Program) -> List[Student]:
    return db.query(Student).filter(
        Student.stripe_customer_id == customer_id,
        Student.program == program.value
    ).order_by(Student.id).with_for_update().all()

# ============================================================================
# RATE VALIDATION
# ============================================================================

def validate_subscription_rate(subscription: StripeSubscription, program: Program) -> Optional[str]:
    """Compare the charged amount with the rate calculated at checkout.

    Only subscriptions created through the app carry `calculatedRate` (and
    `childCount` for Dugsi) in their metadata; others are not checked.

    Returns:
        Mismatch message, or None when the rate is fine or cannot be checked
    """
    metadata = subscription.metadata
    if not isinstance(metadata, dict):
        return None
    calculated_rate = metadata.get("calculatedRate")
    if not calculated_rate:
        return None

    child_count = None
    if program == Program.DUGSI:
        if not metadata.get("childCount"):
            return None
        try:
            child_count = int(metadata["childCount"])
        except (TypeError, ValueError):
            return f"Invalid childCount in subscription metadata: {metadata['childCount']}"

    try:
        expected_rate = int(calculated_rate)
    except (TypeError, ValueError):
        return f"Invalid calculatedRate in subscription metadata: {calculated_rate}"

    charged = get_charged_amount(subscription)
    if charged != expected_rate:
        label = program.value.capitalize()
        logger.error(
            f"{label} rate mismatch on {subscription.id}: charged={charged}, expected={expected_rate}"
        )
        return f"{label} rate mismatch: Stripe charged {charged} but expected {expected_rate}"

    if child_count is not None:
        recalculated = calculate_dugsi_rate(child_count)
        if recalculated != expected_rate:
            logger.warning(
                f"Rate calculation mismatch on {subscription.id}: metadata rate {expected_rate} "
                f"differs from recalculated rate {recalculated} for {child_count} children"
            )

    logger.info(f"{program.value.capitalize()} subscription rate validation passed for {subscription.id}")
    return None

# ============================================================================
# RECONCILIATION
# ============================================================================

def _upsert_subscription_record(
    db: Session,
    subscription: StripeSubscription,
    customer_id: str,
    status: SubscriptionStatus,
    program: Program,
    period_start: Optional[datetime],
    period_end: Optional[datetime],
    amount: Optional[int],
    now: datetime
) -> Subscription:
    record = db.query(Subscription).filter(
        Subscription.stripe_subscription_id == subscription.id
    ).with_for_update().first()

    if not record:
        record = Subscription(stripe_subscription_id=subscription.id, program=program.value)
        db.add(record)
        logger.info(f"Creating subscription record for {subscription.id}")

    record.stripe_customer_id = customer_id
    record.status = status.value
    record.current_period_start = period_start
    record.current_period_end = period_end
    record.paid_until = period_end
    if amount is not None:
        record.amount = amount
    if status == SubscriptionStatus.CANCELED:
        record.canceled_at = record.canceled_at or now
    db.flush()
    return record


def _sync_assignment(
    db: Session,
    record: Subscription,
    student: Student,
    status: SubscriptionStatus,
    amount: Optional[int],
    now: datetime
):
    """Keep exactly one active assignment per student, pointing at this subscription"""
    active = db.query(BillingAssignment).filter(
        BillingAssignment.student_id == student.id,
        BillingAssignment.is_active.is_(True)
    ).all()

    has_current = False
    for assignment in active:
        if assignment.subscription_id == record.id and status != SubscriptionStatus.CANCELED:
            has_current = True
            if amount is not None:
                assignment.amount = amount
        else:
            assignment.is_active = False
            assignment.ended_at = now

    if not has_current and status != SubscriptionStatus.CANCELED:
        db.add(BillingAssignment(
            subscription_id=record.id,
            student_id=student.id,
            amount=amount,
            is_active=True,
            started_at=now,
            notes=f"Linked from Stripe subscription {record.stripe_subscription_id}"
        ))


def sync_subscription_snapshot(
    subscription: StripeSubscription,
    customer_id: str,
    status: SubscriptionStatus,
    program: Program,
    db: Session
) -> int:
    """Apply a subscription snapshot to every student of the customer.

    Runs as one transaction; all students transition together or not at all.
    The snapshot is absolute, so the last applied event wins.

    Returns:
        Number of students updated (0 when the customer has none)
    """
    period_start, period_end = extract_period_dates(subscription)
    amount = get_charged_amount(subscription)
    membership_status = map_membership_status(status)
    now = datetime.now(timezone.utc)

    with transaction(db):
        students = _lock_students(db, customer_id, program)
        if not students:
            return 0

        record = _upsert_subscription_record(
            db, subscription, customer_id, status, program,
            period_start, period_end, amount, now
        )

        for student in students:
            previous_id = student.stripe_subscription_id
            if previous_id and previous_id != subscription.id:
                student.previous_subscription_ids = _append_history(student.previous_subscription_ids, previous_id)
                logger.info(f"Student {student.id} moved from subscription {previous_id} to {subscription.id}")

            if student.subscription_status != status.value:
                student.subscription_status_updated_at = now

            student.stripe_subscription_id = subscription.id
            student.subscription_status = status.value
            student.status = membership_status.value
            student.current_period_start = period_start
            student.current_period_end = period_end
            student.paid_until = period_end
            if amount is not None:
                student.monthly_rate = amount

            _sync_assignment(db, record, student, status, amount, now)

    return len(students)


def apply_subscription_snapshot(
    subscription: StripeSubscription,
    program: Program,
    db: Session,
    validate_rate: bool = False
) -> HandlerResult:
    """Check a subscription snapshot and apply it to the customer's students"""
    customer_id = extract_customer_id(subscription.customer)
    if not customer_id:
        return HandlerResult.data_quality("Invalid or missing customer ID in subscription")

    status = parse_subscription_status(subscription.status)
    if status is None:
        return HandlerResult.invalid_state(f"Invalid subscription status: {subscription.status}")

    if validate_rate:
        mismatch = validate_subscription_rate(subscription, program)
        if mismatch:
            return HandlerResult.invalid_state(mismatch)

    updated = sync_subscription_snapshot(subscription, customer_id, status, program, db)
    if updated == 0:
        return HandlerResult.data_quality(f"No students found for customer {customer_id}")

    logger.info(
        f"Subscription {subscription.id} is {status.value}: updated {updated} students for customer {customer_id}"
    )
    return HandlerResult.processed(updated=updated, subscription_id=subscription.id)


def handle_subscription_changed(event: SubscriptionChangedEvent, program: Program, db: Session) -> HandlerResult:
    """customer.subscription.created / customer.subscription.updated"""
    return apply_subscription_snapshot(event.subscription, program, db, validate_rate=event.is_created)

# ============================================================================
# CANCELLATION
# ============================================================================

def handle_subscription_deleted(event: SubscriptionDeletedEvent, program: Program, db: Session) -> HandlerResult:
    """customer.subscription.deleted

    Withdraws every student still on the canceled subscription and clears
    their forward-looking billing fields. The canceled id is kept in history.
    """
    subscription = event.subscription

    customer_id = extract_customer_id(subscription.customer)
    if not customer_id:
        return HandlerResult.data_quality("Invalid or missing customer ID in subscription")

    now = datetime.now(timezone.utc)
    with transaction(db):
        record = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == subscription.id
        ).with_for_update().first()
        if record:
            record.status = SubscriptionStatus.CANCELED.value
            record.canceled_at = record.canceled_at or now
            for assignment in record.assignments:
                if assignment.is_active:
                    assignment.is_active = False
                    assignment.ended_at = now

        students = _lock_students(db, customer_id, program)
        if not students:
            logger.warning(f"No students found for customer {customer_id}, nothing to cancel for {subscription.id}")
            return HandlerResult.processed(updated=0)

        canceled = 0
        for student in students:
            current_id = student.stripe_subscription_id
            if current_id and current_id != subscription.id:
                # Already re-subscribed; the cancellation is for an older subscription
                logger.info(
                    f"Skipping student {student.id}: on subscription {current_id}, not {subscription.id}"
                )
                continue

            student.previous_subscription_ids = _append_history(student.previous_subscription_ids, subscription.id)
            student.stripe_subscription_id = None
            student.subscription_status = SubscriptionStatus.CANCELED.value
            student.status = StudentStatus.WITHDRAWN.value
            student.current_period_start = None
            student.current_period_end = None
            student.paid_until = None
            student.subscription_status_updated_at = now
            canceled += 1

    logger.info(f"Canceled subscription {subscription.id}: withdrew {canceled} students for customer {customer_id}")
    return HandlerResult.processed(updated=canceled, subscription_id=subscription.id)
