"""Invoice events: paid-through dates and re-sync after failed payments"""
import logging
from datetime import datetime, timezone
from typing import Optional

import stripe
from pydantic import ValidationError
from sqlalchemy.orm import Session

from tuition_billing.core.config import Program
from tuition_billing.db.session import transaction
from tuition_billing.models.student import Student
from tuition_billing.models.subscription import Subscription
from tuition_billing.schemas.webhooks import HandlerResult, InvoiceEvent, StripeSubscription
from tuition_billing.services.stripe_service import (
    extract_invoice_subscription_id,
    retrieve_subscription,
)
from tuition_billing.services.subscription_service import apply_subscription_snapshot

logger = logging.getLogger(__name__)


def _find_subscription(db: Session, subscription_id: str, program: Program) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.stripe_subscription_id == subscription_id,
        Subscription.program == program.value
    ).with_for_update().first()


def update_paid_until(event: InvoiceEvent, program: Program, db: Session) -> HandlerResult:
    """invoice.finalized / invoice.payment_succeeded

    Moves paid_until of the subscription and of every student on it to the
    invoice's period end.
    """
    invoice = event.invoice

    subscription_id = extract_invoice_subscription_id(invoice)
    if not subscription_id:
        logger.info(f"Invoice {invoice.id} is not for a subscription, skipping")
        return HandlerResult.ignored()

    period_end = invoice.period_end
    if not isinstance(period_end, int) or period_end <= 0:
        return HandlerResult.data_quality(f"Invalid or missing period_end on invoice {invoice.id}")
    paid_until = datetime.fromtimestamp(period_end, tz=timezone.utc)

    with transaction(db):
        record = _find_subscription(db, subscription_id, program)
        if not record:
            return HandlerResult.data_quality(f"No subscription found for {subscription_id}")

        record.paid_until = paid_until
        updated = db.query(Student).filter(
            Student.stripe_subscription_id == subscription_id,
            Student.program == program.value
        ).update({
            Student.paid_until: paid_until,
            Student.updated_at: datetime.now(timezone.utc),
        }, synchronize_session=False)

    logger.info(f"Subscription {subscription_id} paid until {paid_until.isoformat()} ({updated} students)")
    return HandlerResult.processed(updated=updated, subscription_id=subscription_id)


def handle_invoice_payment_failed(
    event: InvoiceEvent,
    program: Program,
    db: Session,
    client: Optional[stripe.StripeClient] = None
) -> HandlerResult:
    """invoice.payment_failed

    Re-reads the subscription from Stripe and applies it, so students pick up
    past_due (or unpaid) even when the subscription event is late. Without an
    API client the failure is only logged.
    """
    invoice = event.invoice

    subscription_id = extract_invoice_subscription_id(invoice)
    if not subscription_id:
        logger.warning(f"Payment failed for invoice {invoice.id} (no subscription)")
        return HandlerResult.ignored()

    logger.warning(
        f"Payment failed for invoice {invoice.id} on subscription {subscription_id} "
        f"(attempt {invoice.attempt_count}, amount due {invoice.amount_due})"
    )

    known = db.query(Subscription.id).filter(
        Subscription.stripe_subscription_id == subscription_id,
        Subscription.program == program.value
    ).first()
    if not known:
        return HandlerResult.data_quality(f"No subscription found for {subscription_id}")

    if client is None:
        logger.warning(f"No Stripe API client for {program.value}, cannot re-sync {subscription_id}")
        return HandlerResult.processed(updated=0, subscription_id=subscription_id)

    # API errors propagate so the delivery is retried
    raw = retrieve_subscription(client, subscription_id)
    try:
        subscription = StripeSubscription.model_validate(raw)
    except ValidationError as e:
        return HandlerResult.data_quality(f"Invalid subscription {subscription_id} from Stripe: {e}")

    return apply_subscription_snapshot(subscription, program, db)
