"""Prometheus metrics for the application"""
import logging

from prometheus_client import Counter, Gauge, Histogram, REGISTRY
from sqlalchemy import func
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'tuition_webhook_events_total',
        'Total number of Stripe webhook deliveries by outcome',
        ['source', 'event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('tuition_webhook_events_total')

try:
    webhook_processing_histogram = Histogram(
        'tuition_webhook_processing_seconds',
        'Time spent processing a verified Stripe webhook event',
        ['source']
    )
except ValueError:
    webhook_processing_histogram = REGISTRY._names_to_collectors.get('tuition_webhook_processing_seconds')

try:
    webhook_cleanups_counter = Counter(
        'tuition_webhook_cleanups_total',
        'Idempotency records removed after a transient failure',
        ['source']
    )
except ValueError:
    webhook_cleanups_counter = REGISTRY._names_to_collectors.get('tuition_webhook_cleanups_total')

# Billing metrics
try:
    students_by_subscription_status_gauge = Gauge(
        'tuition_students_by_subscription_status',
        'Number of students per program and subscription status',
        ['program', 'status']
    )
except ValueError:
    students_by_subscription_status_gauge = REGISTRY._names_to_collectors.get('tuition_students_by_subscription_status')


def update_students_by_subscription_status_gauge(db: Session):
    """Refresh the subscription status gauge from the students table"""
    from tuition_billing.models.student import Student

    try:
        rows = db.query(
            Student.program,
            Student.subscription_status,
            func.count(Student.id)
        ).group_by(Student.program, Student.subscription_status).all()
    except Exception as e:
        logger.warning(f"Failed to update subscription status gauge: {e}")
        return

    students_by_subscription_status_gauge.clear()
    for program, status, count in rows:
        students_by_subscription_status_gauge.labels(
            program=program,
            status=status or "none"
        ).set(count)
