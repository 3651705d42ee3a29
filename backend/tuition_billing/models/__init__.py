"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from tuition_billing.models.base import Base
from tuition_billing.models.student import Student, StudentStatus
from tuition_billing.models.subscription import Subscription, SubscriptionStatus
from tuition_billing.models.billing_assignment import BillingAssignment
from tuition_billing.models.webhook_event import WebhookEvent

# Export all for convenience
__all__ = [
    "Base", "Student", "StudentStatus", "Subscription", "SubscriptionStatus",
    "BillingAssignment", "WebhookEvent"
]
