"""Subscription model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
import enum
from datetime import datetime, timezone
from tuition_billing.models.base import Base


class SubscriptionStatus(str, enum.Enum):
    """Stripe subscription statuses accepted by the webhook handlers"""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class Subscription(Base):
    """Stripe subscription information"""
    __tablename__ = "subscriptions"
    
    id = Column(Integer, primary_key=True, index=True)
    program = Column(String(20), nullable=False, index=True)  # 'DUGSI', 'MAHAD'
    stripe_subscription_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), nullable=False)  # 'active', 'canceled', 'past_due', 'unpaid', 'trialing', ...
    current_period_start = Column(DateTime(timezone=True), nullable=True)  # Trialing subscriptions may not have a period yet
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    paid_until = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Integer, nullable=True)  # cents per billing period
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    # Relationship
    assignments = relationship("BillingAssignment", back_populates="subscription", cascade="all, delete-orphan")
