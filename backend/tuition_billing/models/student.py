"""Student model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON
from sqlalchemy.orm import relationship
import enum
from datetime import datetime, timezone
from tuition_billing.models.base import Base


class StudentStatus(str, enum.Enum):
    """Membership status derived from the subscription status"""
    REGISTERED = "registered"
    ENROLLED = "enrolled"
    WITHDRAWN = "withdrawn"


class Student(Base):
    """Student enrolled in a program - the record billing state is attached to"""
    __tablename__ = "students"
    
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    program = Column(String(20), nullable=False, index=True)  # 'DUGSI', 'MAHAD'
    family_reference_id = Column(String(255), nullable=True, index=True)  # Siblings share a family
    status = Column(String(50), default="registered", nullable=False)  # 'registered', 'enrolled', 'withdrawn'
    
    # Payment method capture
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    payment_method_captured = Column(Boolean, default=False, nullable=False)
    payment_method_captured_at = Column(DateTime(timezone=True), nullable=True)
    
    # Subscription state (mirrors the Stripe subscription snapshot)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    previous_subscription_ids = Column(JSON, default=list, nullable=False)
    subscription_status = Column(String(50), nullable=True)
    subscription_status_updated_at = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    paid_until = Column(DateTime(timezone=True), nullable=True)
    monthly_rate = Column(Integer, nullable=True)  # cents
    
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    
    # Relationships
    billing_assignments = relationship("BillingAssignment", back_populates="student", cascade="all, delete-orphan")
