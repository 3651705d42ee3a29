"""BillingAssignment model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from tuition_billing.models.base import Base


class BillingAssignment(Base):
    """Links a subscription to a student it pays for"""
    __tablename__ = "billing_assignments"
    
    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=True)  # cents
    is_active = Column(Boolean, default=True, nullable=False)
    started_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(String(255), nullable=True)
    
    # Relationships
    subscription = relationship("Subscription", back_populates="assignments")
    student = relationship("Student", back_populates="billing_assignments")
