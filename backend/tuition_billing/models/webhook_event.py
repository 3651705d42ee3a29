"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, JSON, DateTime, UniqueConstraint
from datetime import datetime, timezone
from tuition_billing.models.base import Base


class WebhookEvent(Base):
    """Stripe webhook event log for idempotency.

    A row means processing of the event has started or completed for that source.
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("event_id", "source", name="uq_webhook_events_event_id_source"),
    )
    
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    source = Column(String(50), nullable=False)  # 'dugsi', 'mahad'
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
