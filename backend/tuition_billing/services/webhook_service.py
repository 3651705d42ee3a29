"""Stripe webhook pipeline: verification, idempotency, routing and response classification"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tuition_billing.core.config import Program
from tuition_billing.core.logging import webhook_logger
from tuition_billing.core.metrics import (
    webhook_events_counter,
    webhook_processing_histogram,
    webhook_cleanups_counter,
)
from tuition_billing.core.otel import get_tracer
from tuition_billing.models.webhook_event import WebhookEvent
from tuition_billing.schemas.webhooks import (
    CheckoutCompletedEvent,
    HandlerResult,
    InvoiceEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    WebhookEventModel,
    WebhookOutcome,
    parse_event,
)
from tuition_billing.services.invoice_service import handle_invoice_payment_failed, update_paid_until
from tuition_billing.services.payment_service import handle_checkout_completed
from tuition_billing.services.stripe_service import (
    InvalidSignatureError,
    MissingSignatureError,
    StripeAccount,
)
from tuition_billing.services.subscription_service import (
    handle_subscription_changed,
    handle_subscription_deleted,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

# ============================================================================
# IDEMPOTENCY STORE
# ============================================================================

class DuplicateEventError(Exception):
    """Another delivery of the same event already holds the idempotency record"""


class WebhookEventStore:
    """Durable record of which events have been taken up per webhook source.

    The unique constraint on (event_id, source) is what makes concurrent
    duplicate deliveries safe; `has_processed` is only a fast path.
    """

    def __init__(self, db: Session):
        self.db = db

    def has_processed(self, event_id: str, source: str) -> bool:
        return self.db.query(WebhookEvent.id).filter(
            WebhookEvent.event_id == event_id,
            WebhookEvent.source == source
        ).first() is not None

    def record_pending(self, event_id: str, event_type: str, source: str, payload: Dict[str, Any]) -> WebhookEvent:
        webhook_event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            source=source,
            payload=payload
        )
        self.db.add(webhook_event)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateEventError(f"Event {event_id} already recorded for {source}") from e
        self.db.refresh(webhook_event)
        return webhook_event

    def forget(self, event_id: str, source: str) -> bool:
        deleted = self.db.query(WebhookEvent).filter(
            WebhookEvent.event_id == event_id,
            WebhookEvent.source == source
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted > 0

# ============================================================================
# ROUTING
# ============================================================================

def dispatch(
    event: WebhookEventModel,
    program: Program,
    db: Session,
    client: Optional[stripe.StripeClient] = None
) -> HandlerResult:
    """Route a typed event to its handler; unknown types are acknowledged"""
    if isinstance(event, CheckoutCompletedEvent):
        return handle_checkout_completed(event, program, db)
    if isinstance(event, SubscriptionChangedEvent):
        return handle_subscription_changed(event, program, db)
    if isinstance(event, SubscriptionDeletedEvent):
        return handle_subscription_deleted(event, program, db)
    if isinstance(event, InvoiceEvent):
        if event.is_payment_failed:
            return handle_invoice_payment_failed(event, program, db, client=client)
        return update_paid_until(event, program, db)

    webhook_logger.info(f"Unhandled {program.source} event type: {event.type}")
    return HandlerResult.ignored()

# ============================================================================
# RESPONSES
# ============================================================================

@dataclass
class WebhookResponse:
    status_code: int
    body: Dict[str, Any]


def _error(status_code: int, message: str) -> WebhookResponse:
    return WebhookResponse(status_code, {"message": message})


def build_response(result: HandlerResult) -> WebhookResponse:
    """Map a handler outcome to the HTTP response Stripe sees"""
    if result.outcome in (WebhookOutcome.PROCESSED, WebhookOutcome.IGNORED):
        return WebhookResponse(200, {"received": True})
    if result.outcome == WebhookOutcome.DUPLICATE:
        return WebhookResponse(200, {"received": True, "skipped": True})
    if result.is_warning:
        return WebhookResponse(200, {"received": True, "warning": result.message})
    return _error(500, "Internal server error")


def _format_details(details: Dict[str, Any]) -> str:
    return "".join(f" {key}={value}" for key, value in sorted(details.items()))


def _count(source: str, event_type: str, outcome: str):
    webhook_events_counter.labels(source=source, event_type=event_type, outcome=outcome).inc()


def _cleanup(store: WebhookEventStore, event_id: str, source: str):
    """Drop the idempotency record so Stripe's retry gets processed"""
    try:
        if store.forget(event_id, source):
            webhook_cleanups_counter.labels(source=source).inc()
            webhook_logger.info(f"Cleaned up webhook event {event_id} for retry")
    except SQLAlchemyError as e:
        store.db.rollback()
        webhook_logger.error(f"Failed to clean up webhook event {event_id}: {e}", exc_info=True)

# ============================================================================
# PIPELINE
# ============================================================================

def process_webhook(
    payload: bytes,
    sig_header: Optional[str],
    account: StripeAccount,
    db: Session
) -> WebhookResponse:
    """Process one Stripe webhook delivery for a program's account.

    Every delivery ends in exactly one response:
    - 400/401 for requests that fail before the event is trusted (no bookkeeping)
    - 200 for processed, ignored, duplicate and data-quality outcomes
    - 500 for transient failures, after removing the idempotency record

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Value of the stripe-signature header
        account: Stripe account of the program the endpoint belongs to
        db: Database session

    Returns:
        WebhookResponse with status code and JSON body
    """
    source = account.source

    if not payload or not payload.strip():
        webhook_logger.error(f"Empty {source} webhook request body")
        return _error(400, "Request body is required")

    if not account.is_configured:
        webhook_logger.error(f"Webhook secret for {source} not configured")
        return _error(500, "Webhook not configured")

    with tracer.start_as_current_span(
        "webhook.verify_signature",
        attributes={"webhook.source": source, "webhook.has_signature": bool(sig_header)}
    ):
        try:
            account.verifier.verify(payload, sig_header)
        except MissingSignatureError:
            webhook_logger.error(f"Missing {source} webhook signature")
            _count(source, "unknown", "missing_signature")
            return _error(400, "Missing signature")
        except InvalidSignatureError:
            webhook_logger.error(f"{source} webhook verification failed")
            _count(source, "unknown", "invalid_signature")
            return _error(401, "Invalid webhook signature")

    try:
        raw_event = json.loads(payload)
    except ValueError as e:
        webhook_logger.error(f"Failed to parse {source} webhook body as JSON: {e}")
        return _error(400, "Invalid JSON payload")

    try:
        event = parse_event(raw_event)
    except ValidationError as e:
        webhook_logger.error(f"Invalid {source} event payload: {e}")
        return _error(400, "Invalid event payload")

    webhook_logger.info(f"Webhook received: {source} {event.type} {event.id}")
    store = WebhookEventStore(db)

    try:
        with tracer.start_as_current_span(
            "webhook.idempotency_check",
            attributes={"webhook.source": source, "webhook.event_id": event.id, "webhook.event_type": event.type}
        ):
            already_processed = store.has_processed(event.id, source)

        if not already_processed:
            with tracer.start_as_current_span(
                "webhook.store_event",
                attributes={"webhook.source": source, "webhook.event_id": event.id, "webhook.event_type": event.type}
            ):
                store.record_pending(event.id, event.type, source, raw_event)
    except DuplicateEventError:
        already_processed = True
    except SQLAlchemyError as e:
        # Nothing was recorded, so there is nothing to clean up
        db.rollback()
        webhook_logger.error(f"Idempotency bookkeeping failed for {event.id}: {e}", exc_info=True)
        _count(source, event.type, WebhookOutcome.TRANSIENT.value)
        return _error(500, "Internal server error")

    if already_processed:
        webhook_logger.info(f"Event {event.id} already processed, skipping")
        _count(source, event.type, WebhookOutcome.DUPLICATE.value)
        return build_response(HandlerResult(WebhookOutcome.DUPLICATE))

    start = time.perf_counter()
    with tracer.start_as_current_span(
        "webhook.execute_handler",
        attributes={"webhook.source": source, "webhook.event_id": event.id, "webhook.event_type": event.type}
    ) as span:
        try:
            result = dispatch(event, account.program, db, client=account.client)
        except Exception as e:
            db.rollback()
            webhook_logger.error(f"Error processing webhook {event.id} ({event.type}): {e}", exc_info=True)
            span.record_exception(e)
            _cleanup(store, event.id, source)
            result = HandlerResult(WebhookOutcome.TRANSIENT, message=str(e))
        span.set_attribute("webhook.outcome", result.outcome.value)
    webhook_processing_histogram.labels(source=source).observe(time.perf_counter() - start)

    _count(source, event.type, result.outcome.value)
    if result.is_warning:
        webhook_logger.warning(f"Webhook {event.id} acknowledged with warning: {result.message}")
    elif result.outcome == WebhookOutcome.PROCESSED:
        webhook_logger.info(
            f"Successfully processed event {event.id} ({event.type}): "
            f"updated={result.updated}{_format_details(result.details)}"
        )

    return build_response(result)
