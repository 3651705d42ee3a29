"""Pydantic schemas for Stripe webhook events and handler results"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Event types with a dedicated handler
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_FINALIZED = "invoice.finalized"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

INVOICE_EVENT_TYPES = (INVOICE_FINALIZED, INVOICE_PAYMENT_SUCCEEDED, INVOICE_PAYMENT_FAILED)


# ============================================================================
# STRIPE OBJECTS
# ============================================================================

class StripePrice(BaseModel):
    id: Optional[str] = None
    unit_amount: Optional[int] = None  # cents


class SubscriptionItem(BaseModel):
    id: Optional[str] = None
    price: Optional[StripePrice] = None
    # Newer API versions carry the billing period on each item
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(BaseModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class StripeSubscription(BaseModel):
    """Absolute snapshot of a Stripe subscription as delivered in an event"""
    id: str
    # Customer and status are checked by the handlers so that bad values are
    # acknowledged with a warning instead of rejected
    customer: Any = None
    status: Any = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    items: Optional[SubscriptionItemList] = None
    metadata: Any = None

    @property
    def first_item(self) -> Optional[SubscriptionItem]:
        if self.items and self.items.data:
            return self.items.data[0]
        return None


class CheckoutSession(BaseModel):
    id: Optional[str] = None
    client_reference_id: Any = None
    customer: Any = None
    mode: Any = None
    metadata: Any = None


class StripeInvoice(BaseModel):
    id: Optional[str] = None
    # Bare id or expanded subscription object. Newer API versions move it to
    # parent.subscription_details.subscription
    subscription: Any = None
    parent: Any = None
    customer: Any = None
    period_end: Any = None
    attempt_count: Any = None
    amount_due: Any = None


# ============================================================================
# EVENT ENVELOPE
# ============================================================================

class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any]


class StripeEventEnvelope(BaseModel):
    """Raw `{id, type, data: {object}}` envelope shared by every event"""
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: EventData


class CheckoutCompletedEvent(BaseModel):
    id: str
    type: str
    session: CheckoutSession


class SubscriptionChangedEvent(BaseModel):
    """customer.subscription.created / customer.subscription.updated"""
    id: str
    type: str
    subscription: StripeSubscription

    @property
    def is_created(self) -> bool:
        return self.type == SUBSCRIPTION_CREATED


class SubscriptionDeletedEvent(BaseModel):
    id: str
    type: str
    subscription: StripeSubscription


class InvoiceEvent(BaseModel):
    """invoice.finalized / invoice.payment_succeeded / invoice.payment_failed"""
    id: str
    type: str
    invoice: StripeInvoice

    @property
    def is_payment_failed(self) -> bool:
        return self.type == INVOICE_PAYMENT_FAILED


class UnhandledEvent(BaseModel):
    id: str
    type: str


WebhookEventModel = Union[
    CheckoutCompletedEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    InvoiceEvent,
    UnhandledEvent,
]


def parse_event(raw: Dict[str, Any]) -> WebhookEventModel:
    """Parse a decoded event body into its typed variant.

    Raises pydantic.ValidationError when the envelope or the object of a
    handled event type does not have the expected shape.
    """
    envelope = StripeEventEnvelope.model_validate(raw)
    obj = envelope.data.object

    if envelope.type == CHECKOUT_SESSION_COMPLETED:
        return CheckoutCompletedEvent(
            id=envelope.id,
            type=envelope.type,
            session=CheckoutSession.model_validate(obj),
        )
    if envelope.type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return SubscriptionChangedEvent(
            id=envelope.id,
            type=envelope.type,
            subscription=StripeSubscription.model_validate(obj),
        )
    if envelope.type == SUBSCRIPTION_DELETED:
        return SubscriptionDeletedEvent(
            id=envelope.id,
            type=envelope.type,
            subscription=StripeSubscription.model_validate(obj),
        )
    if envelope.type in INVOICE_EVENT_TYPES:
        return InvoiceEvent(
            id=envelope.id,
            type=envelope.type,
            invoice=StripeInvoice.model_validate(obj),
        )
    return UnhandledEvent(id=envelope.id, type=envelope.type)


# ============================================================================
# HANDLER RESULTS
# ============================================================================

class WebhookOutcome(str, Enum):
    """Closed set of outcomes a webhook delivery can end in"""
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    DATA_QUALITY = "data_quality"
    INVALID_STATE = "invalid_state"
    TRANSIENT = "transient"


@dataclass
class HandlerResult:
    outcome: WebhookOutcome
    message: Optional[str] = None
    updated: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def processed(cls, updated: int = 0, **details) -> "HandlerResult":
        return cls(WebhookOutcome.PROCESSED, updated=updated, details=details)

    @classmethod
    def ignored(cls, message: Optional[str] = None) -> "HandlerResult":
        return cls(WebhookOutcome.IGNORED, message=message)

    @classmethod
    def data_quality(cls, message: str) -> "HandlerResult":
        return cls(WebhookOutcome.DATA_QUALITY, message=message)

    @classmethod
    def invalid_state(cls, message: str) -> "HandlerResult":
        return cls(WebhookOutcome.INVALID_STATE, message=message)

    @property
    def is_warning(self) -> bool:
        return self.outcome in (WebhookOutcome.DATA_QUALITY, WebhookOutcome.INVALID_STATE)
