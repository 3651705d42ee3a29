import logging
import stripe
from dataclasses import dataclass
from typing import Dict, Optional, Any, Iterator, Tuple
from datetime import datetime, timezone

from tuition_billing.core.config import Settings, Program
from tuition_billing.core.logging import security_logger
from tuition_billing.schemas.webhooks import StripeInvoice, StripeSubscription

logger = logging.getLogger(__name__)

# ============================================================================
# SIGNATURE VERIFICATION
# ============================================================================

class WebhookVerificationError(Exception):
    """Base class for webhook authentication failures"""


class MissingSignatureError(WebhookVerificationError):
    """The stripe-signature header was not sent"""


class InvalidSignatureError(WebhookVerificationError):
    """The signature does not match the raw body"""


class WebhookVerifier:
    """Checks the stripe-signature header against one program's webhook secret.

    Works on the untouched request bytes; the body must not be parsed or
    re-serialized before verification. Failures never expose the underlying
    cause to the caller, it is only logged.
    """

    def __init__(self, secret: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, sig_header: Optional[str]) -> None:
        if not sig_header:
            raise MissingSignatureError("Missing signature")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig_header, self.secret, tolerance=self.tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            security_logger.warning(f"Webhook signature verification failed: {e}")
            raise InvalidSignatureError("Invalid webhook signature") from e

# ============================================================================
# PER-PROGRAM STRIPE ACCOUNTS
# ============================================================================

@dataclass
class StripeAccount:
    """Stripe API client and webhook verifier for one program's account"""
    program: Program
    client: Optional[stripe.StripeClient] = None
    verifier: Optional[WebhookVerifier] = None

    @property
    def source(self) -> str:
        return self.program.source

    @property
    def is_configured(self) -> bool:
        return self.verifier is not None


def build_stripe_accounts(settings: Settings) -> Dict[Program, StripeAccount]:
    """Build the Stripe account for every program from settings.

    A program without a secret key gets no API client; one without a webhook
    secret gets no verifier and its webhook endpoint refuses deliveries.
    """
    accounts = {}
    for program in Program:
        keys = settings.stripe_keys(program)
        client = stripe.StripeClient(keys.secret_key) if keys.secret_key else None
        verifier = (
            WebhookVerifier(keys.webhook_secret, tolerance=settings.STRIPE_WEBHOOK_TOLERANCE)
            if keys.is_configured else None
        )
        accounts[program] = StripeAccount(program=program, client=client, verifier=verifier)
        logger.info(
            f"Stripe account for {program.value}: "
            f"api={'yes' if client else 'no'}, webhook={'yes' if verifier else 'no'}"
        )
    return accounts

# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    value = getattr(obj, key, None)
    return default if value is None else value


def is_valid_stripe_id(value: Any, prefix: str) -> bool:
    """True for a non-empty Stripe id string such as `cus_...` for prefix 'cus'"""
    return isinstance(value, str) and value.startswith(f"{prefix}_") and len(value) > len(prefix) + 1


def extract_customer_id(customer: Any) -> Optional[str]:
    """Normalize a customer reference (bare id or expanded object) to its id"""
    if isinstance(customer, str):
        return customer or None
    customer_id = _get_stripe_value(customer, "id")
    if isinstance(customer_id, str) and customer_id:
        return customer_id
    return None


def extract_invoice_subscription_id(invoice: StripeInvoice) -> Optional[str]:
    """Subscription id an invoice bills for, or None for one-off invoices"""
    subscription = invoice.subscription
    if subscription is None:
        details = _get_stripe_value(invoice.parent, "subscription_details")
        subscription = _get_stripe_value(details, "subscription")
    if isinstance(subscription, str):
        return subscription or None
    subscription_id = _get_stripe_value(subscription, "id")
    if isinstance(subscription_id, str) and subscription_id:
        return subscription_id
    return None


def to_plain_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject (or an already decoded dict) as a plain dict"""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    if not timestamp or not isinstance(timestamp, int):
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def extract_period_dates(subscription: StripeSubscription) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current billing period of a subscription as UTC datetimes.

    Older API versions put the period on the subscription, newer ones on each
    item. Either bound may be missing (e.g. trialing subscriptions).
    """
    start = subscription.current_period_start
    end = subscription.current_period_end

    item = subscription.first_item
    if item is not None:
        start = start or item.current_period_start
        end = end or item.current_period_end

    return _to_datetime(start), _to_datetime(end)


def get_charged_amount(subscription: StripeSubscription) -> Optional[int]:
    """Unit amount in cents of the subscription's first price"""
    item = subscription.first_item
    if item is None or item.price is None:
        return None
    return item.price.unit_amount

# ============================================================================
# STRIPE API
# ============================================================================

def list_subscriptions(client: stripe.StripeClient, status: str = "all") -> Iterator[Any]:
    """Page through every subscription of an account with the given status"""
    subscriptions = client.v1.subscriptions.list(params={"status": status, "limit": 100})
    for subscription in subscriptions.auto_paging_iter():
        yield subscription


def retrieve_subscription(client: stripe.StripeClient, subscription_id: str) -> Dict[str, Any]:
    """Current state of one subscription, fetched from the API"""
    subscription = client.v1.subscriptions.retrieve(subscription_id, params={"expand": ["items.data.price"]})
    return to_plain_dict(subscription)
