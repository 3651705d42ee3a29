"""Payment method capture from completed checkout sessions, and tuition rates"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from tuition_billing.core.config import Program
from tuition_billing.db.session import transaction
from tuition_billing.models.student import Student
from tuition_billing.schemas.webhooks import CheckoutCompletedEvent, HandlerResult
from tuition_billing.services.stripe_service import extract_customer_id, is_valid_stripe_id

logger = logging.getLogger(__name__)

# Monthly Dugsi tuition per child, in cents
DUGSI_BASE_RATE = 8000      # 1st and 2nd child
DUGSI_THIRD_CHILD_RATE = 7000
DUGSI_FOURTH_PLUS_RATE = 6000

# client_reference_id formats set when the checkout link is generated
DUGSI_REFERENCE_PATTERN = re.compile(r"^dugsi_(?P<family_id>.+)_(?P<child_count>\d+)kids$")
MAHAD_REFERENCE_PATTERN = re.compile(r"^mahad_(?P<family_id>.+)$")


@dataclass
class ClientReference:
    family_id: str
    child_count: Optional[int] = None


def calculate_dugsi_rate(child_count: int) -> int:
    """Monthly family rate in cents for a number of enrolled children"""
    if child_count <= 0:
        return 0
    if child_count <= 2:
        return DUGSI_BASE_RATE * child_count
    return DUGSI_BASE_RATE * 2 + DUGSI_THIRD_CHILD_RATE + DUGSI_FOURTH_PLUS_RATE * (child_count - 3)


def parse_client_reference_id(reference_id: str, program: Program) -> Optional[ClientReference]:
    """Parse a checkout client_reference_id into the family it belongs to.

    Dugsi: `dugsi_{familyId}_{n}kids`, Mahad: `mahad_{familyId}`.
    Returns None when the id does not follow the program's format.
    """
    if program == Program.DUGSI:
        match = DUGSI_REFERENCE_PATTERN.match(reference_id)
        if not match:
            return None
        return ClientReference(
            family_id=match.group("family_id"),
            child_count=int(match.group("child_count"))
        )

    match = MAHAD_REFERENCE_PATTERN.match(reference_id)
    if not match:
        return None
    return ClientReference(family_id=match.group("family_id"))


def handle_checkout_completed(event: CheckoutCompletedEvent, program: Program, db: Session) -> HandlerResult:
    """Attach the Stripe customer and captured payment method to a whole family.

    Every student of the family is updated in one statement, so siblings
    never end up with different customers.
    """
    session = event.session

    reference_id = session.client_reference_id
    if reference_id is None or reference_id == "":
        return HandlerResult.data_quality("No client_reference_id in checkout session")
    if not isinstance(reference_id, str):
        return HandlerResult.data_quality(f"Invalid client_reference_id format: {reference_id!r}")

    reference = parse_client_reference_id(reference_id, program)
    if reference is None:
        return HandlerResult.data_quality(f"Invalid client_reference_id format: {reference_id}")

    customer_id = extract_customer_id(session.customer)
    if not is_valid_stripe_id(customer_id, "cus"):
        return HandlerResult.data_quality("Invalid or missing customer ID in checkout session")

    now = datetime.now(timezone.utc)
    with transaction(db):
        updated = db.query(Student).filter(
            Student.program == program.value,
            Student.family_reference_id == reference.family_id
        ).update({
            Student.stripe_customer_id: customer_id,
            Student.payment_method_captured: True,
            Student.payment_method_captured_at: now,
            Student.updated_at: now,
        }, synchronize_session=False)

    if updated == 0:
        return HandlerResult.data_quality(f"No students found for family {reference.family_id}")

    logger.info(f"Updated {updated} students for family {reference.family_id}")
    return HandlerResult.processed(updated=updated, family_id=reference.family_id)
