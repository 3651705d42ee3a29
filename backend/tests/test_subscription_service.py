"""Subscription reconciliation and cancellation tests"""
import logging
from datetime import datetime, timezone

import pytest

from conftest import build_event, subscription_object
from tuition_billing.core.config import Program
from tuition_billing.models.billing_assignment import BillingAssignment
from tuition_billing.models.student import StudentStatus
from tuition_billing.models.subscription import Subscription, SubscriptionStatus
from tuition_billing.schemas.webhooks import WebhookOutcome, parse_event
from tuition_billing.services.subscription_service import (
    MEMBERSHIP_STATUS_BY_SUBSCRIPTION_STATUS,
    handle_subscription_changed,
    handle_subscription_deleted,
    map_membership_status,
    parse_subscription_status,
    validate_subscription_rate,
)


def as_utc(value):
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def changed(db_session, program=Program.DUGSI, event_type="customer.subscription.updated", **kwargs):
    event = parse_event(build_event(event_type, subscription_object(**kwargs)))
    return handle_subscription_changed(event, program, db_session)


def deleted(db_session, program=Program.DUGSI, **kwargs):
    kwargs.setdefault("status", "canceled")
    event = parse_event(build_event("customer.subscription.deleted", subscription_object(**kwargs)))
    return handle_subscription_deleted(event, program, db_session)


@pytest.mark.critical
class TestStatusMapping:
    """Subscription status -> membership status"""

    @pytest.mark.parametrize("status,expected", [
        ("active", "enrolled"),
        ("past_due", "enrolled"),
        ("trialing", "registered"),
        ("unpaid", "withdrawn"),
        ("canceled", "withdrawn"),
        ("incomplete", "registered"),
        ("incomplete_expired", "registered"),
        ("paused", "registered"),
    ])
    def test_mapping(self, status, expected):
        assert map_membership_status(SubscriptionStatus(status)) == StudentStatus(expected)

    def test_mapping_is_total(self):
        """Every accepted status has exactly one membership status"""
        assert set(MEMBERSHIP_STATUS_BY_SUBSCRIPTION_STATUS) == set(SubscriptionStatus)
        for status in SubscriptionStatus:
            assert map_membership_status(status) in set(StudentStatus)

    @pytest.mark.parametrize("value", ["bogus", "", None, "ACTIVE"])
    def test_unknown_status_is_rejected(self, value):
        assert parse_subscription_status(value) is None


@pytest.mark.critical
class TestSubscriptionChanged:
    """customer.subscription.created / updated"""

    def test_updates_every_student_of_customer(self, db_session, family, make_student):
        stranger = make_student(name="Stranger", stripe_customer_id="cus_other")

        result = changed(db_session, status="active")

        assert result.outcome == WebhookOutcome.PROCESSED
        assert result.updated == 2
        for student in family:
            db_session.refresh(student)
            assert student.stripe_subscription_id == "sub_test_123"
            assert student.subscription_status == "active"
            assert student.status == "enrolled"
            assert as_utc(student.current_period_start) == datetime(2025, 1, 1, tzinfo=timezone.utc)
            assert as_utc(student.current_period_end) == datetime(2025, 2, 1, tzinfo=timezone.utc)
            assert as_utc(student.paid_until) == datetime(2025, 2, 1, tzinfo=timezone.utc)
            assert student.monthly_rate == 16000
            assert student.subscription_status_updated_at is not None

        db_session.refresh(stranger)
        assert stranger.stripe_subscription_id is None

    def test_other_program_students_are_untouched(self, db_session, make_student):
        mahad = make_student(program="MAHAD", stripe_customer_id="cus_test_123")

        result = changed(db_session, program=Program.DUGSI)

        assert result.outcome == WebhookOutcome.DATA_QUALITY
        db_session.refresh(mahad)
        assert mahad.subscription_status is None

    def test_expanded_customer_object(self, db_session, family):
        result = changed(db_session, customer={"id": "cus_test_123", "object": "customer"})
        assert result.outcome == WebhookOutcome.PROCESSED
        assert result.updated == 2

    @pytest.mark.parametrize("customer", [None, "", {"object": "customer"}, {"id": 42}])
    def test_missing_customer_is_data_quality(self, db_session, family, customer):
        result = changed(db_session, customer=customer)

        assert result.outcome == WebhookOutcome.DATA_QUALITY
        assert result.message == "Invalid or missing customer ID in subscription"

    def test_invalid_status_is_terminal(self, db_session, family):
        result = changed(db_session, status="bogus")

        assert result.outcome == WebhookOutcome.INVALID_STATE
        assert result.message == "Invalid subscription status: bogus"
        for student in family:
            db_session.refresh(student)
            assert student.subscription_status is None

    def test_no_students_is_data_quality(self, db_session):
        result = changed(db_session, customer="cus_nobody")

        assert result.outcome == WebhookOutcome.DATA_QUALITY
        assert result.message == "No students found for customer cus_nobody"
        assert db_session.query(Subscription).count() == 0

    def test_period_falls_back_to_first_item(self, db_session, family):
        obj = subscription_object(current_period_start=None, current_period_end=None)
        obj["items"]["data"][0]["current_period_start"] = 1735689600
        obj["items"]["data"][0]["current_period_end"] = 1738368000
        event = parse_event(build_event("customer.subscription.updated", obj))

        handle_subscription_changed(event, Program.DUGSI, db_session)

        for student in family:
            db_session.refresh(student)
            assert as_utc(student.current_period_end) == datetime(2025, 2, 1, tzinfo=timezone.utc)

    def test_replaced_subscription_id_goes_to_history(self, db_session, family):
        changed(db_session, subscription_id="sub_old")
        changed(db_session, subscription_id="sub_new")
        changed(db_session, subscription_id="sub_new", status="past_due")

        for student in family:
            db_session.refresh(student)
            assert student.stripe_subscription_id == "sub_new"
            assert student.previous_subscription_ids == ["sub_old"]

    def test_status_timestamp_only_moves_on_status_change(self, db_session, family):
        changed(db_session, status="active")
        db_session.refresh(family[0])
        first_stamp = family[0].subscription_status_updated_at

        changed(db_session, status="active", current_period_end=1740787200)
        db_session.refresh(family[0])
        assert family[0].subscription_status_updated_at == first_stamp

        changed(db_session, status="past_due")
        db_session.refresh(family[0])
        assert family[0].subscription_status_updated_at != first_stamp
        assert family[0].status == "enrolled"

    def test_subscription_record_and_assignments(self, db_session, family):
        changed(db_session, subscription_id="sub_old")
        changed(db_session, subscription_id="sub_new", unit_amount=23000)

        new_record = db_session.query(Subscription).filter(Subscription.stripe_subscription_id == "sub_new").one()
        assert new_record.program == "DUGSI"
        assert new_record.stripe_customer_id == "cus_test_123"
        assert new_record.amount == 23000

        active = db_session.query(BillingAssignment).filter(BillingAssignment.is_active.is_(True)).all()
        assert len(active) == 2
        assert {a.subscription_id for a in active} == {new_record.id}
        assert {a.student_id for a in active} == {s.id for s in family}

        ended = db_session.query(BillingAssignment).filter(BillingAssignment.is_active.is_(False)).all()
        assert len(ended) == 2
        assert all(a.ended_at is not None for a in ended)

    def test_reapplying_snapshot_does_not_duplicate_assignments(self, db_session, family):
        changed(db_session)
        changed(db_session)

        assert db_session.query(BillingAssignment).count() == 2
        assert db_session.query(Subscription).count() == 1


@pytest.mark.high
class TestRateValidation:
    """Charged amount vs. rate calculated at checkout (created events only)"""

    def test_matching_dugsi_rate_passes(self, db_session, family):
        result = changed(
            db_session,
            event_type="customer.subscription.created",
            unit_amount=16000,
            metadata={"calculatedRate": "16000", "childCount": "2"},
        )
        assert result.outcome == WebhookOutcome.PROCESSED

    def test_mismatch_is_terminal(self, db_session, family):
        result = changed(
            db_session,
            event_type="customer.subscription.created",
            unit_amount=15000,
            metadata={"calculatedRate": "16000", "childCount": "2"},
        )

        assert result.outcome == WebhookOutcome.INVALID_STATE
        assert result.message == "Dugsi rate mismatch: Stripe charged 15000 but expected 16000"
        for student in family:
            db_session.refresh(student)
            assert student.stripe_subscription_id is None

    def test_mahad_mismatch(self):
        sub = parse_event(build_event("customer.subscription.created", subscription_object(
            unit_amount=12000, metadata={"calculatedRate": "15000"}
        ))).subscription

        assert validate_subscription_rate(sub, Program.MAHAD) == (
            "Mahad rate mismatch: Stripe charged 12000 but expected 15000"
        )

    def test_recalculated_rate_disagreement_only_warns(self, caplog):
        sub = parse_event(build_event("customer.subscription.created", subscription_object(
            unit_amount=20000, metadata={"calculatedRate": "20000", "childCount": "3"}
        ))).subscription

        with caplog.at_level(logging.WARNING):
            assert validate_subscription_rate(sub, Program.DUGSI) is None
        assert "recalculated rate 23000" in caplog.text

    def test_updated_events_are_not_rate_checked(self, db_session, family):
        result = changed(
            db_session,
            unit_amount=15000,
            metadata={"calculatedRate": "16000", "childCount": "2"},
        )
        assert result.outcome == WebhookOutcome.PROCESSED

    @pytest.mark.parametrize("metadata", [{}, {"calculatedRate": "16000"}, {"childCount": "2"}])
    def test_dugsi_without_full_metadata_is_not_checked(self, metadata):
        sub = parse_event(build_event("customer.subscription.created", subscription_object(
            unit_amount=1, metadata=metadata
        ))).subscription
        assert validate_subscription_rate(sub, Program.DUGSI) is None

    def test_unparseable_rate(self):
        sub = parse_event(build_event("customer.subscription.created", subscription_object(
            metadata={"calculatedRate": "lots"}
        ))).subscription
        assert validate_subscription_rate(sub, Program.MAHAD) == "Invalid calculatedRate in subscription metadata: lots"


@pytest.mark.critical
class TestSubscriptionDeleted:
    """customer.subscription.deleted"""

    def test_cancels_and_keeps_history(self, db_session, family):
        changed(db_session, subscription_id="sub_first")
        changed(db_session, subscription_id="sub_test_123")

        result = deleted(db_session)

        assert result.outcome == WebhookOutcome.PROCESSED
        assert result.updated == 2
        for student in family:
            db_session.refresh(student)
            assert student.status == "withdrawn"
            assert student.subscription_status == "canceled"
            assert student.stripe_subscription_id is None
            assert student.paid_until is None
            assert student.previous_subscription_ids == ["sub_first", "sub_test_123"]

    def test_no_students_is_acknowledged(self, db_session, caplog):
        with caplog.at_level(logging.WARNING):
            result = deleted(db_session, customer="cus_nobody")

        assert result.outcome == WebhookOutcome.PROCESSED
        assert result.updated == 0
        assert "No students found for customer cus_nobody" in caplog.text

    def test_missing_customer_is_data_quality(self, db_session):
        result = deleted(db_session, customer=None)
        assert result.outcome == WebhookOutcome.DATA_QUALITY

    def test_resubscribed_student_is_left_alone(self, db_session, family):
        """Deleting an old subscription must not withdraw a student on a newer one"""
        changed(db_session, subscription_id="sub_old")
        changed(db_session, subscription_id="sub_new")

        result = deleted(db_session, subscription_id="sub_old")

        assert result.updated == 0
        for student in family:
            db_session.refresh(student)
            assert student.stripe_subscription_id == "sub_new"
            assert student.status == "enrolled"

        old_record = db_session.query(Subscription).filter(Subscription.stripe_subscription_id == "sub_old").one()
        assert old_record.status == "canceled"

    def test_repeated_cancellation_keeps_single_history_entry(self, db_session, family):
        changed(db_session)
        deleted(db_session)
        deleted(db_session)

        for student in family:
            db_session.refresh(student)
            assert student.previous_subscription_ids == ["sub_test_123"]
