from datetime import date, time

import pytest

from balances import engine, handlers
from balances.materializer import create_manual_occurrence
from balances.models import (
    ABSENT,
    LATE,
    NOT_RECORDED,
    PRESENT,
    AttendanceRecord,
    BillingState,
    Course,
    Deduction,
    Enrollment,
    OccurrenceExclusion,
    OverdueCharge,
    Payment,
    Student,
)
from balances.results import ALREADY_EXISTS, EXCLUDED, NOT_ENROLLED, NOT_FOUND


@pytest.fixture
def occ(math):
    return create_manual_occurrence(math, date(2025, 6, 2), time(14, 0)).entity


def remaining(student):
    return Payment.objects.get(student=student).classes_remaining


@pytest.mark.django_db
def test_marking_present_deducts(occ, alice, pay):
    pay(alice, occ.course, 3)

    result = handlers.set_attendance(occ, alice, PRESENT, check_in_time=time(14, 5))

    assert result.success
    assert result.details['previous_status'] == NOT_RECORDED
    assert result.state == BillingState.DEDUCTED
    assert result.entity.check_in_time == time(14, 5)
    assert remaining(alice) == 2


@pytest.mark.django_db
def test_leaving_present_refunds(occ, alice, pay):
    pay(alice, occ.course, 3)
    handlers.set_attendance(occ, alice, PRESENT)

    result = handlers.set_attendance(occ, alice, ABSENT)

    assert result.details['previous_status'] == PRESENT
    assert result.state == BillingState.UNBILLED
    assert remaining(alice) == 3
    assert AttendanceRecord.objects.get(occurrence=occ, student=alice).status == ABSENT


@pytest.mark.django_db
def test_leaving_present_clears_overdue(occ, alice):
    handlers.set_attendance(occ, alice, PRESENT)
    assert OverdueCharge.objects.exists()

    handlers.set_attendance(occ, alice, LATE)

    assert not OverdueCharge.objects.exists()
    occ.refresh_from_db()
    assert not occ.is_overdue


@pytest.mark.django_db
def test_repeating_present_does_not_charge_again(occ, alice, pay):
    pay(alice, occ.course, 3)
    handlers.set_attendance(occ, alice, PRESENT)
    handlers.set_attendance(occ, alice, PRESENT, notes="arrived on time")
    assert remaining(alice) == 2


@pytest.mark.django_db
def test_reconcile_off_leaves_balance_alone(occ, alice, pay):
    pay(alice, occ.course, 3)

    result = handlers.set_attendance(occ, alice, PRESENT, reconcile_balance=False)

    assert result.success
    assert result.details['balance'] is None
    assert result.state == BillingState.UNBILLED
    assert remaining(alice) == 3


@pytest.mark.django_db
def test_unknown_status_is_rejected(occ, alice):
    with pytest.raises(ValueError):
        handlers.set_attendance(occ, alice, "asleep")


@pytest.mark.django_db
def test_attendance_requires_enrollment(occ):
    carol = Student.objects.create(name="Carol")
    result = handlers.set_attendance(occ, carol, PRESENT)
    assert result.reason == NOT_ENROLLED
    assert not AttendanceRecord.objects.exists()


@pytest.mark.django_db
def test_excluded_student_cannot_get_attendance(occ, alice, pay):
    pay(alice, occ.course, 3)
    handlers.exclude(occ, alice, reason="travelling")

    result = handlers.set_attendance(occ, alice, PRESENT)

    assert result.reason == EXCLUDED
    assert not AttendanceRecord.objects.filter(student=alice).exists()
    assert remaining(alice) == 3


@pytest.mark.django_db
def test_exclude_undoes_attendance_and_billing(occ, alice, pay):
    pay(alice, occ.course, 3)
    handlers.set_attendance(occ, alice, PRESENT)

    result = handlers.exclude(occ, alice, reason="sick")

    assert result.success
    assert result.details['created']
    assert result.details['attendance_removed']
    assert result.details['refunded']
    assert result.state == BillingState.UNBILLED
    assert not AttendanceRecord.objects.filter(student=alice).exists()
    assert not Deduction.objects.exists()
    assert remaining(alice) == 3


@pytest.mark.django_db
def test_exclude_twice_updates_reason(occ, alice):
    handlers.exclude(occ, alice, reason="sick")
    result = handlers.exclude(occ, alice, reason="family trip")
    assert not result.details['created']
    assert OccurrenceExclusion.objects.get().reason == "family trip"


@pytest.mark.django_db
def test_exclude_clears_overdue(occ, alice):
    handlers.set_attendance(occ, alice, PRESENT)
    handlers.exclude(occ, alice)
    assert not OverdueCharge.objects.exists()
    occ.refresh_from_db()
    assert not occ.is_overdue


@pytest.mark.django_db
def test_unexclude_restores_presence_and_billing(occ, alice, pay):
    pay(alice, occ.course, 3)
    handlers.set_attendance(occ, alice, PRESENT)
    handlers.exclude(occ, alice)

    result = handlers.unexclude(occ, alice)

    assert result.success
    assert result.state == BillingState.DEDUCTED
    assert AttendanceRecord.objects.get(occurrence=occ, student=alice).status == PRESENT
    assert not OccurrenceExclusion.objects.exists()
    assert remaining(alice) == 2


@pytest.mark.django_db
def test_unexclude_without_credit_is_overdue(occ, alice):
    handlers.exclude(occ, alice)
    result = handlers.unexclude(occ, alice)
    assert result.success
    assert result.state == BillingState.OVERDUE


@pytest.mark.django_db
def test_unexclude_missing_exclusion(occ, alice):
    result = handlers.unexclude(occ, alice)
    assert result.reason == NOT_FOUND


@pytest.mark.django_db
def test_unexclude_after_unenrolling(occ, alice):
    handlers.exclude(occ, alice)
    Enrollment.objects.filter(student=alice).update(is_active=False)

    result = handlers.unexclude(occ, alice)

    assert result.reason == NOT_ENROLLED
    assert OccurrenceExclusion.objects.filter(student=alice).exists()


@pytest.mark.django_db
def test_bulk_attendance_reports_per_student_errors(occ, alice, bob, pay):
    pay(alice, occ.course, 3)
    carol = Student.objects.create(name="Carol")
    entries = [
        {'student': alice, 'status': PRESENT},
        {'student': bob, 'status': ABSENT},
        {'student': carol, 'status': PRESENT},
        {'student': bob, 'status': "asleep"},
    ]

    result = handlers.bulk_set_attendance(occ, entries)

    assert len(result.details['processed']) == 2
    errors = result.details['errors']
    assert [e['student_id'] for e in errors] == [carol.pk, bob.pk]
    assert errors[0]['error'] == NOT_ENROLLED
    # Bulk entry defaults to record-only
    assert remaining(alice) == 3


@pytest.mark.django_db
def test_bulk_attendance_can_reconcile(occ, alice, pay):
    pay(alice, occ.course, 3)
    handlers.bulk_set_attendance(occ, [{'student': alice, 'status': PRESENT}], reconcile_balance=True)
    assert remaining(alice) == 2


@pytest.mark.django_db
def test_cancel_refunds_everyone(occ, alice, bob, pay):
    pay(alice, occ.course, 3)
    handlers.set_attendance(occ, alice, PRESENT)
    handlers.set_attendance(occ, bob, PRESENT)
    occ.refresh_from_db()
    assert occ.is_overdue

    result = handlers.cancel_occurrence(occ, notes="instructor ill")

    assert result.success
    assert result.details['refunded'] == [alice.pk]
    occ.refresh_from_db()
    assert occ.was_cancelled
    assert occ.notes == "instructor ill"
    assert not occ.is_overdue
    assert not Deduction.objects.exists()
    assert not OverdueCharge.objects.exists()
    assert remaining(alice) == 3
    assert engine.deduct(alice, occ).success is False


@pytest.mark.django_db
def test_cancel_twice(occ):
    handlers.cancel_occurrence(occ)
    assert handlers.cancel_occurrence(occ).reason == ALREADY_EXISTS


@pytest.mark.django_db
def test_students_in_other_courses_are_not_enrolled(occ, alice):
    science = Course.objects.create(name="Science")
    other = create_manual_occurrence(science, date(2025, 6, 2), time(14, 0)).entity
    assert handlers.set_attendance(other, alice, PRESENT).reason == NOT_ENROLLED
