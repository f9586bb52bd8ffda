"""Balance engine: the per-(student, occurrence) billing state machine.

    unbilled --deduct--> deducted          (a credit was available)
    unbilled --deduct--> overdue           (no credit; an OverdueCharge is kept)
    overdue  --deduct--> deducted          (credit arrived later)
    deducted --refund--> unbilled

Two consumption orders are used on purpose. An ordinary deduction draws on
the most recent payment that still has capacity for the course, so newer
purchases are used up first. Overdue recovery settles the oldest debts
first, in the order they were incurred.
"""
import logging

from django.db import IntegrityError, transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone

from . import ledger
from .models import (
    PRESENT,
    AttendanceRecord,
    BillingState,
    Deduction,
    Enrollment,
    OccurrenceExclusion,
    OverdueCharge,
    Payment,
    PaymentAllocation,
)
from .results import (
    ALREADY_EXISTS,
    EXCLUDED,
    NO_PAYMENT_AVAILABLE,
    NOT_ENROLLED,
    NOT_FOUND,
    OCCURRENCE_CANCELLED,
    OVER_ALLOCATED,
    OperationResult,
)

logger = logging.getLogger(__name__)


def billing_state(student, occurrence):
    if Deduction.objects.filter(student=student, occurrence=occurrence).exists():
        return BillingState.DEDUCTED
    if OverdueCharge.objects.filter(student=student, occurrence=occurrence).exists():
        return BillingState.OVERDUE
    return BillingState.UNBILLED


def is_enrolled(student, course_id):
    return Enrollment.objects.filter(student=student, course_id=course_id, is_active=True).exists()


def is_excluded(student, occurrence):
    return OccurrenceExclusion.objects.filter(occurrence=occurrence, student=student).exists()


def _claim_payment(student, course_id):
    """Lock and return the payment that should fund one class, or None."""
    for allocation in ledger.eligible_allocations(student, course_id):
        payment = ledger.lock_payment(allocation.payment_id)
        # Re-check under the lock; the listing above may be stale.
        if payment.classes_remaining <= 0:
            continue
        if allocation.classes_allocated - ledger.classes_used(payment.pk, course_id) <= 0:
            continue
        return payment
    return None


def _mark_overdue(student, occurrence):
    OverdueCharge.objects.get_or_create(
        student=student, occurrence=occurrence,
        defaults={'course_id': occurrence.course_id},
    )
    ledger.refresh_overdue_flag(occurrence.pk)
    occurrence.refresh_from_db(fields=['is_overdue'])


@transaction.atomic
def deduct(student, occurrence, overdue_recovery=False):
    """Bill one class of ``occurrence`` to ``student``.

    Safe to call repeatedly: an existing deduction for the pair is reported
    as ``already_exists`` and nothing is charged twice.
    """
    existing = Deduction.objects.filter(student=student, occurrence=occurrence).first()
    if existing is not None:
        return OperationResult.fail(ALREADY_EXISTS, entity=existing, state=BillingState.DEDUCTED)

    occurrence.refresh_from_db(fields=['was_cancelled', 'is_overdue'])
    if occurrence.was_cancelled:
        return OperationResult.fail(
            OCCURRENCE_CANCELLED, entity=occurrence, state=billing_state(student, occurrence),
        )

    # Excluded or unenrolled students are never billed, not even as overdue
    if is_excluded(student, occurrence):
        return OperationResult.fail(EXCLUDED, entity=occurrence, state=billing_state(student, occurrence))
    if not is_enrolled(student, occurrence.course_id):
        return OperationResult.fail(NOT_ENROLLED, entity=occurrence, state=billing_state(student, occurrence))

    payment = _claim_payment(student, occurrence.course_id)
    if payment is None:
        _mark_overdue(student, occurrence)
        logger.warning(
            "No prepaid class available for student %s in course %s; occurrence %s is overdue",
            student.pk, occurrence.course_id, occurrence.pk,
        )
        return OperationResult.fail(NO_PAYMENT_AVAILABLE, entity=occurrence, state=BillingState.OVERDUE)

    try:
        with transaction.atomic():
            deduction = Deduction.objects.create(
                student=student,
                course_id=occurrence.course_id,
                occurrence=occurrence,
                payment=payment,
                classes_deducted=1,
                is_overdue_deduction=overdue_recovery,
                deducted_at=timezone.now(),
            )
    except IntegrityError:
        # A concurrent writer billed the same pair first.
        existing = Deduction.objects.filter(student=student, occurrence=occurrence).first()
        logger.info("Deduction for student %s, occurrence %s raced; keeping the existing one", student.pk, occurrence.pk)
        return OperationResult.fail(ALREADY_EXISTS, entity=existing, state=BillingState.DEDUCTED)

    ledger.consume_credit(payment.pk, deduction.classes_deducted)

    cleared, _ = OverdueCharge.objects.filter(student=student, occurrence=occurrence).delete()
    if cleared or occurrence.is_overdue:
        ledger.refresh_overdue_flag(occurrence.pk)
        occurrence.refresh_from_db(fields=['is_overdue'])

    logger.info(
        "Deducted 1 class from payment %s for student %s, occurrence %s%s",
        payment.pk, student.pk, occurrence.pk, " (overdue)" if overdue_recovery else "",
    )
    return OperationResult.ok(entity=deduction, state=BillingState.DEDUCTED, payment_id=payment.pk)


@transaction.atomic
def refund(student, occurrence):
    """Undo the deduction for the pair and give the credit back to its payment."""
    deduction = (
        Deduction.objects.select_for_update()
        .filter(student=student, occurrence=occurrence)
        .first()
    )
    if deduction is None:
        return OperationResult.fail(NOT_FOUND, entity=occurrence, state=billing_state(student, occurrence))

    payment_id = deduction.payment_id
    if payment_id is not None:
        ledger.restore_credit(payment_id, deduction.classes_deducted)
    else:
        logger.warning("Deduction %s has no linked payment; nothing to restore", deduction.pk)
    deduction.delete()

    logger.info("Refunded %s class(es) to payment %s for student %s, occurrence %s",
                deduction.classes_deducted, payment_id, student.pk, occurrence.pk)
    return OperationResult.ok(
        entity=occurrence,
        state=billing_state(student, occurrence),
        payment_id=payment_id,
        classes_refunded=deduction.classes_deducted,
    )


@transaction.atomic
def clear_overdue(student, occurrence):
    """Forget an unpaid debt for the pair, e.g. once the student no longer counts as attending."""
    cleared, _ = OverdueCharge.objects.filter(student=student, occurrence=occurrence).delete()
    if cleared:
        ledger.refresh_overdue_flag(occurrence.pk)
        occurrence.refresh_from_db(fields=['is_overdue'])
    return bool(cleared)


def overdue_backlog(student, course):
    """The student's billable overdue charges for a course, oldest occurrence first."""
    attended = AttendanceRecord.objects.filter(
        student_id=OuterRef('student_id'), occurrence_id=OuterRef('occurrence_id'), status=PRESENT,
    )
    excluded = OccurrenceExclusion.objects.filter(
        student_id=OuterRef('student_id'), occurrence_id=OuterRef('occurrence_id'),
    )
    return (
        OverdueCharge.objects
        .filter(student=student, course=course, occurrence__was_cancelled=False)
        .filter(Exists(attended))
        .exclude(Exists(excluded))
        .select_related('occurrence')
        .order_by('occurrence__occurrence_date', 'occurrence__start_time', 'pk')
    )


@transaction.atomic
def recover_overdue(student, course, limit):
    results = []
    if limit <= 0:
        return results
    for charge in list(overdue_backlog(student, course)[:limit]):
        result = deduct(student, charge.occurrence, overdue_recovery=True)
        results.append(result)
        if result.reason == NO_PAYMENT_AVAILABLE:
            break
    return results


@transaction.atomic
def allocate_payment_and_recover_overdue(payment, allocations):
    """Earmark payment credits for courses, then settle overdue classes they can cover.

    ``allocations`` is an iterable of ``(course, classes_allocated)``. An
    existing allocation for the same course is replaced; only the credits
    added on top of it are used for overdue recovery.
    """
    payment = ledger.lock_payment(payment.pk)

    requested = {}
    for course, classes_allocated in allocations:
        classes_allocated = int(classes_allocated)
        if classes_allocated <= 0:
            raise ValueError("classes_allocated must be positive")
        requested[course.pk] = (course, classes_allocated)

    existing = {a.course_id: a for a in PaymentAllocation.objects.filter(payment=payment)}
    enrolled = set(
        Enrollment.objects.filter(student_id=payment.student_id, is_active=True)
        .values_list('course_id', flat=True)
    )

    planned = {course_id: a.classes_allocated for course_id, a in existing.items()}
    for course_id, (course, classes_allocated) in requested.items():
        if course_id not in enrolled:
            return OperationResult.fail(NOT_ENROLLED, entity=course)
        used = ledger.classes_used(payment.pk, course_id)
        if classes_allocated < used:
            return OperationResult.fail(OVER_ALLOCATED, entity=course, classes_used=used)
        planned[course_id] = classes_allocated

    total = sum(planned.values())
    if total > payment.classes_purchased:
        return OperationResult.fail(
            OVER_ALLOCATED, entity=payment,
            classes_allocated=total, classes_purchased=payment.classes_purchased,
        )

    added = {}
    for course_id, (course, classes_allocated) in requested.items():
        PaymentAllocation.objects.update_or_create(
            payment=payment, course=course, defaults={'classes_allocated': classes_allocated},
        )
        previous = existing[course_id].classes_allocated if course_id in existing else 0
        added[course_id] = max(0, classes_allocated - previous)

    overdue_deductions = []
    for course_id, (course, _) in requested.items():
        for result in recover_overdue(payment.student, course, added[course_id]):
            if result.success:
                overdue_deductions.append(result.entity)

    payment.refresh_from_db()
    logger.info(
        "Allocated payment %s to %d course(s); settled %d overdue class(es)",
        payment.pk, len(requested), len(overdue_deductions),
    )
    return OperationResult.ok(
        entity=payment,
        allocations=list(PaymentAllocation.objects.filter(payment=payment).order_by('pk')),
        overdue_deductions=overdue_deductions,
    )


@transaction.atomic
def create_payment(student, payment_method, amount, classes_purchased, allocations=(),
                   payment_date=None, payment_reference="", notes=""):
    payment = Payment.objects.create(
        student=student,
        payment_method=payment_method,
        amount=amount,
        classes_purchased=classes_purchased,
        classes_remaining=classes_purchased,
        payment_date=payment_date or timezone.now(),
        payment_reference=payment_reference or "",
        notes=notes or "",
    )
    logger.info("Recorded payment %s: %s classes for student %s", payment.pk, classes_purchased, student.pk)
    allocations = list(allocations)
    if not allocations:
        return OperationResult.ok(entity=payment, allocations=[], overdue_deductions=[])

    result = allocate_payment_and_recover_overdue(payment, allocations)
    if not result.success:
        transaction.set_rollback(True)
    return result
