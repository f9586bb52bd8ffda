"""Attendance and exclusion changes, and the balance corrections they imply."""
import logging

from django.db import DatabaseError, transaction

from . import engine, ledger
from .models import (
    NOT_RECORDED,
    PRESENT,
    STATUS_CHOICES,
    AttendanceRecord,
    Deduction,
    Occurrence,
    OccurrenceExclusion,
    OverdueCharge,
)
from .results import ALREADY_EXISTS, EXCLUDED, NOT_ENROLLED, NOT_FOUND, OperationResult

logger = logging.getLogger(__name__)

VALID_STATUSES = {code for code, _ in STATUS_CHOICES}


def current_status(occurrence, student):
    record = AttendanceRecord.objects.filter(occurrence=occurrence, student=student).first()
    return record.status if record else NOT_RECORDED


@transaction.atomic
def set_attendance(occurrence, student, status, reconcile_balance=True,
                   check_in_time=None, check_out_time=None, notes=""):
    """Record a status for the student and, if asked, move money to match.

    Leaving ``present`` refunds the class; arriving at ``present`` deducts
    one. Callers such as bulk imports pass ``reconcile_balance=False`` to
    correct the record without touching balances.
    """
    if status not in VALID_STATUSES:
        raise ValueError(f"unknown attendance status {status!r}")
    if engine.is_excluded(student, occurrence):
        return OperationResult.fail(EXCLUDED, entity=occurrence, state=engine.billing_state(student, occurrence))
    if not engine.is_enrolled(student, occurrence.course_id):
        return OperationResult.fail(NOT_ENROLLED, entity=occurrence)

    previous = (
        AttendanceRecord.objects.select_for_update()
        .filter(occurrence=occurrence, student=student)
        .values_list('status', flat=True)
        .first()
    ) or NOT_RECORDED

    record, _ = AttendanceRecord.objects.update_or_create(
        student=student,
        occurrence=occurrence,
        defaults={
            'status': status,
            'check_in_time': check_in_time,
            'check_out_time': check_out_time,
            'notes': notes or "",
        },
    )

    balance = None
    if reconcile_balance:
        if previous == PRESENT and status != PRESENT:
            balance = engine.refund(student, occurrence)
            engine.clear_overdue(student, occurrence)
        elif previous != PRESENT and status == PRESENT:
            balance = engine.deduct(student, occurrence)

    return OperationResult.ok(
        entity=record,
        state=engine.billing_state(student, occurrence),
        previous_status=previous,
        balance=balance,
    )


@transaction.atomic
def bulk_set_attendance(occurrence, entries, reconcile_balance=False):
    """Apply many attendance entries; one bad entry does not stop the rest.

    Each entry is a dict with ``student`` and ``status`` plus the optional
    keyword arguments of :func:`set_attendance`.
    """
    processed = []
    errors = []
    for entry in entries:
        entry = dict(entry)
        student = entry.pop('student')
        try:
            result = set_attendance(occurrence, student, reconcile_balance=reconcile_balance, **entry)
        except (DatabaseError, ValueError) as exc:
            logger.exception("Bulk attendance failed for student %s, occurrence %s", student.pk, occurrence.pk)
            errors.append({'student_id': student.pk, 'error': str(exc)})
            continue
        if result.success:
            processed.append(result.entity)
        else:
            errors.append({'student_id': student.pk, 'error': result.reason})
    return OperationResult.ok(entity=occurrence, processed=processed, errors=errors)


@transaction.atomic
def exclude(occurrence, student, reason=""):
    """Take the student out of this occurrence, undoing attendance and billing."""
    exclusion, created = OccurrenceExclusion.objects.update_or_create(
        occurrence=occurrence, student=student, defaults={'reason': reason or ""},
    )
    removed, _ = AttendanceRecord.objects.filter(occurrence=occurrence, student=student).delete()
    refunded = engine.refund(student, occurrence)
    engine.clear_overdue(student, occurrence)

    logger.info("Excluded student %s from occurrence %s", student.pk, occurrence.pk)
    return OperationResult.ok(
        entity=exclusion,
        state=engine.billing_state(student, occurrence),
        created=created,
        attendance_removed=bool(removed),
        refunded=refunded.success,
    )


@transaction.atomic
def unexclude(occurrence, student):
    """Put the student back: present again, and billed again."""
    exclusion = OccurrenceExclusion.objects.filter(occurrence=occurrence, student=student).first()
    if exclusion is None:
        return OperationResult.fail(NOT_FOUND, entity=occurrence)
    if not engine.is_enrolled(student, occurrence.course_id):
        return OperationResult.fail(NOT_ENROLLED, entity=occurrence)

    exclusion.delete()
    record, _ = AttendanceRecord.objects.update_or_create(
        student=student, occurrence=occurrence, defaults={'status': PRESENT},
    )
    balance = engine.deduct(student, occurrence)

    logger.info("Restored student %s to occurrence %s", student.pk, occurrence.pk)
    return OperationResult.ok(entity=record, state=balance.state, balance=balance)


@transaction.atomic
def cancel_occurrence(occurrence, notes=None):
    """Cancel an occurrence and give back every class billed for it."""
    occurrence = Occurrence.objects.select_for_update().get(pk=occurrence.pk)
    if occurrence.was_cancelled:
        return OperationResult.fail(ALREADY_EXISTS, entity=occurrence)

    occurrence.was_cancelled = True
    fields = ['was_cancelled', 'updated_at']
    if notes is not None:
        occurrence.notes = notes
        fields.append('notes')
    occurrence.save(update_fields=fields)

    refunded = []
    for deduction in list(Deduction.objects.filter(occurrence=occurrence).select_related('student')):
        engine.refund(deduction.student, occurrence)
        refunded.append(deduction.student_id)
    OverdueCharge.objects.filter(occurrence=occurrence).delete()
    ledger.refresh_overdue_flag(occurrence.pk)
    occurrence.refresh_from_db(fields=['is_overdue'])

    logger.info("Cancelled occurrence %s; refunded %d student(s)", occurrence.pk, len(refunded))
    return OperationResult.ok(entity=occurrence, refunded=refunded)
