"""Turns recurring schedules into dated occurrences and seeds their attendance."""
import logging
from datetime import time

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from . import engine
from .models import PRESENT, AttendanceRecord, Enrollment, Occurrence, OccurrenceExclusion, day_of_week
from .results import (
    ALREADY_EXISTS,
    NO_PAYMENT_AVAILABLE,
    NOT_DUE,
    SCHEDULE_INACTIVE,
    WEEKDAY_MISMATCH,
    MaterializeReport,
    OperationResult,
)

logger = logging.getLogger(__name__)

# Occurrences never run past midnight
LATEST_END = time(23, 59)


def compute_end_time(start_time, duration_minutes=None):
    """Return ``(end_time, effective_minutes)`` for a class starting at ``start_time``.

    A missing or non-positive duration falls back to the configured default.
    An end past 23:59 is capped at 23:59, shortening the effective duration.
    """
    if not duration_minutes or duration_minutes <= 0:
        duration_minutes = settings.BALANCES_DEFAULT_DURATION_MINUTES
    start = start_time.hour * 60 + start_time.minute
    end = start + duration_minutes
    cap = LATEST_END.hour * 60 + LATEST_END.minute
    if end > cap:
        logger.warning(
            "Class starting %s for %s minutes would cross midnight; ending at %s",
            start_time.strftime('%H:%M'), duration_minutes, LATEST_END.strftime('%H:%M'),
        )
        end = cap
    hours, minutes = divmod(end, 60)
    return time(hours, minutes), end - start


def is_due(schedule, target_date, now):
    today = now.date()
    if target_date > today:
        return False
    if target_date == today:
        return schedule.start_time <= now.time()
    return True


def _find_occurrence(course_id, occurrence_date, start_time):
    return Occurrence.objects.filter(
        course_id=course_id, occurrence_date=occurrence_date, start_time=start_time,
    ).first()


def materialize(schedule, target_date, now=None):
    """Create the occurrence of ``schedule`` on ``target_date`` and bill its students.

    Idempotent per (course, date, start time): a second call reports
    ``already_exists`` and touches nothing. ``now`` defaults to the current
    time in the configured timezone; slots that have not started yet are
    ``not_due``.
    """
    now = timezone.localtime(now)
    report = MaterializeReport()

    if not schedule.is_active:
        report.reason = SCHEDULE_INACTIVE
        return report
    if day_of_week(target_date) != schedule.day_of_week:
        report.reason = WEEKDAY_MISMATCH
        return report
    if not is_due(schedule, target_date, now):
        report.reason = NOT_DUE
        return report

    course = schedule.course
    existing = _find_occurrence(course.pk, target_date, schedule.start_time)
    if existing is not None:
        report.occurrence = existing
        report.reason = ALREADY_EXISTS
        return report

    end_time, minutes = compute_end_time(schedule.start_time, course.duration_minutes)
    with transaction.atomic():
        try:
            with transaction.atomic():
                occurrence = Occurrence.objects.create(
                    course=course,
                    schedule=schedule,
                    occurrence_date=target_date,
                    start_time=schedule.start_time,
                    end_time=end_time,
                    actual_duration_minutes=minutes,
                    is_auto_created=True,
                )
        except IntegrityError:
            report.occurrence = _find_occurrence(course.pk, target_date, schedule.start_time)
            report.reason = ALREADY_EXISTS
            logger.info("Occurrence of %s on %s was created concurrently", course, target_date)
            return report

        report.occurrence = occurrence
        report.created = True
        _seed_students(occurrence, report)

    logger.info(
        "Created occurrence %s for %s on %s: %d attending, %d deducted, %d overdue, %d failed",
        occurrence.pk, course, target_date, len(report.attendance_created),
        len(report.deducted), len(report.overdue), len(report.failures),
    )
    return report


def _seed_students(occurrence, report):
    excluded = set(
        OccurrenceExclusion.objects.filter(occurrence=occurrence).values_list('student_id', flat=True)
    )
    recorded = set(
        AttendanceRecord.objects.filter(occurrence=occurrence).values_list('student_id', flat=True)
    )
    enrollments = (
        Enrollment.objects.filter(course_id=occurrence.course_id, is_active=True)
        .select_related('student')
        .order_by('student__name', 'pk')
    )
    for enrollment in enrollments:
        student = enrollment.student
        if student.pk in excluded or student.pk in recorded:
            continue
        # Each student gets a savepoint so one failure leaves the others billed.
        try:
            with transaction.atomic():
                AttendanceRecord.objects.create(student=student, occurrence=occurrence, status=PRESENT)
                result = engine.deduct(student, occurrence)
        except Exception as exc:
            logger.exception("Could not seed student %s into occurrence %s", student.pk, occurrence.pk)
            report.failures.append((student.pk, str(exc)))
            continue
        report.attendance_created.append(student.pk)
        if result.success:
            report.deducted.append(student.pk)
        elif result.reason == NO_PAYMENT_AVAILABLE:
            report.overdue.append(student.pk)


def create_manual_occurrence(course, occurrence_date, start_time, end_time=None, notes=""):
    """Record a one-off occurrence. Attendance is taken separately."""
    if end_time is None:
        end_time, minutes = compute_end_time(start_time, course.duration_minutes)
    elif end_time <= start_time:
        raise ValueError("end_time must be after start_time")
    else:
        minutes = (end_time.hour * 60 + end_time.minute) - (start_time.hour * 60 + start_time.minute)

    try:
        with transaction.atomic():
            occurrence = Occurrence.objects.create(
                course=course,
                occurrence_date=occurrence_date,
                start_time=start_time,
                end_time=end_time,
                actual_duration_minutes=minutes,
                notes=notes or "",
            )
    except IntegrityError:
        return OperationResult.fail(ALREADY_EXISTS, entity=_find_occurrence(course.pk, occurrence_date, start_time))
    return OperationResult.ok(entity=occurrence)
