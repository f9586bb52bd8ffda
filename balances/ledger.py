"""Ledger store: the queries and counter updates behind the balance engine.

``Payment.classes_remaining`` is a projection of the deduction log. It is
only ever moved by conditional UPDATEs in this module, so two writers can
never push it outside ``0..classes_purchased``.
"""
import logging

from django.db.models import Exists, F, IntegerField, OuterRef, Subquery, Sum, Value
from django.db.models.functions import Coalesce

from .models import Deduction, Occurrence, OverdueCharge, Payment, PaymentAllocation

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """The counters disagree with the ledger; the enclosing transaction must roll back."""


def _classes_used_subquery():
    used = (
        Deduction.objects.filter(payment=OuterRef('payment'), course=OuterRef('course'))
        .values('payment')
        .annotate(total=Sum('classes_deducted'))
        .values('total')
    )
    return Coalesce(Subquery(used, output_field=IntegerField()), Value(0))


def eligible_allocations(student, course):
    """Allocations that can still fund one class of ``course``, most recent payment first."""
    return (
        PaymentAllocation.objects
        .filter(payment__student=student, course=course, payment__classes_remaining__gt=0)
        .annotate(classes_used=_classes_used_subquery())
        .filter(classes_allocated__gt=F('classes_used'))
        .order_by('-payment__payment_date', '-payment_id')
    )


def classes_used(payment_id, course_id):
    total = (
        Deduction.objects.filter(payment_id=payment_id, course_id=course_id)
        .aggregate(total=Sum('classes_deducted'))['total']
    )
    return total or 0


def lock_payment(payment_id):
    return Payment.objects.select_for_update().get(pk=payment_id)


def consume_credit(payment_id, classes=1):
    updated = (
        Payment.objects.filter(pk=payment_id, classes_remaining__gte=classes)
        .update(classes_remaining=F('classes_remaining') - classes)
    )
    if updated != 1:
        raise LedgerError(f"payment {payment_id} has fewer than {classes} classes remaining")


def restore_credit(payment_id, classes=1):
    updated = (
        Payment.objects.filter(pk=payment_id, classes_remaining__lte=F('classes_purchased') - classes)
        .update(classes_remaining=F('classes_remaining') + classes)
    )
    if updated != 1:
        raise LedgerError(f"restoring {classes} classes would overfill payment {payment_id}")


def refresh_overdue_flag(occurrence_id):
    """Recompute ``Occurrence.is_overdue`` from the per-student overdue charges."""
    Occurrence.objects.filter(pk=occurrence_id).update(
        is_overdue=Exists(OverdueCharge.objects.filter(occurrence_id=OuterRef('pk')))
    )


def expected_remaining(payment):
    linked = payment.deductions.aggregate(total=Sum('classes_deducted'))['total'] or 0
    return payment.classes_purchased - linked


def payment_discrepancies():
    """Yield ``(payment, expected)`` for payments whose counter drifted from the ledger."""
    linked = (
        Deduction.objects.filter(payment=OuterRef('pk'))
        .values('payment')
        .annotate(total=Sum('classes_deducted'))
        .values('total')
    )
    payments = Payment.objects.annotate(
        linked_total=Coalesce(Subquery(linked, output_field=IntegerField()), Value(0)),
    ).exclude(classes_remaining=F('classes_purchased') - F('linked_total'))
    for payment in payments.order_by('pk'):
        yield payment, payment.classes_purchased - payment.linked_total


def rebuild_remaining(payment, expected):
    value = max(0, min(payment.classes_purchased, expected))
    if value != expected:
        logger.error(
            "Payment %s: ledger implies %s remaining, clamped to %s",
            payment.pk, expected, value,
        )
    Payment.objects.filter(pk=payment.pk).update(classes_remaining=value)
    return value


def stale_overdue_flags():
    return Occurrence.objects.annotate(
        has_charges=Exists(OverdueCharge.objects.filter(occurrence_id=OuterRef('pk'))),
    ).exclude(is_overdue=F('has_charges'))


def conflicting_charges():
    """Overdue charges for pairs that also carry a deduction."""
    return OverdueCharge.objects.filter(
        Exists(Deduction.objects.filter(student_id=OuterRef('student_id'), occurrence_id=OuterRef('occurrence_id')))
    )
