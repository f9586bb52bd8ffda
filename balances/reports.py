"""Operator report: per-student class balances and unpaid overdue classes."""
import openpyxl
from openpyxl.styles import Alignment, Font, PatternFill
from django.db.models import Count, IntegerField, OuterRef, Subquery, Sum, Value
from django.db.models.functions import Coalesce

from .models import Deduction, OverdueCharge, Payment, Student

OVERDUE_FILL = PatternFill(start_color='F8D7DA', end_color='F8D7DA', fill_type='solid')


def _sum_per_student(queryset, field):
    total = (
        queryset.filter(student=OuterRef('pk'))
        .values('student')
        .annotate(total=Sum(field))
        .values('total')
    )
    return Coalesce(Subquery(total, output_field=IntegerField()), Value(0))


def _count_per_student(queryset):
    total = (
        queryset.filter(student=OuterRef('pk'))
        .values('student')
        .annotate(total=Count('pk'))
        .values('total')
    )
    return Coalesce(Subquery(total, output_field=IntegerField()), Value(0))


def student_balances():
    return Student.objects.annotate(
        classes_purchased=_sum_per_student(Payment.objects.all(), 'classes_purchased'),
        classes_remaining=_sum_per_student(Payment.objects.all(), 'classes_remaining'),
        classes_deducted=_sum_per_student(Deduction.objects.all(), 'classes_deducted'),
        overdue_classes=_count_per_student(OverdueCharge.objects.all()),
    ).order_by('name', 'pk')


def _write_header(ws, headers):
    for c, h in enumerate(headers, 1):
        cell = ws.cell(row=1, column=c, value=h)
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal='center')


def _autosize(ws):
    for column_cells in ws.columns:
        length = max(len(str(cell.value)) if cell.value is not None else 0 for cell in column_cells)
        ws.column_dimensions[column_cells[0].column_letter].width = max(10, min(40, length + 2))


def build_balance_workbook():
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = 'Balances'
    _write_header(ws, ['Student', 'Grade', 'Purchased', 'Remaining', 'Deducted', 'Overdue'])
    row = 2
    for s in student_balances():
        ws.cell(row=row, column=1, value=s.name)
        ws.cell(row=row, column=2, value=s.grade)
        ws.cell(row=row, column=3, value=s.classes_purchased)
        ws.cell(row=row, column=4, value=s.classes_remaining)
        ws.cell(row=row, column=5, value=s.classes_deducted)
        cell = ws.cell(row=row, column=6, value=s.overdue_classes)
        if s.overdue_classes:
            cell.fill = OVERDUE_FILL
        row += 1
    _autosize(ws)

    ws = wb.create_sheet('Overdue')
    _write_header(ws, ['Student', 'Course', 'Date', 'Start', 'Flagged'])
    charges = OverdueCharge.objects.select_related('student', 'course', 'occurrence').order_by(
        'student__name', 'occurrence__occurrence_date', 'occurrence__start_time',
    )
    row = 2
    for charge in charges:
        ws.cell(row=row, column=1, value=charge.student.name)
        ws.cell(row=row, column=2, value=charge.course.name)
        ws.cell(row=row, column=3, value=charge.occurrence.occurrence_date.strftime('%Y-%m-%d'))
        ws.cell(row=row, column=4, value=charge.occurrence.start_time.strftime('%H:%M'))
        ws.cell(row=row, column=5, value=charge.flagged_at.strftime('%Y-%m-%d %H:%M'))
        row += 1
    _autosize(ws)
    return wb
