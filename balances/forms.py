from decimal import Decimal

from django import forms
from django.forms import formset_factory

from .models import PAYMENT_METHOD_CHOICES, STATUS_CHOICES


class StudentRefForm(forms.Form):
    student_id = forms.IntegerField(min_value=1)


class MaterializeForm(forms.Form):
    date = forms.DateField(required=False)


class OccurrenceForm(forms.Form):
    course_id = forms.IntegerField(min_value=1)
    occurrence_date = forms.DateField()
    start_time = forms.TimeField(input_formats=['%H:%M', '%H:%M:%S'])
    end_time = forms.TimeField(required=False, input_formats=['%H:%M', '%H:%M:%S'])
    notes = forms.CharField(max_length=1000, required=False)

    def clean(self):
        cleaned = super().clean()
        start, end = cleaned.get('start_time'), cleaned.get('end_time')
        if start and end and end <= start:
            raise forms.ValidationError('End time must be after start time.')
        return cleaned


class CancelOccurrenceForm(forms.Form):
    notes = forms.CharField(max_length=1000, required=False)


class AttendanceForm(forms.Form):
    student_id = forms.IntegerField(min_value=1)
    attendance_status = forms.ChoiceField(choices=STATUS_CHOICES)
    check_in_time = forms.TimeField(required=False, input_formats=['%H:%M', '%H:%M:%S'])
    check_out_time = forms.TimeField(required=False, input_formats=['%H:%M', '%H:%M:%S'])
    notes = forms.CharField(max_length=1000, required=False)
    # Left out means "yes"; bulk corrections send false to keep balances untouched
    reconcile_balance = forms.NullBooleanField(required=False)


AttendanceFormSet = formset_factory(AttendanceForm, extra=0, min_num=1, validate_min=True)


class BulkAttendanceForm(forms.Form):
    # Bulk entry only records attendance unless billing is asked for
    reconcile_balance = forms.NullBooleanField(required=False)


class ExclusionForm(forms.Form):
    student_id = forms.IntegerField(min_value=1)
    reason = forms.CharField(max_length=1000, required=False)


class AllocationForm(forms.Form):
    course_id = forms.IntegerField(min_value=1)
    classes_allocated = forms.IntegerField(min_value=1)


AllocationFormSet = formset_factory(AllocationForm, extra=0)


class PaymentForm(forms.Form):
    student_id = forms.IntegerField(min_value=1)
    payment_method = forms.ChoiceField(choices=PAYMENT_METHOD_CHOICES)
    amount = forms.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal('0.01'))
    classes_purchased = forms.IntegerField(min_value=1)
    payment_date = forms.DateTimeField(required=False)
    payment_reference = forms.CharField(max_length=100, required=False)
    notes = forms.CharField(max_length=1000, required=False)


def formset_data(prefix, rows):
    """Flatten a JSON list of objects into the POST-style data a formset expects."""
    data = {
        f'{prefix}-TOTAL_FORMS': str(len(rows)),
        f'{prefix}-INITIAL_FORMS': '0',
    }
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            continue
        for key, value in row.items():
            data[f'{prefix}-{i}-{key}'] = value
    return data
