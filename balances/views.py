import json

from django.db import models
from django.forms.models import model_to_dict
from django.http import HttpResponse, JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from . import engine, handlers
from .forms import (
    AllocationFormSet,
    AttendanceFormSet,
    AttendanceForm,
    BulkAttendanceForm,
    CancelOccurrenceForm,
    ExclusionForm,
    MaterializeForm,
    OccurrenceForm,
    PaymentForm,
    StudentRefForm,
    formset_data,
)
from .materializer import create_manual_occurrence, materialize
from .models import NOT_RECORDED, Course, Enrollment, Occurrence, Payment, Schedule, Student
from .reports import build_balance_workbook
from .results import (
    ALREADY_EXISTS,
    EXCLUDED,
    NO_PAYMENT_AVAILABLE,
    NOT_DUE,
    NOT_ENROLLED,
    NOT_FOUND,
    OCCURRENCE_CANCELLED,
    OVER_ALLOCATED,
    SCHEDULE_INACTIVE,
    WEEKDAY_MISMATCH,
    MaterializeReport,
    OperationResult,
)

HTTP_STATUS = {
    NOT_FOUND: 404,
    ALREADY_EXISTS: 409,
    NO_PAYMENT_AVAILABLE: 200,
    NOT_ENROLLED: 400,
    EXCLUDED: 400,
    OVER_ALLOCATED: 400,
    SCHEDULE_INACTIVE: 400,
    WEEKDAY_MISMATCH: 400,
    NOT_DUE: 400,
    OCCURRENCE_CANCELLED: 400,
}


def _serialize(value):
    if isinstance(value, models.Model):
        data = model_to_dict(value)
        data['id'] = value.pk
        return data
    if isinstance(value, OperationResult):
        return _result_body(value)
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


def _result_body(result):
    body = {
        'success': result.success,
        'reason': result.reason,
        'state': result.state,
        'data': _serialize(result.entity),
    }
    body.update(_serialize(result.details))
    return body


def _result_response(result, created_status=200):
    if result.success:
        status = created_status
    else:
        status = HTTP_STATUS.get(result.reason, 400)
    return JsonResponse(_result_body(result), status=status)


def _invalid(errors):
    return JsonResponse({'success': False, 'reason': 'invalid', 'errors': errors}, status=400)


def _load_json(request):
    try:
        data = json.loads(request.body or b'{}')
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _bad_json():
    return _invalid({'__all__': ['Request body must be a JSON object.']})


def _formset_errors(field, formset):
    return {
        field: [errors.get_json_data() for errors in formset.errors],
        '__all__': formset.non_form_errors().get_json_data(),
    }


@csrf_exempt
@require_http_methods(["POST"])
def schedule_materialize(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = MaterializeForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    schedule = get_object_or_404(Schedule.objects.select_related('course'), pk=pk)
    target_date = form.cleaned_data['date'] or timezone.localdate()

    report: MaterializeReport = materialize(schedule, target_date)
    body = {
        'success': report.created,
        'reason': report.reason,
        'data': _serialize(report.occurrence),
        'attendance_created': report.attendance_created,
        'deducted': report.deducted,
        'overdue': report.overdue,
        'failures': [{'student_id': sid, 'error': err} for sid, err in report.failures],
    }
    status = 201 if report.created else HTTP_STATUS.get(report.reason, 400)
    return JsonResponse(body, status=status)


@csrf_exempt
@require_http_methods(["POST"])
def occurrence_create(request):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = OccurrenceForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    cd = form.cleaned_data
    course = get_object_or_404(Course, pk=cd['course_id'])
    result = create_manual_occurrence(
        course, cd['occurrence_date'], cd['start_time'],
        end_time=cd['end_time'], notes=cd['notes'],
    )
    return _result_response(result, created_status=201)


@require_http_methods(["GET"])
def occurrence_detail(request, pk: int):
    """Roster for one occurrence: each enrolled student's attendance and billing state."""
    occurrence = get_object_or_404(Occurrence.objects.select_related('course'), pk=pk)
    statuses = {r.student_id: r.status for r in occurrence.attendance_records.all()}
    excluded = set(occurrence.exclusions.values_list('student_id', flat=True))
    roster = []
    enrollments = (
        Enrollment.objects.filter(course_id=occurrence.course_id, is_active=True)
        .select_related('student')
        .order_by('student__name')
    )
    for e in enrollments:
        roster.append({
            'student_id': e.student_id,
            'name': e.student.name,
            'attendance_status': statuses.get(e.student_id, NOT_RECORDED),
            'excluded': e.student_id in excluded,
            'billing_state': engine.billing_state(e.student, occurrence),
        })
    data = _serialize(occurrence)
    data['students'] = roster
    return JsonResponse({'success': True, 'data': data})


@csrf_exempt
@require_http_methods(["POST"])
def occurrence_cancel(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = CancelOccurrenceForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    occurrence = get_object_or_404(Occurrence, pk=pk)
    notes = form.cleaned_data['notes'] if 'notes' in data else None
    return _result_response(handlers.cancel_occurrence(occurrence, notes=notes))


def _attendance_kwargs(cd):
    return {
        'status': cd['attendance_status'],
        'check_in_time': cd['check_in_time'],
        'check_out_time': cd['check_out_time'],
        'notes': cd['notes'],
    }


@csrf_exempt
@require_http_methods(["POST"])
def attendance_set(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = AttendanceForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    cd = form.cleaned_data
    occurrence = get_object_or_404(Occurrence, pk=pk)
    student = get_object_or_404(Student, pk=cd['student_id'])
    reconcile = cd['reconcile_balance'] is not False
    result = handlers.set_attendance(occurrence, student, reconcile_balance=reconcile, **_attendance_kwargs(cd))
    return _result_response(result)


@csrf_exempt
@require_http_methods(["POST"])
def attendance_bulk(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    options = BulkAttendanceForm(data)
    if not options.is_valid():
        return _invalid(options.errors.get_json_data())
    records = data.get('attendance_records')
    if not isinstance(records, list):
        return _invalid({'attendance_records': ['A list of attendance records is required.']})
    formset = AttendanceFormSet(formset_data('records', records), prefix='records')
    if not formset.is_valid():
        return _invalid(_formset_errors('attendance_records', formset))
    occurrence = get_object_or_404(Occurrence, pk=pk)

    rows = [f.cleaned_data for f in formset if f.cleaned_data]
    students = Student.objects.in_bulk([cd['student_id'] for cd in rows])
    entries = []
    missing = []
    for cd in rows:
        student = students.get(cd['student_id'])
        if student is None:
            missing.append({'student_id': cd['student_id'], 'error': NOT_FOUND})
            continue
        entries.append(dict(student=student, **_attendance_kwargs(cd)))

    reconcile = bool(options.cleaned_data['reconcile_balance'])
    result = handlers.bulk_set_attendance(occurrence, entries, reconcile_balance=reconcile)
    result.details['errors'] = missing + result.details['errors']
    return _result_response(result)


@csrf_exempt
@require_http_methods(["POST"])
def exclusion_create(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = ExclusionForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    occurrence = get_object_or_404(Occurrence, pk=pk)
    student = get_object_or_404(Student, pk=form.cleaned_data['student_id'])
    result = handlers.exclude(occurrence, student, reason=form.cleaned_data['reason'])
    return _result_response(result, created_status=201 if result.details.get('created') else 200)


@csrf_exempt
@require_http_methods(["DELETE"])
def exclusion_delete(request, pk: int, student_id: int):
    occurrence = get_object_or_404(Occurrence, pk=pk)
    student = get_object_or_404(Student, pk=student_id)
    return _result_response(handlers.unexclude(occurrence, student))


@csrf_exempt
@require_http_methods(["POST"])
def occurrence_deduct(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = StudentRefForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    occurrence = get_object_or_404(Occurrence, pk=pk)
    student = get_object_or_404(Student, pk=form.cleaned_data['student_id'])
    return _result_response(engine.deduct(student, occurrence), created_status=201)


@csrf_exempt
@require_http_methods(["POST"])
def occurrence_refund(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = StudentRefForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    occurrence = get_object_or_404(Occurrence, pk=pk)
    student = get_object_or_404(Student, pk=form.cleaned_data['student_id'])
    return _result_response(engine.refund(student, occurrence))


def _allocations_from(data):
    """Validate the ``allocations`` list; returns ``(pairs, errors)``."""
    rows = data.get('allocations') or []
    if not isinstance(rows, list):
        return None, {'allocations': ['Allocations must be a list.']}
    formset = AllocationFormSet(formset_data('allocations', rows), prefix='allocations')
    if not formset.is_valid():
        return None, _formset_errors('allocations', formset)
    pairs = []
    for f in formset:
        if not f.cleaned_data:
            continue
        course = get_object_or_404(Course, pk=f.cleaned_data['course_id'])
        pairs.append((course, f.cleaned_data['classes_allocated']))
    return pairs, None


@csrf_exempt
@require_http_methods(["POST"])
def payment_create(request):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    form = PaymentForm(data)
    if not form.is_valid():
        return _invalid(form.errors.get_json_data())
    allocations, errors = _allocations_from(data)
    if errors:
        return _invalid(errors)
    cd = form.cleaned_data
    student = get_object_or_404(Student, pk=cd['student_id'])
    result = engine.create_payment(
        student,
        cd['payment_method'],
        cd['amount'],
        cd['classes_purchased'],
        allocations=allocations,
        payment_date=cd['payment_date'],
        payment_reference=cd['payment_reference'],
        notes=cd['notes'],
    )
    return _result_response(result, created_status=201)


@csrf_exempt
@require_http_methods(["POST"])
def payment_allocate(request, pk: int):
    data = _load_json(request)
    if data is None:
        return _bad_json()
    allocations, errors = _allocations_from(data)
    if errors:
        return _invalid(errors)
    if not allocations:
        return _invalid({'allocations': ['At least one allocation is required.']})
    payment = get_object_or_404(Payment, pk=pk)
    return _result_response(engine.allocate_payment_and_recover_overdue(payment, allocations))


@require_http_methods(["GET"])
def export_balance_report(request):
    wb = build_balance_workbook()
    filename = f"balances_{timezone.localdate():%Y-%m-%d}.xlsx"
    resp = HttpResponse(content_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet')
    resp['Content-Disposition'] = f'attachment; filename="{filename}"'
    wb.save(resp)
    return resp
