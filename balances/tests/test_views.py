import json
from datetime import date, time
from io import BytesIO

import openpyxl
import pytest
from django.urls import reverse
from django.utils import timezone

from balances.materializer import create_manual_occurrence
from balances.models import AttendanceRecord, Occurrence, OccurrenceExclusion, Payment


def post_json(client, url, payload=None):
    return client.post(url, data=json.dumps(payload or {}), content_type='application/json')


@pytest.fixture
def occ(math):
    return create_manual_occurrence(math, date(2025, 6, 2), time(14, 0)).entity


@pytest.mark.django_db
def test_materialize_endpoint(client, monday_schedule, alice, pay):
    pay(alice, monday_schedule.course, 3)
    url = reverse('balances:schedule_materialize', args=[monday_schedule.pk])

    resp = post_json(client, url, {'date': '2025-06-02'})

    assert resp.status_code == 201
    body = resp.json()
    assert body['success'] is True
    assert body['data']['end_time'] == '15:30:00'
    assert body['deducted'] == [alice.pk]

    again = post_json(client, url, {'date': '2025-06-02'})
    assert again.status_code == 409
    assert again.json()['reason'] == 'already_exists'


@pytest.mark.django_db
def test_materialize_wrong_weekday_is_a_client_error(client, monday_schedule):
    url = reverse('balances:schedule_materialize', args=[monday_schedule.pk])
    resp = post_json(client, url, {'date': '2025-06-03'})
    assert resp.status_code == 400
    assert resp.json()['reason'] == 'weekday_mismatch'


@pytest.mark.django_db
def test_unknown_schedule_returns_json_404(client):
    resp = post_json(client, reverse('balances:schedule_materialize', args=[999]), {'date': '2025-06-02'})
    assert resp.status_code == 404
    assert resp.json()['success'] is False
    assert resp.json()['reason'] == 'not_found'


@pytest.mark.django_db
def test_set_attendance_endpoint(client, occ, alice, pay):
    pay(alice, occ.course, 3)
    url = reverse('balances:attendance_set', args=[occ.pk])

    resp = post_json(client, url, {'student_id': alice.pk, 'attendance_status': 'present', 'check_in_time': '14:02'})

    assert resp.status_code == 200
    body = resp.json()
    assert body['state'] == 'deducted'
    assert body['previous_status'] == 'not_recorded'
    assert body['balance']['success'] is True
    assert Payment.objects.get(student=alice).classes_remaining == 2


@pytest.mark.django_db
def test_set_attendance_without_reconcile(client, occ, alice, pay):
    pay(alice, occ.course, 3)
    url = reverse('balances:attendance_set', args=[occ.pk])

    resp = post_json(client, url, {'student_id': alice.pk, 'attendance_status': 'present', 'reconcile_balance': False})

    assert resp.json()['state'] == 'unbilled'
    assert Payment.objects.get(student=alice).classes_remaining == 3


@pytest.mark.django_db
def test_set_attendance_validation_errors(client, occ):
    url = reverse('balances:attendance_set', args=[occ.pk])
    resp = post_json(client, url, {'attendance_status': 'sleeping'})
    assert resp.status_code == 400
    errors = resp.json()['errors']
    assert 'student_id' in errors
    assert 'attendance_status' in errors


@pytest.mark.django_db
def test_malformed_json_is_rejected(client, occ):
    url = reverse('balances:attendance_set', args=[occ.pk])
    resp = client.post(url, data='{not json', content_type='application/json')
    assert resp.status_code == 400
    assert resp.json()['reason'] == 'invalid'


@pytest.mark.django_db
def test_get_is_not_allowed_on_actions(client, occ):
    resp = client.get(reverse('balances:attendance_set', args=[occ.pk]))
    assert resp.status_code == 405


@pytest.mark.django_db
def test_bulk_attendance_endpoint(client, occ, alice, bob):
    url = reverse('balances:attendance_bulk', args=[occ.pk])
    payload = {'attendance_records': [
        {'student_id': alice.pk, 'attendance_status': 'present'},
        {'student_id': bob.pk, 'attendance_status': 'absent'},
        {'student_id': 9999, 'attendance_status': 'present'},
    ]}

    resp = post_json(client, url, payload)

    assert resp.status_code == 200
    body = resp.json()
    assert len(body['processed']) == 2
    assert body['errors'] == [{'student_id': 9999, 'error': 'not_found'}]
    assert AttendanceRecord.objects.filter(occurrence=occ).count() == 2


@pytest.mark.django_db
def test_bulk_attendance_requires_records(client, occ):
    resp = post_json(client, reverse('balances:attendance_bulk', args=[occ.pk]), {'attendance_records': []})
    assert resp.status_code == 400


@pytest.mark.django_db
def test_exclusion_endpoints(client, occ, alice, pay):
    pay(alice, occ.course, 3)
    post_json(client, reverse('balances:attendance_set', args=[occ.pk]),
              {'student_id': alice.pk, 'attendance_status': 'present'})

    resp = post_json(client, reverse('balances:exclusion_create', args=[occ.pk]),
                     {'student_id': alice.pk, 'reason': 'sick'})
    assert resp.status_code == 201
    assert Payment.objects.get(student=alice).classes_remaining == 3

    resp = client.delete(reverse('balances:exclusion_delete', args=[occ.pk, alice.pk]))
    assert resp.status_code == 200
    assert resp.json()['state'] == 'deducted'
    assert not OccurrenceExclusion.objects.exists()

    resp = client.delete(reverse('balances:exclusion_delete', args=[occ.pk, alice.pk]))
    assert resp.status_code == 404


@pytest.mark.django_db
def test_deduct_without_credit_reports_overdue(client, occ, alice):
    resp = post_json(client, reverse('balances:occurrence_deduct', args=[occ.pk]), {'student_id': alice.pk})
    assert resp.status_code == 200
    body = resp.json()
    assert body['success'] is False
    assert body['reason'] == 'no_payment_available'
    assert body['state'] == 'overdue'


@pytest.mark.django_db
def test_deduct_and_refund_endpoints(client, occ, alice, pay):
    pay(alice, occ.course, 1)
    deduct = post_json(client, reverse('balances:occurrence_deduct', args=[occ.pk]), {'student_id': alice.pk})
    assert deduct.status_code == 201

    refund = post_json(client, reverse('balances:occurrence_refund', args=[occ.pk]), {'student_id': alice.pk})
    assert refund.status_code == 200
    assert refund.json()['classes_refunded'] == 1

    again = post_json(client, reverse('balances:occurrence_refund', args=[occ.pk]), {'student_id': alice.pk})
    assert again.status_code == 404


@pytest.mark.django_db
def test_create_payment_endpoint(client, math, alice):
    payload = {
        'student_id': alice.pk,
        'payment_method': 'wechat',
        'amount': '120.00',
        'classes_purchased': 4,
        'payment_reference': 'WX-001',
        'allocations': [{'course_id': math.pk, 'classes_allocated': 4}],
    }

    resp = post_json(client, reverse('balances:payment_create'), payload)

    assert resp.status_code == 201
    body = resp.json()
    assert body['data']['classes_remaining'] == 4
    assert [a['classes_allocated'] for a in body['allocations']] == [4]


@pytest.mark.django_db
def test_create_payment_over_allocated(client, math, alice):
    payload = {
        'student_id': alice.pk,
        'payment_method': 'cash',
        'amount': '60.00',
        'classes_purchased': 2,
        'allocations': [{'course_id': math.pk, 'classes_allocated': 5}],
    }
    resp = post_json(client, reverse('balances:payment_create'), payload)
    assert resp.status_code == 400
    assert resp.json()['reason'] == 'over_allocated'
    assert not Payment.objects.exists()


@pytest.mark.django_db
def test_create_payment_rejects_unknown_method(client, alice):
    payload = {'student_id': alice.pk, 'payment_method': 'barter', 'amount': '10', 'classes_purchased': 1}
    resp = post_json(client, reverse('balances:payment_create'), payload)
    assert resp.status_code == 400
    assert 'payment_method' in resp.json()['errors']


@pytest.mark.django_db
def test_allocate_endpoint_recovers_overdue(client, occ, alice):
    post_json(client, reverse('balances:attendance_set', args=[occ.pk]),
              {'student_id': alice.pk, 'attendance_status': 'present'})
    payment = post_json(client, reverse('balances:payment_create'), {
        'student_id': alice.pk, 'payment_method': 'cash', 'amount': '30', 'classes_purchased': 1,
    }).json()['data']

    resp = post_json(client, reverse('balances:payment_allocate', args=[payment['id']]),
                     {'allocations': [{'course_id': occ.course_id, 'classes_allocated': 1}]})

    assert resp.status_code == 200
    body = resp.json()
    assert len(body['overdue_deductions']) == 1
    assert body['data']['classes_remaining'] == 0


@pytest.mark.django_db
def test_manual_occurrence_and_cancel_endpoints(client, math, alice, pay):
    pay(alice, math, 2)
    resp = post_json(client, reverse('balances:occurrence_create'), {
        'course_id': math.pk, 'occurrence_date': '2025-06-04', 'start_time': '10:00', 'end_time': '11:00',
    })
    assert resp.status_code == 201
    occ_id = resp.json()['data']['id']
    assert resp.json()['data']['actual_duration_minutes'] == 60

    dup = post_json(client, reverse('balances:occurrence_create'), {
        'course_id': math.pk, 'occurrence_date': '2025-06-04', 'start_time': '10:00',
    })
    assert dup.status_code == 409

    post_json(client, reverse('balances:attendance_set', args=[occ_id]),
              {'student_id': alice.pk, 'attendance_status': 'present'})
    cancel = post_json(client, reverse('balances:occurrence_cancel', args=[occ_id]), {'notes': 'snow day'})
    assert cancel.status_code == 200
    assert cancel.json()['refunded'] == [alice.pk]
    assert Occurrence.objects.get(pk=occ_id).was_cancelled
    assert Payment.objects.get(student=alice).classes_remaining == 2


@pytest.mark.django_db
def test_manual_occurrence_end_before_start(client, math):
    resp = post_json(client, reverse('balances:occurrence_create'), {
        'course_id': math.pk, 'occurrence_date': '2025-06-04', 'start_time': '10:00', 'end_time': '09:00',
    })
    assert resp.status_code == 400


@pytest.mark.django_db
def test_occurrence_detail_lists_roster(client, occ, alice, bob, pay):
    pay(alice, occ.course, 1)
    post_json(client, reverse('balances:attendance_set', args=[occ.pk]),
              {'student_id': alice.pk, 'attendance_status': 'present'})
    post_json(client, reverse('balances:exclusion_create', args=[occ.pk]), {'student_id': bob.pk})

    resp = client.get(reverse('balances:occurrence_detail', args=[occ.pk]))

    students = {s['name']: s for s in resp.json()['data']['students']}
    assert students['Alice']['billing_state'] == 'deducted'
    assert students['Alice']['attendance_status'] == 'present'
    assert students['Bob']['excluded'] is True
    assert students['Bob']['attendance_status'] == 'not_recorded'


@pytest.mark.django_db
def test_export_balance_report(client, occ, alice, bob, pay):
    pay(alice, occ.course, 2)
    post_json(client, reverse('balances:attendance_set', args=[occ.pk]),
              {'student_id': bob.pk, 'attendance_status': 'present'})

    resp = client.get(reverse('balances:export_balance_report'))

    assert resp.status_code == 200
    assert 'spreadsheetml' in resp['Content-Type']
    wb = openpyxl.load_workbook(BytesIO(resp.content))
    assert wb.sheetnames == ['Balances', 'Overdue']
    rows = list(wb['Balances'].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == 'Alice' and rows[0][3] == 2
    assert rows[1][0] == 'Bob' and rows[1][5] == 1
    assert wb['Overdue'].cell(row=2, column=1).value == 'Bob'


@pytest.mark.django_db
@pytest.mark.parametrize('flag, expected_remaining', [('false', 3), (False, 3), ('true', 2), (True, 2)])
def test_bulk_attendance_reconcile_flag(client, occ, alice, pay, flag, expected_remaining):
    pay(alice, occ.course, 3)
    payload = {
        'reconcile_balance': flag,
        'attendance_records': [{'student_id': alice.pk, 'attendance_status': 'present'}],
    }

    resp = post_json(client, reverse('balances:attendance_bulk', args=[occ.pk]), payload)

    assert resp.status_code == 200
    assert Payment.objects.get(student=alice).classes_remaining == expected_remaining


@pytest.mark.django_db
def test_deduct_endpoint_rejects_excluded_student(client, occ, alice, pay):
    pay(alice, occ.course, 3)
    post_json(client, reverse('balances:exclusion_create', args=[occ.pk]), {'student_id': alice.pk})

    resp = post_json(client, reverse('balances:occurrence_deduct', args=[occ.pk]), {'student_id': alice.pk})

    assert resp.status_code == 400
    assert resp.json()['reason'] == 'excluded'
    assert Payment.objects.get(student=alice).classes_remaining == 3


@pytest.mark.django_db
def test_export_filename_uses_business_date(client):
    resp = client.get(reverse('balances:export_balance_report'))
    assert f"balances_{timezone.localdate():%Y-%m-%d}.xlsx" in resp['Content-Disposition']
