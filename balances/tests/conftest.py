from datetime import time
from decimal import Decimal

import pytest

from balances import engine
from balances.models import Course, Enrollment, Schedule, Student


@pytest.fixture
def math():
    return Course.objects.create(name="Math", subject="Math", duration_minutes=90)


@pytest.fixture
def monday_schedule(math):
    return Schedule.objects.create(course=math, day_of_week=1, start_time=time(14, 0), end_time=time(15, 30))


@pytest.fixture
def alice(math):
    s = Student.objects.create(name="Alice", email="alice@example.com")
    Enrollment.objects.create(student=s, course=math)
    return s


@pytest.fixture
def bob(math):
    s = Student.objects.create(name="Bob", email="bob@example.com")
    Enrollment.objects.create(student=s, course=math)
    return s


@pytest.fixture
def pay():
    """Record a payment with every purchased class allocated to one course."""
    def _pay(student, course, classes, allocated=None, when=None):
        result = engine.create_payment(
            student, "cash", Decimal("30.00") * classes, classes,
            allocations=[(course, allocated if allocated is not None else classes)],
            payment_date=when,
        )
        assert result.success, result.reason
        return result.entity
    return _pay
