from django.db import models
from django.db.models import Q, F
from django.utils import timezone

# Attendance statuses; a missing record reads as NOT_RECORDED
PRESENT = "present"
ABSENT = "absent"
LATE = "late"
EXCUSED = "excused"
NOT_RECORDED = "not_recorded"

STATUS_CHOICES = (
    (PRESENT, "Present"),
    (ABSENT, "Absent"),
    (LATE, "Late"),
    (EXCUSED, "Excused"),
)

PAYMENT_METHOD_CHOICES = (
    ("wechat", "WeChat"),
    ("cash", "Cash"),
    ("zelle", "Zelle"),
    ("paypal", "PayPal"),
    ("credit_card", "Credit Card"),
    ("bank_transfer", "Bank Transfer"),
)

# Schedules count days from Sunday
DAY_OF_WEEK_CHOICES = (
    (0, "Sunday"),
    (1, "Monday"),
    (2, "Tuesday"),
    (3, "Wednesday"),
    (4, "Thursday"),
    (5, "Friday"),
    (6, "Saturday"),
)


def day_of_week(d):
    """Sunday-based weekday index (0-6) for a date."""
    return (d.weekday() + 1) % 7


class BillingState(models.TextChoices):
    UNBILLED = "unbilled", "Unbilled"
    DEDUCTED = "deducted", "Deducted"
    OVERDUE = "overdue", "Overdue"


class Student(models.Model):
    name = models.CharField(max_length=100)
    email = models.EmailField(unique=True, blank=True, null=True)
    grade = models.CharField(max_length=20, blank=True)
    phone = models.CharField(max_length=20, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Course(models.Model):
    name = models.CharField(max_length=200)
    subject = models.CharField(max_length=100, blank=True)
    description = models.TextField(blank=True)
    duration_minutes = models.PositiveIntegerField(blank=True, null=True, default=60)
    max_students = models.PositiveIntegerField(blank=True, null=True)
    price_per_class = models.DecimalField(
        max_digits=10, decimal_places=2, blank=True, null=True,
        help_text="Informational only; balances are counted in classes, not currency",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Schedule(models.Model):
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="schedules")
    day_of_week = models.PositiveSmallIntegerField(choices=DAY_OF_WEEK_CHOICES)
    start_time = models.TimeField()
    end_time = models.TimeField()
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("course", "day_of_week", "start_time")
        ordering = ["day_of_week", "start_time"]
        indexes = [
            models.Index(fields=["day_of_week", "start_time"], name="idx_schedule_day_time"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(day_of_week__gte=0, day_of_week__lte=6), name="schedule_day_of_week_range"),
        ]

    def __str__(self):
        return f"{self.course} - {self.get_day_of_week_display()} {self.start_time:%H:%M}"


class Enrollment(models.Model):
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="enrollments")
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="enrollments")
    enrolled_at = models.DateTimeField(default=timezone.now)
    is_active = models.BooleanField(default=True)

    class Meta:
        unique_together = ("student", "course")
        ordering = ["student__name"]

    def __str__(self):
        return f"{self.student} - {self.course}"


class Occurrence(models.Model):
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="occurrences")
    schedule = models.ForeignKey(
        Schedule, on_delete=models.SET_NULL, null=True, blank=True, related_name="occurrences",
        help_text="Empty for manually created occurrences",
    )
    occurrence_date = models.DateField()
    start_time = models.TimeField()
    end_time = models.TimeField(blank=True, null=True)
    actual_duration_minutes = models.PositiveIntegerField(blank=True, null=True)
    notes = models.TextField(blank=True)
    was_cancelled = models.BooleanField(default=False)
    is_auto_created = models.BooleanField(default=False)
    # True while at least one student has an OverdueCharge on this occurrence
    is_overdue = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("course", "occurrence_date", "start_time")
        ordering = ["-occurrence_date", "-start_time"]
        indexes = [
            models.Index(fields=["occurrence_date"], name="idx_occurrence_date"),
            models.Index(fields=["is_auto_created"], name="idx_occurrence_auto"),
        ]

    def __str__(self):
        return f"{self.course} on {self.occurrence_date} {self.start_time:%H:%M}"


class AttendanceRecord(models.Model):
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="attendance_records")
    occurrence = models.ForeignKey(Occurrence, on_delete=models.CASCADE, related_name="attendance_records")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PRESENT)
    check_in_time = models.TimeField(blank=True, null=True)
    check_out_time = models.TimeField(blank=True, null=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("student", "occurrence")
        ordering = ["-occurrence__occurrence_date", "student__name"]

    def __str__(self):
        return f"{self.student} - {self.occurrence}: {self.get_status_display()}"


class OccurrenceExclusion(models.Model):
    """A student sitting out one specific occurrence; no attendance, no billing."""
    occurrence = models.ForeignKey(Occurrence, on_delete=models.CASCADE, related_name="exclusions")
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="exclusions")
    reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("occurrence", "student")

    def __str__(self):
        return f"{self.student} excluded from {self.occurrence}"


class Payment(models.Model):
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="payments")
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    classes_purchased = models.PositiveIntegerField()
    # Projection of the deduction ledger: purchased minus linked deductions
    classes_remaining = models.PositiveIntegerField()
    payment_date = models.DateTimeField(default=timezone.now)
    payment_reference = models.CharField(max_length=100, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-payment_date"]
        indexes = [
            models.Index(fields=["student", "-payment_date"], name="idx_payment_student_date"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="payment_amount_positive"),
            models.CheckConstraint(condition=Q(classes_purchased__gt=0), name="payment_purchased_positive"),
            models.CheckConstraint(
                condition=Q(classes_remaining__gte=0, classes_remaining__lte=F("classes_purchased")),
                name="payment_remaining_within_purchased",
            ),
        ]

    def __str__(self):
        return f"{self.student} - {self.classes_remaining}/{self.classes_purchased} classes ({self.payment_date:%Y-%m-%d})"


class PaymentAllocation(models.Model):
    payment = models.ForeignKey(Payment, on_delete=models.CASCADE, related_name="allocations")
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="allocations")
    classes_allocated = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("payment", "course")
        constraints = [
            models.CheckConstraint(condition=Q(classes_allocated__gt=0), name="allocation_positive"),
        ]

    def __str__(self):
        return f"{self.payment_id} -> {self.course}: {self.classes_allocated}"


class Deduction(models.Model):
    """One consumed class-credit. At most one per (student, occurrence)."""
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="deductions")
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="deductions")
    occurrence = models.ForeignKey(Occurrence, on_delete=models.CASCADE, related_name="deductions")
    payment = models.ForeignKey(Payment, on_delete=models.SET_NULL, null=True, blank=True, related_name="deductions")
    classes_deducted = models.PositiveIntegerField(default=1)
    is_overdue_deduction = models.BooleanField(default=False)
    deducted_at = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ("student", "occurrence")
        ordering = ["-deducted_at"]
        indexes = [
            models.Index(fields=["payment", "course"], name="idx_deduction_payment_course"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(classes_deducted__gt=0), name="deduction_positive"),
        ]

    def __str__(self):
        return f"{self.student} - {self.occurrence} ({self.classes_deducted})"


class OverdueCharge(models.Model):
    """A student attended an occurrence that no prepaid credit could cover."""
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="overdue_charges")
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="overdue_charges")
    occurrence = models.ForeignKey(Occurrence, on_delete=models.CASCADE, related_name="overdue_charges")
    flagged_at = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ("student", "occurrence")
        ordering = ["occurrence__occurrence_date", "occurrence__start_time"]

    def __str__(self):
        return f"{self.student} owes {self.occurrence}"
