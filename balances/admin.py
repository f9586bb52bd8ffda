from django.contrib import admin
from .models import (
    AttendanceRecord,
    Course,
    Deduction,
    Enrollment,
    Occurrence,
    OccurrenceExclusion,
    OverdueCharge,
    Payment,
    PaymentAllocation,
    Schedule,
    Student,
)


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ("name", "grade", "email", "phone")
    search_fields = ("name", "email", "phone")


@admin.register(Course)
class CourseAdmin(admin.ModelAdmin):
    list_display = ("name", "subject", "duration_minutes", "max_students", "price_per_class")
    search_fields = ("name", "subject")


@admin.register(Schedule)
class ScheduleAdmin(admin.ModelAdmin):
    list_display = ("course", "day_of_week", "start_time", "end_time", "is_active")
    list_filter = ("day_of_week", "is_active")


@admin.register(Enrollment)
class EnrollmentAdmin(admin.ModelAdmin):
    list_display = ("student", "course", "enrolled_at", "is_active")
    list_filter = ("course", "is_active")
    search_fields = ("student__name",)


class AttendanceInline(admin.TabularInline):
    model = AttendanceRecord
    extra = 0


@admin.register(Occurrence)
class OccurrenceAdmin(admin.ModelAdmin):
    list_display = ("course", "occurrence_date", "start_time", "end_time", "is_auto_created", "was_cancelled", "is_overdue")
    list_filter = ("course", "is_auto_created", "was_cancelled", "is_overdue")
    date_hierarchy = "occurrence_date"
    # Billing fields change only through the balance operations
    readonly_fields = ("is_overdue",)
    inlines = [AttendanceInline]


@admin.register(AttendanceRecord)
class AttendanceRecordAdmin(admin.ModelAdmin):
    list_display = ("student", "occurrence", "status", "check_in_time", "check_out_time")
    list_filter = ("status", "occurrence__course")
    search_fields = ("student__name",)


@admin.register(OccurrenceExclusion)
class OccurrenceExclusionAdmin(admin.ModelAdmin):
    list_display = ("student", "occurrence", "reason", "created_at")
    search_fields = ("student__name",)


class AllocationInline(admin.TabularInline):
    model = PaymentAllocation
    extra = 0


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("student", "payment_date", "payment_method", "amount", "classes_purchased", "classes_remaining")
    list_filter = ("payment_method",)
    search_fields = ("student__name", "payment_reference")
    readonly_fields = ("classes_remaining",)
    inlines = [AllocationInline]

    def save_model(self, request, obj, form, change):
        if not change:
            obj.classes_remaining = obj.classes_purchased
        super().save_model(request, obj, form, change)


@admin.register(Deduction)
class DeductionAdmin(admin.ModelAdmin):
    list_display = ("student", "occurrence", "payment", "classes_deducted", "is_overdue_deduction", "deducted_at")
    list_filter = ("is_overdue_deduction", "course")
    search_fields = ("student__name",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(OverdueCharge)
class OverdueChargeAdmin(admin.ModelAdmin):
    list_display = ("student", "course", "occurrence", "flagged_at")
    list_filter = ("course",)
    search_fields = ("student__name",)

    def has_add_permission(self, request):
        return False
