from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Student',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100)),
                ('email', models.EmailField(blank=True, max_length=254, null=True, unique=True)),
                ('grade', models.CharField(blank=True, max_length=20)),
                ('phone', models.CharField(blank=True, max_length=20)),
                ('notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Course',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=200)),
                ('subject', models.CharField(blank=True, max_length=100)),
                ('description', models.TextField(blank=True)),
                ('duration_minutes', models.PositiveIntegerField(blank=True, default=60, null=True)),
                ('max_students', models.PositiveIntegerField(blank=True, null=True)),
                ('price_per_class', models.DecimalField(blank=True, decimal_places=2, help_text='Informational only; balances are counted in classes, not currency', max_digits=10, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Schedule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('day_of_week', models.PositiveSmallIntegerField(choices=[(0, 'Sunday'), (1, 'Monday'), (2, 'Tuesday'), (3, 'Wednesday'), (4, 'Thursday'), (5, 'Friday'), (6, 'Saturday')])),
                ('start_time', models.TimeField()),
                ('end_time', models.TimeField()),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='schedules', to='balances.course')),
            ],
            options={
                'ordering': ['day_of_week', 'start_time'],
                'unique_together': {('course', 'day_of_week', 'start_time')},
                'indexes': [models.Index(fields=['day_of_week', 'start_time'], name='idx_schedule_day_time')],
                'constraints': [models.CheckConstraint(condition=models.Q(('day_of_week__gte', 0), ('day_of_week__lte', 6)), name='schedule_day_of_week_range')],
            },
        ),
        migrations.CreateModel(
            name='Enrollment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('enrolled_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('is_active', models.BooleanField(default=True)),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='enrollments', to='balances.course')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='enrollments', to='balances.student')),
            ],
            options={
                'ordering': ['student__name'],
                'unique_together': {('student', 'course')},
            },
        ),
        migrations.CreateModel(
            name='Occurrence',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('occurrence_date', models.DateField()),
                ('start_time', models.TimeField()),
                ('end_time', models.TimeField(blank=True, null=True)),
                ('actual_duration_minutes', models.PositiveIntegerField(blank=True, null=True)),
                ('notes', models.TextField(blank=True)),
                ('was_cancelled', models.BooleanField(default=False)),
                ('is_auto_created', models.BooleanField(default=False)),
                ('is_overdue', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='occurrences', to='balances.course')),
                ('schedule', models.ForeignKey(blank=True, help_text='Empty for manually created occurrences', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='occurrences', to='balances.schedule')),
            ],
            options={
                'ordering': ['-occurrence_date', '-start_time'],
                'unique_together': {('course', 'occurrence_date', 'start_time')},
                'indexes': [
                    models.Index(fields=['occurrence_date'], name='idx_occurrence_date'),
                    models.Index(fields=['is_auto_created'], name='idx_occurrence_auto'),
                ],
            },
        ),
        migrations.CreateModel(
            name='AttendanceRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('present', 'Present'), ('absent', 'Absent'), ('late', 'Late'), ('excused', 'Excused')], default='present', max_length=20)),
                ('check_in_time', models.TimeField(blank=True, null=True)),
                ('check_out_time', models.TimeField(blank=True, null=True)),
                ('notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('occurrence', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='attendance_records', to='balances.occurrence')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='attendance_records', to='balances.student')),
            ],
            options={
                'ordering': ['-occurrence__occurrence_date', 'student__name'],
                'unique_together': {('student', 'occurrence')},
            },
        ),
        migrations.CreateModel(
            name='OccurrenceExclusion',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reason', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('occurrence', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='exclusions', to='balances.occurrence')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='exclusions', to='balances.student')),
            ],
            options={
                'unique_together': {('occurrence', 'student')},
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('payment_method', models.CharField(choices=[('wechat', 'WeChat'), ('cash', 'Cash'), ('zelle', 'Zelle'), ('paypal', 'PayPal'), ('credit_card', 'Credit Card'), ('bank_transfer', 'Bank Transfer')], max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('classes_purchased', models.PositiveIntegerField()),
                ('classes_remaining', models.PositiveIntegerField()),
                ('payment_date', models.DateTimeField(default=django.utils.timezone.now)),
                ('payment_reference', models.CharField(blank=True, max_length=100)),
                ('notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payments', to='balances.student')),
            ],
            options={
                'ordering': ['-payment_date'],
                'indexes': [models.Index(fields=['student', '-payment_date'], name='idx_payment_student_date')],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='payment_amount_positive'),
                    models.CheckConstraint(condition=models.Q(('classes_purchased__gt', 0)), name='payment_purchased_positive'),
                    models.CheckConstraint(condition=models.Q(('classes_remaining__gte', 0), ('classes_remaining__lte', models.F('classes_purchased'))), name='payment_remaining_within_purchased'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PaymentAllocation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('classes_allocated', models.PositiveIntegerField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='allocations', to='balances.course')),
                ('payment', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='allocations', to='balances.payment')),
            ],
            options={
                'unique_together': {('payment', 'course')},
                'constraints': [models.CheckConstraint(condition=models.Q(('classes_allocated__gt', 0)), name='allocation_positive')],
            },
        ),
        migrations.CreateModel(
            name='Deduction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('classes_deducted', models.PositiveIntegerField(default=1)),
                ('is_overdue_deduction', models.BooleanField(default=False)),
                ('deducted_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='deductions', to='balances.course')),
                ('occurrence', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='deductions', to='balances.occurrence')),
                ('payment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='deductions', to='balances.payment')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='deductions', to='balances.student')),
            ],
            options={
                'ordering': ['-deducted_at'],
                'unique_together': {('student', 'occurrence')},
                'indexes': [models.Index(fields=['payment', 'course'], name='idx_deduction_payment_course')],
                'constraints': [models.CheckConstraint(condition=models.Q(('classes_deducted__gt', 0)), name='deduction_positive')],
            },
        ),
        migrations.CreateModel(
            name='OverdueCharge',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('flagged_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='overdue_charges', to='balances.course')),
                ('occurrence', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='overdue_charges', to='balances.occurrence')),
                ('student', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='overdue_charges', to='balances.student')),
            ],
            options={
                'ordering': ['occurrence__occurrence_date', 'occurrence__start_time'],
                'unique_together': {('student', 'occurrence')},
            },
        ),
    ]
