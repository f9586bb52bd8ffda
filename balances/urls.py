from django.urls import path
from . import views

app_name = 'balances'

urlpatterns = [
    path('schedules/<int:pk>/materialize/', views.schedule_materialize, name='schedule_materialize'),
    path('occurrences/', views.occurrence_create, name='occurrence_create'),
    path('occurrences/<int:pk>/', views.occurrence_detail, name='occurrence_detail'),
    path('occurrences/<int:pk>/cancel/', views.occurrence_cancel, name='occurrence_cancel'),
    path('occurrences/<int:pk>/attendance/', views.attendance_set, name='attendance_set'),
    path('occurrences/<int:pk>/attendance/bulk/', views.attendance_bulk, name='attendance_bulk'),
    path('occurrences/<int:pk>/exclusions/', views.exclusion_create, name='exclusion_create'),
    path('occurrences/<int:pk>/exclusions/<int:student_id>/', views.exclusion_delete, name='exclusion_delete'),
    path('occurrences/<int:pk>/deduct/', views.occurrence_deduct, name='occurrence_deduct'),
    path('occurrences/<int:pk>/refund/', views.occurrence_refund, name='occurrence_refund'),
    path('payments/', views.payment_create, name='payment_create'),
    path('payments/<int:pk>/allocate/', views.payment_allocate, name='payment_allocate'),
    path('reports/balances.xlsx', views.export_balance_report, name='export_balance_report'),
]
