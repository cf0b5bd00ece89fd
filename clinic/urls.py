from django.urls import path
from . import views

urlpatterns = [
    # ===== 登录 =====
    path('auth/login/', views.login, name='login'),
    path('auth/me/', views.me, name='me'),

    # ===== 病人 =====
    path('patients/', views.patients, name='patients'),
    path('patients/<int:pk>/', views.patient_detail, name='patient_detail'),

    # ===== 就诊 =====
    path('visits/', views.visits, name='visits'),
    path('visits/<int:pk>/', views.visit_detail, name='visit_detail'),
    path('visits/<int:pk>/status/', views.visit_status, name='visit_status'),

    # ===== 初诊 =====
    path('checker/visits/', views.checker_visits, name='checker_visits'),
    path('checker/visits/pending/', views.checker_pending, name='checker_pending'),
    path('checker/visits/<int:pk>/', views.checker_visit_detail, name='checker_visit_detail'),
    path('checker/visits/<int:pk>/checker/', views.checker_assessment, name='checker_assessment'),
    path('checker/visits/<int:pk>/direct/', views.checker_direct, name='checker_direct'),

    # ===== 化验 =====
    path('labs/', views.labs, name='labs'),
    path('labs/pending/', views.labs_pending, name='labs_pending'),
    path('labs/completed/', views.labs_completed, name='labs_completed'),
    path('labs/<int:pk>/', views.lab_detail, name='lab_detail'),
    path('labs/<int:pk>/result/', views.lab_result, name='lab_result'),

    # ===== 处方 =====
    path('prescriptions/', views.prescriptions, name='prescriptions'),
    path('prescriptions/lab-done/', views.prescriptions_lab_done, name='prescriptions_lab_done'),
    path('prescriptions/<int:pk>/', views.prescription_detail, name='prescription_detail'),
    path('prescriptions/visit/<int:visit_id>/', views.prescription_for_visit, name='prescription_for_visit'),

    # ===== 药房 =====
    path('pharmacy/prescriptions/', views.pharmacy_prescriptions, name='pharmacy_prescriptions'),
    path('pharmacy/prescriptions/<int:pk>/dispense/', views.dispense, name='dispense'),
    path('pharmacy/prescriptions/<int:pk>/partial-dispense/', views.partial_dispense, name='partial_dispense'),
    path('pharmacy/medicines/', views.medicines, name='medicines'),
    path('pharmacy/medicines/<int:pk>/stock/', views.medicine_stock, name='medicine_stock'),

    # ===== 收费 =====
    path('payments/', views.payments, name='payments'),
    path('payments/visit/<int:visit_id>/', views.payments_for_visit, name='payments_for_visit'),
    path('payments/<int:pk>/', views.payment_detail, name='payment_detail'),
    path('payments/<int:pk>/confirm/', views.payment_confirm, name='payment_confirm'),

    # ===== 员工账号 =====
    path('users/', views.users, name='users'),
    path('users/role/<str:role>/', views.users_by_role, name='users_by_role'),
    path('users/<int:pk>/', views.user_detail, name='user_detail'),
    path('users/<int:pk>/toggle-status/', views.user_toggle_status, name='user_toggle_status'),

    # ===== 通知 =====
    path('notifications/', views.notifications, name='notifications'),
]
