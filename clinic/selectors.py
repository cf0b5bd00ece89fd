"""
======================================
读取层（Selectors）
======================================

所有「只读」查询集中在这里：
- load_visit_with_relations: 按需加载 Visit 的关联数据（病人、医生、化验单、处方、收费）
- 各个列表页的查询（带过滤条件）

写操作一律走 services.py。
"""

from django.db.models import F, Prefetch, Q

from .exceptions import ErrorCodes, Forbidden, NotFound, ValidationError
from .models import (
    LabTest,
    Medicine,
    Patient,
    Payment,
    PharmacyStatus,
    Prescription,
    PrescriptionMedicine,
    Role,
    User,
    Visit,
    VisitStatus,
)

# 关联名 → (select_related 路径, prefetch_related 路径)
VISIT_RELATIONS = {
    'patient': (['patient'], []),
    'checker_doctor': (['checker_doctor'], []),
    'main_doctor': (['main_doctor'], []),
    'lab_tests': ([], [Prefetch('lab_tests', queryset=LabTest.objects.select_related('performed_by'))]),
    'prescription': (['prescription', 'prescription__main_doctor', 'prescription__dispensed_by'],
                     ['prescription__medicines']),
    'payments': ([], [Prefetch('payments', queryset=Payment.objects.select_related('received_by'))]),
}
ALL_VISIT_RELATIONS = tuple(VISIT_RELATIONS)


def visit_queryset(relations=ALL_VISIT_RELATIONS):
    qs = Visit.objects.all()
    for name in relations:
        try:
            select, prefetch = VISIT_RELATIONS[name]
        except KeyError:
            raise ValueError(f"Unknown visit relation: {name}") from None
        if select:
            qs = qs.select_related(*select)
        if prefetch:
            qs = qs.prefetch_related(*prefetch)
    return qs


def load_visit_with_relations(visit_id, relations=ALL_VISIT_RELATIONS):
    """读取 Visit 并带上 relations 里列出的关联数据；不存在抛 NotFound"""
    try:
        return visit_queryset(relations).get(pk=visit_id)
    except Visit.DoesNotExist:
        raise NotFound(ErrorCodes.VISIT_NOT_FOUND, "Visit not found", {"visit": visit_id}) from None


def get_patient(patient_id):
    try:
        return Patient.objects.select_related('registered_by').get(pk=patient_id)
    except Patient.DoesNotExist:
        raise NotFound(ErrorCodes.PATIENT_NOT_FOUND, "Patient not found", {"patient": patient_id}) from None


# ============================================
# 列表查询
# ============================================

def list_patients(search=None):
    qs = Patient.objects.select_related('registered_by').order_by('-created_at')
    if search:
        qs = qs.filter(
            Q(first_name__icontains=search)
            | Q(last_name__icontains=search)
            | Q(phone__icontains=search)
            | Q(email__icontains=search)
        )
    return qs


def list_visits(user, status=None, paid=None, date_from=None, date_to=None, patient_id=None):
    """
    Visit 列表

    医生只看到自己负责的（checkerDoctor 额外能看到还没人接的 registered）
    """
    qs = visit_queryset(('patient', 'checker_doctor', 'main_doctor'))
    if user.role == Role.CHECKER_DOCTOR:
        qs = qs.filter(Q(checker_doctor=user) | Q(status=VisitStatus.REGISTERED))
    elif user.role == Role.MAIN_DOCTOR:
        qs = qs.filter(Q(main_doctor=user) | Q(status=VisitStatus.LAB_DONE))
    if status:
        qs = qs.filter(status=status)
    if paid is not None:
        qs = qs.filter(paid=paid)
    if date_from:
        qs = qs.filter(visit_date__date__gte=date_from)
    if date_to:
        qs = qs.filter(visit_date__date__lte=date_to)
    if patient_id:
        qs = qs.filter(patient_id=patient_id)
    return qs


def list_pending_checker_visits():
    """已付费、等待初诊的 Visit，先来先看"""
    return (
        visit_queryset(('patient',))
        .filter(status=VisitStatus.REGISTERED, paid=True)
        .order_by('visit_date')
    )


def list_lab_done_visits():
    """化验全部完成、等待主治医生开方的 Visit"""
    return (
        visit_queryset(('patient', 'checker_doctor', 'lab_tests'))
        .filter(status=VisitStatus.LAB_DONE)
        .order_by('updated_at')
    )


def list_lab_tests(is_completed=None, test_type=None):
    qs = LabTest.objects.select_related('visit__patient', 'performed_by')
    if is_completed is not None:
        qs = qs.filter(is_completed=is_completed)
    if test_type:
        qs = qs.filter(test_type=test_type)
    return qs


def prescription_queryset():
    return Prescription.objects.select_related(
        'visit__patient', 'main_doctor', 'dispensed_by'
    ).prefetch_related(
        Prefetch('medicines', queryset=PrescriptionMedicine.objects.order_by('id'))
    )


def list_pharmacy_prescriptions(pharmacy_status=None):
    qs = prescription_queryset()
    if pharmacy_status:
        qs = qs.filter(pharmacy_status=pharmacy_status)
    else:
        qs = qs.exclude(pharmacy_status=PharmacyStatus.DISPENSED)
    return qs


def get_prescription(prescription_id):
    try:
        return prescription_queryset().get(pk=prescription_id)
    except Prescription.DoesNotExist:
        raise NotFound(
            ErrorCodes.PRESCRIPTION_NOT_FOUND, "Prescription not found", {"prescription": prescription_id}
        ) from None


def get_prescription_for_visit(visit_id):
    try:
        return prescription_queryset().get(visit_id=visit_id)
    except Prescription.DoesNotExist:
        raise NotFound(
            ErrorCodes.PRESCRIPTION_NOT_FOUND, "Prescription not found", {"visit": visit_id}
        ) from None


def list_payments_for_visit(visit_id):
    if not Visit.objects.filter(pk=visit_id).exists():
        raise NotFound(ErrorCodes.VISIT_NOT_FOUND, "Visit not found", {"visit": visit_id})
    return Payment.objects.filter(visit_id=visit_id).select_related('received_by')


def list_medicines(search=None, low_stock=False):
    qs = Medicine.objects.filter(is_active=True)
    if search:
        qs = qs.filter(Q(name__icontains=search) | Q(generic_name__icontains=search))
    if low_stock:
        qs = qs.filter(stock__lte=F('minimum_stock'))
    return qs


def list_payments(payment_type=None, payment_method=None, is_paid=None, received_by=None,
                  date_from=None, date_to=None):
    qs = Payment.objects.select_related('visit__patient', 'received_by').order_by('-created_at')
    if payment_type:
        qs = qs.filter(payment_type=payment_type)
    if payment_method:
        qs = qs.filter(payment_method=payment_method)
    if is_paid is not None:
        qs = qs.filter(is_paid=is_paid)
    if received_by:
        qs = qs.filter(received_by_id=received_by)
    if date_from:
        qs = qs.filter(created_at__date__gte=date_from)
    if date_to:
        qs = qs.filter(created_at__date__lte=date_to)
    return qs


def get_payment(payment_id):
    try:
        return Payment.objects.select_related('visit__patient', 'received_by').get(pk=payment_id)
    except Payment.DoesNotExist:
        raise NotFound(ErrorCodes.PAYMENT_NOT_FOUND, "Payment not found", {"payment": payment_id}) from None


# ============================================
# 化验单
# ============================================

def get_lab_test(lab_test_id):
    try:
        return LabTest.objects.select_related('visit__patient', 'performed_by').get(pk=lab_test_id)
    except LabTest.DoesNotExist:
        raise NotFound(ErrorCodes.LAB_TEST_NOT_FOUND, "Lab test not found", {"labTest": lab_test_id}) from None


def list_pending_lab_tests():
    """待做的化验单，先开先做"""
    return list_lab_tests(is_completed=False).order_by('created_at')


def list_completed_lab_tests():
    return list_lab_tests(is_completed=True).order_by('-completed_at')


# ============================================
# checkerDoctor 自己的 Visit
# ============================================

def list_checker_visits(user, status=None):
    qs = visit_queryset(('patient', 'lab_tests')).filter(checker_doctor=user).order_by('-visit_date')
    if status:
        qs = qs.filter(status=status)
    return qs


def get_checker_visit(user, visit_id):
    """已经由别的 checkerDoctor 接手的 Visit 不给看；还没人接的可以看"""
    visit = load_visit_with_relations(visit_id)
    if visit.checker_doctor_id and visit.checker_doctor_id != user.pk:
        raise Forbidden(
            ErrorCodes.VISIT_NOT_ASSIGNED, "You are not assigned to this visit", {"visit": visit.pk}
        )
    return visit


# ============================================
# 员工账号
# ============================================

def list_users(role=None, is_active=None, search=None):
    qs = User.objects.order_by('-date_joined')
    if role:
        qs = qs.filter(role=role)
    if is_active is not None:
        qs = qs.filter(is_active=is_active)
    if search:
        qs = qs.filter(
            Q(full_name__icontains=search) | Q(email__icontains=search) | Q(username__icontains=search)
        )
    return qs


def get_user(user_id):
    try:
        return User.objects.get(pk=user_id)
    except User.DoesNotExist:
        raise NotFound(ErrorCodes.USER_NOT_FOUND, "User not found", {"user": user_id}) from None


def list_active_users_by_role(role):
    if role not in Role.values:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Invalid role", {"role": role})
    return User.objects.filter(role=role, is_active=True).order_by('full_name')
