"""
===============================================================================
视图层 (Views)
===============================================================================

【架构职责】
-----------
views.py 只做三件事：
1. 用 Serializer 校验输入（失败 → DRF ValidationError → 400）
2. 调用 services.py / selectors.py
3. 把结果包成统一格式 {"success": true, "message": ..., "data": ...}

【与异常处理的关系】
-----------------
views.py 调用 → services.py
                   ↓
              raise Forbidden / NotFound / InvalidState / ...
                   ↓
              DRF 捕获 → custom_exception_handler → 统一 JSON

所以这里不自己拼错误响应；唯一的 try/except 是化验结果失败时删掉已保存的附件，删完照样往上抛。

【角色检查放在最前面】
--------------------
只有一种角色能调用的接口用 permission_classes（在解析请求体之前执行）；
GET / POST 角色不同的接口，在视图里先调用 lifecycle.ensure_role 再校验输入。
"""

import logging
import os
import uuid

from django.contrib.auth import authenticate
from django.core.files.storage import default_storage
from django.core.paginator import Paginator
from django.db import connection
from django.utils import timezone
from rest_framework import status
from rest_framework.authtoken.models import Token
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.exceptions import AuthenticationFailed
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from . import selectors, serializers, services
from .lifecycle import ensure_role
from .models import Role
from .notifications import get_recent_notifications
from .permissions import role_required

logger = logging.getLogger(__name__)


# ============================================================================
# 工具函数
# ============================================================================

def ok(data=None, message=None, status_code=status.HTTP_200_OK):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return Response(body, status=status_code)


def query_bool(value):
    """'true' / 'false' → True / False，其他 → None（不过滤）"""
    if value is None:
        return None
    value = value.lower()
    if value in ('true', '1'):
        return True
    if value in ('false', '0'):
        return False
    return None


def query_int(value):
    """'12' → 12，其他 → None（不过滤）"""
    if value is None or not value.isdigit():
        return None
    return int(value)


def paginate(request, queryset, serializer, key):
    """?page=1&limit=10 分页，返回 {key: [...], "pagination": {...}}"""
    try:
        page_number = max(int(request.query_params.get('page', 1)), 1)
        limit = min(max(int(request.query_params.get('limit', 10)), 1), 100)
    except ValueError:
        page_number, limit = 1, 10
    paginator = Paginator(queryset, limit)
    page = paginator.get_page(page_number)
    return {
        key: [serializer(item) for item in page.object_list],
        "pagination": {
            "page": page.number,
            "limit": limit,
            "total": paginator.count,
            "pages": paginator.num_pages,
        },
    }


def save_upload(uploaded):
    """保存化验结果附件，返回存储里的路径"""
    _, ext = os.path.splitext(uploaded.name)
    return default_storage.save(f"lab-results/resultFile-{uuid.uuid4().hex}{ext.lower()}", uploaded)


# ============================================================================
# 健康检查 / 登录
# ============================================================================

@api_view(['GET'])
@authentication_classes([])
@permission_classes([AllowAny])
def health(request):
    """存活检查：顺便确认数据库可以连接"""
    connection.ensure_connection()
    return ok({"status": "ok", "timestamp": timezone.now().isoformat()}, "Hospital API is running")


@api_view(['POST'])
@permission_classes([AllowAny])
def login(request):
    s = serializers.LoginSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    user = authenticate(request, **s.validated_data)
    if user is None:
        raise AuthenticationFailed("Invalid credentials")
    token, _ = Token.objects.get_or_create(user=user)
    logger.info("User %s logged in", user.pk)
    return ok({"token": token.key, "user": serializers.serialize_user(user)}, "Login successful")


@api_view(['GET'])
def me(request):
    return ok({"user": serializers.serialize_user(request.user)})


# ============================================================================
# 病人
# ============================================================================

@api_view(['GET', 'POST'])
def patients(request):
    if request.method == 'GET':
        qs = selectors.list_patients(search=request.query_params.get('search'))
        return ok(paginate(request, qs, serializers.serialize_patient, "patients"))

    ensure_role(request.user, services.FRONT_DESK_ROLES)
    s = serializers.PatientInputSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    patient = services.register_patient(request.user, **s.validated_data)
    return ok({"patient": serializers.serialize_patient(patient)},
              "Patient registered successfully", status.HTTP_201_CREATED)


@api_view(['GET', 'PUT', 'DELETE'])
def patient_detail(request, pk):
    if request.method == 'GET':
        return ok({"patient": serializers.serialize_patient(selectors.get_patient(pk))})

    if request.method == 'DELETE':
        services.delete_patient(request.user, pk)
        return ok(message="Patient deleted successfully")

    ensure_role(request.user, services.FRONT_DESK_ROLES)
    s = serializers.PatientInputSerializer(data=request.data, partial=True)
    s.is_valid(raise_exception=True)
    patient = services.update_patient(request.user, pk, **s.validated_data)
    return ok({"patient": serializers.serialize_patient(patient)}, "Patient updated successfully")


# ============================================================================
# 就诊
# ============================================================================

@api_view(['GET', 'POST'])
def visits(request):
    if request.method == 'GET':
        params = request.query_params
        qs = selectors.list_visits(
            request.user,
            status=params.get('status'),
            paid=query_bool(params.get('paid')),
            date_from=params.get('dateFrom'),
            date_to=params.get('dateTo'),
            patient_id=params.get('patient'),
        )
        return ok(paginate(request, qs, serializers.serialize_visit, "visits"))

    ensure_role(request.user, services.FRONT_DESK_ROLES)
    s = serializers.VisitCreateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    data = s.validated_data
    visit = services.create_visit(
        request.user,
        patient_id=data['patient'],
        complaint=data['complaint'],
        visit_date=data.get('visit_date'),
        notes=data.get('notes', ''),
    )
    visit = selectors.load_visit_with_relations(visit.pk)
    return ok({"visit": serializers.serialize_visit(visit, detail=True)},
              "Visit created successfully", status.HTTP_201_CREATED)


@api_view(['GET'])
def visit_detail(request, pk):
    visit = selectors.load_visit_with_relations(pk)
    return ok({"visit": serializers.serialize_visit(visit, detail=True)})


@api_view(['PUT'])
def visit_status(request, pk):
    """通用状态变更：角色按目标状态查表，在 services.transition_visit 里检查"""
    s = serializers.VisitStatusSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    services.transition_visit(request.user, pk, s.validated_data['status'], s.validated_data.get('notes'))
    visit = selectors.load_visit_with_relations(pk)
    return ok({"visit": serializers.serialize_visit(visit, detail=True)}, "Visit status updated successfully")


# ============================================================================
# 初诊（checkerDoctor）
# ============================================================================

@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.CHECKER_DOCTOR)])
def checker_pending(request):
    qs = selectors.list_pending_checker_visits()
    return ok(paginate(request, qs, serializers.serialize_visit, "visits"))


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(Role.CHECKER_DOCTOR)])
def checker_assessment(request, pk):
    s = serializers.CheckerAssessmentSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    services.record_checker_assessment(
        request.user, pk, s.validated_data['symptoms'], s.validated_data.get('lab_tests', []),
    )
    visit = selectors.load_visit_with_relations(pk)
    return ok({"visit": serializers.serialize_visit(visit, detail=True)}, "Checker assessment recorded")


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(Role.CHECKER_DOCTOR)])
def checker_direct(request, pk):
    s = serializers.CheckerDirectSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    services.record_checker_direct(
        request.user, pk, s.validated_data['symptoms'], s.validated_data.get('diagnosis') or None,
    )
    visit = selectors.load_visit_with_relations(pk)
    return ok({"visit": serializers.serialize_visit(visit, detail=True)}, "Direct diagnosis recorded")


@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.CHECKER_DOCTOR)])
def checker_visits(request):
    """自己接手过的 Visit"""
    qs = selectors.list_checker_visits(request.user, status=request.query_params.get('status'))
    return ok(paginate(request, qs, serializers.serialize_visit, "visits"))


@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.CHECKER_DOCTOR)])
def checker_visit_detail(request, pk):
    visit = selectors.get_checker_visit(request.user, pk)
    return ok({"visit": serializers.serialize_visit(visit, detail=True)})


# ============================================================================
# 化验
# ============================================================================

@api_view(['GET', 'POST'])
def labs(request):
    if request.method == 'GET':
        ensure_role(request.user, (Role.LAB_TECH,))
        qs = selectors.list_lab_tests(
            is_completed=query_bool(request.query_params.get('isCompleted')),
            test_type=request.query_params.get('testType'),
        )
        return ok(paginate(request, qs, serializers.serialize_lab_test, "labTests"))

    ensure_role(request.user, services.LAB_ORDER_ROLES)
    s = serializers.LabOrderSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    created = services.order_lab_tests(request.user, s.validated_data['visit'], s.validated_data['lab_tests'])
    return ok({"labTests": [serializers.serialize_lab_test(test) for test in created]},
              "Lab tests ordered successfully", status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.LAB_TECH)])
def labs_pending(request):
    tests = selectors.list_pending_lab_tests()
    return ok({"labTests": [serializers.serialize_lab_test(test) for test in tests]})


@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.LAB_TECH)])
def labs_completed(request):
    qs = selectors.list_completed_lab_tests()
    return ok(paginate(request, qs, serializers.serialize_lab_test, "labTests"))


@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.LAB_TECH)])
def lab_detail(request, pk):
    return ok({"labTest": serializers.serialize_lab_test(selectors.get_lab_test(pk))})


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(Role.LAB_TECH)])
def lab_result(request, pk):
    s = serializers.LabResultSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    data = s.validated_data
    path = save_upload(data['result_file']) if data.get('result_file') else None
    try:
        test = services.complete_lab_test(
            request.user, pk, data['result'],
            file_url=default_storage.url(path) if path else None,
            notes=data.get('notes'),
        )
    except Exception:
        # 结果没写进去，附件也不留
        if path:
            default_storage.delete(path)
        raise
    return ok({"labTest": serializers.serialize_lab_test(test)}, "Lab test result updated successfully")


# ============================================================================
# 处方（mainDoctor）
# ============================================================================

@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.MAIN_DOCTOR)])
def prescriptions_lab_done(request):
    qs = selectors.list_lab_done_visits()
    return ok(paginate(request, qs, lambda v: serializers.serialize_visit(v, detail=False), "visits"))


@api_view(['POST'])
@permission_classes([IsAuthenticated, role_required(Role.MAIN_DOCTOR)])
def prescriptions(request):
    s = serializers.PrescriptionCreateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    data = s.validated_data
    prescription = services.create_prescription(
        request.user,
        data['visit'],
        data['medicines'],
        diagnosis=data.get('diagnosis') or None,
        notes=data.get('notes'),
    )
    prescription = selectors.prescription_queryset().get(pk=prescription.pk)
    return ok({"prescription": serializers.serialize_prescription(prescription)},
              "Prescription created successfully", status.HTTP_201_CREATED)


@api_view(['GET', 'PUT'])
def prescription_detail(request, pk):
    if request.method == 'GET':
        return ok({"prescription": serializers.serialize_prescription(selectors.get_prescription(pk))})

    ensure_role(request.user, (Role.MAIN_DOCTOR,))
    s = serializers.PrescriptionUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    services.update_prescription(
        request.user, pk, medicines=s.validated_data.get('medicines'), notes=s.validated_data.get('notes'),
    )
    prescription = selectors.get_prescription(pk)
    return ok({"prescription": serializers.serialize_prescription(prescription)},
              "Prescription updated successfully")


@api_view(['GET'])
def prescription_for_visit(request, visit_id):
    prescription = selectors.get_prescription_for_visit(visit_id)
    return ok({"prescription": serializers.serialize_prescription(prescription)})


# ============================================================================
# 药房（pharmacy）
# ============================================================================

@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.PHARMACY)])
def pharmacy_prescriptions(request):
    s = serializers.PharmacyFilterSerializer(data=request.query_params)
    s.is_valid(raise_exception=True)
    qs = selectors.list_pharmacy_prescriptions(s.validated_data.get('pharmacyStatus'))
    return ok(paginate(request, qs, serializers.serialize_prescription, "prescriptions"))


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(Role.PHARMACY)])
def dispense(request, pk):
    s = serializers.DispenseSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    services.dispense_prescription(request.user, pk, notes=s.validated_data.get('notes'))
    prescription = selectors.prescription_queryset().get(pk=pk)
    return ok({"prescription": serializers.serialize_prescription(prescription)},
              "Prescription dispensed successfully")


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(Role.PHARMACY)])
def partial_dispense(request, pk):
    s = serializers.PartialDispenseSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    services.partial_dispense_prescription(
        request.user, pk, s.validated_data['dispensed_medicines'], notes=s.validated_data.get('notes'),
    )
    prescription = selectors.prescription_queryset().get(pk=pk)
    return ok({"prescription": serializers.serialize_prescription(prescription)},
              "Prescription partially dispensed successfully")


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, role_required(*services.INVENTORY_ROLES)])
def medicines(request):
    if request.method == 'GET':
        qs = selectors.list_medicines(
            search=request.query_params.get('search'),
            low_stock=query_bool(request.query_params.get('lowStock')) is True,
        )
        return ok(paginate(request, qs, serializers.serialize_medicine, "medicines"))

    s = serializers.MedicineInputSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    medicine = services.create_medicine(request.user, **s.validated_data)
    return ok({"medicine": serializers.serialize_medicine(medicine)},
              "Medicine created successfully", status.HTTP_201_CREATED)


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(*services.INVENTORY_ROLES)])
def medicine_stock(request, pk):
    s = serializers.StockUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    medicine = services.adjust_medicine_stock(
        request.user, pk, s.validated_data['stock'], s.validated_data['operation'],
    )
    return ok({"medicine": serializers.serialize_medicine(medicine)}, "Medicine stock updated successfully")


# ============================================================================
# 收费
# ============================================================================

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, role_required(*services.FRONT_DESK_ROLES)])
def payments(request):
    if request.method == 'GET':
        params = request.query_params
        qs = selectors.list_payments(
            payment_type=params.get('paymentType'),
            payment_method=params.get('paymentMethod'),
            is_paid=query_bool(params.get('isPaid')),
            received_by=query_int(params.get('receivedBy')),
            date_from=params.get('startDate'),
            date_to=params.get('endDate'),
        )
        return ok(paginate(request, qs, serializers.serialize_payment, "payments"))

    s = serializers.PaymentCreateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    data = s.validated_data
    payment = services.record_payment(
        request.user,
        data['visit'],
        data['amount'],
        data['payment_type'],
        payment_method=data['payment_method'],
        transaction_id=data.get('transaction_id'),
        notes=data.get('notes'),
        is_paid=data['is_paid'],
    )
    return ok({"payment": serializers.serialize_payment(payment)},
              "Payment recorded successfully", status.HTTP_201_CREATED)


@api_view(['GET'])
def payments_for_visit(request, visit_id):
    qs = selectors.list_payments_for_visit(visit_id)
    return ok({"payments": [serializers.serialize_payment(payment) for payment in qs]})


@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(*services.FRONT_DESK_ROLES)])
def payment_detail(request, pk):
    return ok({"payment": serializers.serialize_payment(selectors.get_payment(pk))})


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(*services.FRONT_DESK_ROLES)])
def payment_confirm(request, pk):
    payment = services.confirm_payment(request.user, pk)
    return ok({"payment": serializers.serialize_payment(payment)}, "Payment confirmed successfully")


# ============================================================================
# 通知补发
# ============================================================================

@api_view(['GET'])
def notifications(request):
    """当前角色最近的通知（WebSocket 断线重连后用来补齐）"""
    events = get_recent_notifications(request.user.role)
    return ok({"notifications": events})


# ============================================================================
# 员工账号（admin）
# ============================================================================

@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.ADMIN)])
def users(request):
    params = request.query_params
    qs = selectors.list_users(
        role=params.get('role'),
        is_active=query_bool(params.get('isActive')),
        search=params.get('search'),
    )
    return ok(paginate(request, qs, serializers.serialize_user, "users"))


@api_view(['GET', 'PUT', 'DELETE'])
@permission_classes([IsAuthenticated, role_required(Role.ADMIN)])
def user_detail(request, pk):
    if request.method == 'GET':
        return ok({"user": serializers.serialize_user(selectors.get_user(pk))})

    if request.method == 'DELETE':
        services.delete_user(request.user, pk)
        return ok(message="User deleted successfully")

    s = serializers.UserUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    user = services.update_user(request.user, pk, **s.validated_data)
    return ok({"user": serializers.serialize_user(user)}, "User updated successfully")


@api_view(['PUT'])
@permission_classes([IsAuthenticated, role_required(Role.ADMIN)])
def user_toggle_status(request, pk):
    user = services.toggle_user_status(request.user, pk)
    state = "activated" if user.is_active else "deactivated"
    return ok({"user": serializers.serialize_user(user)}, f"User {state} successfully")


@api_view(['GET'])
@permission_classes([IsAuthenticated, role_required(Role.ADMIN)])
def users_by_role(request, role):
    qs = selectors.list_active_users_by_role(role)
    return ok({"users": [serializers.serialize_user(user) for user in qs]})
