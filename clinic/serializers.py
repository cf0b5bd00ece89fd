"""
======================================
数据序列化层
======================================

负责数据格式转换：
- 前端数据 → 后端格式（输入验证）：DRF Serializer，前端用 camelCase，
  通过 source= 映射成 services.py 用的 snake_case
- 后端数据 → 前端格式（JSON）：serialize_xxx() 普通函数

输入验证失败时 DRF 抛 ValidationError，由 custom_exception_handler 统一转成 400，
请求不会进入 services.py。
"""

from django.conf import settings
from rest_framework import serializers

from .models import LabTest, Medicine, Patient, Payment, PharmacyStatus, Role, VisitStatus


# ============================================
# 输入验证：前端 → 后端
# ============================================

class LoginSerializer(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(max_length=128, trim_whitespace=False)


# ---------- 病人 ----------

class AddressSerializer(serializers.Serializer):
    street = serializers.CharField(max_length=100, required=False, allow_blank=True)
    city = serializers.CharField(max_length=50, required=False, allow_blank=True)
    state = serializers.CharField(max_length=50, required=False, allow_blank=True)
    zipCode = serializers.RegexField(r'^\d{5}(-\d{4})?$', source='zip_code', required=False, allow_blank=True)
    country = serializers.CharField(max_length=50, required=False)


class PatientInputSerializer(serializers.Serializer):
    """注册 / 修改病人（修改时用 partial=True）"""
    firstName = serializers.CharField(max_length=50, source='first_name')
    lastName = serializers.CharField(max_length=50, source='last_name')
    gender = serializers.ChoiceField(choices=Patient.Gender.choices)
    age = serializers.IntegerField(min_value=0, max_value=150)
    phone = serializers.RegexField(r'^\+?[\d\s\-()]+$', max_length=30)
    email = serializers.EmailField(required=False, allow_blank=True)
    # 地址字段平铺到 validated_data 里
    address = AddressSerializer(required=False, source='*')


# ---------- 就诊 ----------

class VisitCreateSerializer(serializers.Serializer):
    patient = serializers.IntegerField(min_value=1)
    complaint = serializers.CharField(max_length=1000)
    visitDate = serializers.DateTimeField(source='visit_date', required=False)
    notes = serializers.CharField(max_length=2000, required=False, allow_blank=True)


class VisitStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=VisitStatus.choices)
    notes = serializers.CharField(max_length=2000, required=False, allow_blank=True)


# ---------- 化验 ----------

class LabTestItemSerializer(serializers.Serializer):
    """开一张化验单"""
    testName = serializers.CharField(max_length=100, source='test_name')
    testType = serializers.ChoiceField(choices=LabTest.TestType.choices, source='test_type')
    cost = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False, default=0)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)


class CheckerAssessmentSerializer(serializers.Serializer):
    symptoms = serializers.CharField(max_length=1000)
    labTests = LabTestItemSerializer(many=True, required=False, source='lab_tests')


class CheckerDirectSerializer(serializers.Serializer):
    symptoms = serializers.CharField(max_length=1000)
    diagnosis = serializers.CharField(max_length=1000, required=False, allow_blank=True)


class LabOrderSerializer(serializers.Serializer):
    visit = serializers.IntegerField(min_value=1)
    labTests = LabTestItemSerializer(many=True, allow_empty=False, source='lab_tests')


class LabResultSerializer(serializers.Serializer):
    """
    录入化验结果（multipart）

    resultFile 只接受图片 / PDF / 文本 / Word，大小不超过 MAX_UPLOAD_SIZE
    """
    result = serializers.CharField(max_length=2000)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)
    resultFile = serializers.FileField(source='result_file', required=False)

    def validate_resultFile(self, value):
        if value.size > settings.MAX_UPLOAD_SIZE:
            raise serializers.ValidationError(
                f"File too large. Maximum size is {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB"
            )
        if getattr(value, 'content_type', None) not in settings.ALLOWED_UPLOAD_TYPES:
            raise serializers.ValidationError(
                "Invalid file type. Only images, PDFs, and documents are allowed."
            )
        return value


# ---------- 处方 / 发药 ----------

class MedicineLineSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    dosage = serializers.CharField(max_length=50)
    duration = serializers.CharField(max_length=50)
    instruction = serializers.CharField(max_length=200)
    quantity = serializers.IntegerField(min_value=1)


class PrescriptionCreateSerializer(serializers.Serializer):
    visit = serializers.IntegerField(min_value=1)
    medicines = MedicineLineSerializer(many=True, allow_empty=False)
    diagnosis = serializers.CharField(max_length=1000, required=False, allow_blank=True)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)


class PrescriptionUpdateSerializer(serializers.Serializer):
    """修改处方：medicines 传了就整张替换"""
    medicines = MedicineLineSerializer(many=True, allow_empty=False, required=False)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)


class DispenseSerializer(serializers.Serializer):
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)


class DispensedMedicineSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    quantity = serializers.IntegerField(min_value=1)


class PartialDispenseSerializer(serializers.Serializer):
    dispensedMedicines = DispensedMedicineSerializer(many=True, allow_empty=False, source='dispensed_medicines')
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)


# ---------- 收费 ----------

class PaymentCreateSerializer(serializers.Serializer):
    visit = serializers.IntegerField(min_value=1)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    paymentType = serializers.ChoiceField(choices=Payment.PaymentType.choices, source='payment_type')
    paymentMethod = serializers.ChoiceField(
        choices=Payment.PaymentMethod.choices, source='payment_method', default=Payment.PaymentMethod.CASH
    )
    transactionId = serializers.CharField(max_length=100, source='transaction_id', required=False, allow_blank=True)
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True)
    isPaid = serializers.BooleanField(source='is_paid', default=True)


# ---------- 药品 ----------

class MedicineInputSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    genericName = serializers.CharField(max_length=100, source='generic_name', required=False, allow_blank=True)
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    stock = serializers.IntegerField(min_value=0, required=False, default=0)
    minimumStock = serializers.IntegerField(min_value=0, source='minimum_stock', required=False, default=10)
    unit = serializers.ChoiceField(choices=Medicine.Unit.choices, required=False, default=Medicine.Unit.TABLET)
    category = serializers.CharField(max_length=50, required=False, allow_blank=True)
    manufacturer = serializers.CharField(max_length=100, required=False, allow_blank=True)


class StockUpdateSerializer(serializers.Serializer):
    stock = serializers.IntegerField(min_value=0)
    operation = serializers.ChoiceField(choices=['add', 'set'], default='set')


# ---------- 员工账号 ----------

class UserUpdateSerializer(serializers.Serializer):
    fullName = serializers.CharField(max_length=100, source='full_name', required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    role = serializers.ChoiceField(choices=Role.choices, required=False)
    isActive = serializers.BooleanField(source='is_active', required=False)


# ---------- 列表过滤 ----------

class PharmacyFilterSerializer(serializers.Serializer):
    pharmacyStatus = serializers.ChoiceField(choices=PharmacyStatus.choices, required=False)


# ============================================
# 输出：后端 → 前端
# ============================================

def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


def serialize_user(user):
    if user is None:
        return None
    return {
        'id': user.pk,
        'username': user.username,
        'fullName': user.full_name,
        'role': user.role,
        'email': user.email,
        'isActive': user.is_active,
    }


def serialize_patient(patient):
    return {
        'id': patient.pk,
        'firstName': patient.first_name,
        'lastName': patient.last_name,
        'fullName': patient.full_name,
        'gender': patient.gender,
        'age': patient.age,
        'phone': patient.phone,
        'email': patient.email,
        'address': {
            'street': patient.street,
            'city': patient.city,
            'state': patient.state,
            'zipCode': patient.zip_code,
            'country': patient.country,
        },
        'registeredBy': patient.registered_by_id,
        'createdAt': _iso(patient.created_at),
        'updatedAt': _iso(patient.updated_at),
    }


def serialize_lab_test(test):
    return {
        'id': test.pk,
        'testNumber': test.test_number,
        'visit': test.visit_id,
        'testName': test.test_name,
        'testType': test.test_type,
        'result': test.result,
        'fileUrl': test.file_url or None,
        'performedBy': serialize_user(test.performed_by),
        'isCompleted': test.is_completed,
        'completedAt': _iso(test.completed_at),
        'notes': test.notes,
        'cost': _money(test.cost),
        'createdAt': _iso(test.created_at),
    }


def serialize_prescription(prescription):
    return {
        'id': prescription.pk,
        'prescriptionNumber': prescription.prescription_number,
        'visit': prescription.visit_id,
        'mainDoctor': serialize_user(prescription.main_doctor),
        'medicines': [
            {
                'name': line.name,
                'dosage': line.dosage,
                'duration': line.duration,
                'instruction': line.instruction,
                'quantity': line.quantity,
                'dispensedQuantity': line.dispensed_quantity,
                'unitPrice': _money(line.unit_price),
            }
            for line in prescription.medicines.all()
        ],
        'pharmacyStatus': prescription.pharmacy_status,
        'dispensedBy': serialize_user(prescription.dispensed_by),
        'dispensedAt': _iso(prescription.dispensed_at),
        'notes': prescription.notes,
        'totalCost': _money(prescription.total_cost),
        'createdAt': _iso(prescription.created_at),
    }


def serialize_payment(payment):
    return {
        'id': payment.pk,
        'paymentNumber': payment.payment_number,
        'visit': payment.visit_id,
        'amount': _money(payment.amount),
        'paymentType': payment.payment_type,
        'paymentMethod': payment.payment_method,
        'isPaid': payment.is_paid,
        'receivedBy': serialize_user(payment.received_by),
        'transactionId': payment.transaction_id,
        'notes': payment.notes,
        'paidAt': _iso(payment.paid_at),
        'createdAt': _iso(payment.created_at),
    }


def serialize_visit(visit, detail=False):
    """
    detail=True 时带上化验单、处方、收费记录
    （调用方应该先用 selectors.load_visit_with_relations 加载好，避免 N+1）
    """
    data = {
        'id': visit.pk,
        'visitNumber': visit.visit_number,
        'patient': serialize_patient(visit.patient),
        'visitDate': _iso(visit.visit_date),
        'complaint': visit.complaint,
        'symptoms': visit.symptoms,
        'diagnosis': visit.diagnosis,
        'checkerDoctor': serialize_user(visit.checker_doctor),
        'mainDoctor': serialize_user(visit.main_doctor),
        'status': visit.status,
        'totalCost': _money(visit.total_cost),
        'paid': visit.paid,
        'notes': visit.notes,
        'createdAt': _iso(visit.created_at),
        'updatedAt': _iso(visit.updated_at),
    }
    if detail:
        prescription = getattr(visit, 'prescription', None)
        data['labTests'] = [serialize_lab_test(test) for test in visit.lab_tests.all()]
        data['prescription'] = serialize_prescription(prescription) if prescription else None
        data['payments'] = [serialize_payment(payment) for payment in visit.payments.all()]
    return data


def serialize_medicine(medicine):
    return {
        'id': medicine.pk,
        'name': medicine.name,
        'genericName': medicine.generic_name,
        'price': _money(medicine.price),
        'stock': medicine.stock,
        'minimumStock': medicine.minimum_stock,
        'isLowStock': medicine.is_low_stock,
        'unit': medicine.unit,
        'category': medicine.category,
        'manufacturer': medicine.manufacturer,
        'isActive': medicine.is_active,
    }
