"""
======================================
业务逻辑层（Service Layer）
======================================

这个文件封装了 Visit 流程上的所有写操作：
- 挂号（create_visit）→ 通知 checkerDoctor
- 初诊（record_checker_assessment / record_checker_direct）
- 化验（order_lab_tests / complete_lab_test）
- 开方（create_prescription / update_prescription）
- 发药（dispense_prescription / partial_dispense_prescription）
- 收费（record_payment / confirm_payment）
- 通用状态变更（transition_visit）
- 病人、药品库存、员工账号的维护

每个操作的固定套路：
    1. 角色检查（lifecycle.ensure_role）     → Forbidden
    2. 在 transaction.atomic() 里加载数据   → NotFound
    3. 状态检查（lifecycle.ensure_*）        → InvalidState
    4. 写入状态 + 副作用（化验单、费用、库存）

第 4 步任何一处失败，整个事务回滚，不会出现「化验单建了但状态没变」的半成品。
"""

import logging
from collections import OrderedDict

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F, ProtectedError
from django.utils import timezone

from . import costs, lifecycle
from .exceptions import (
    AlreadyCompleted,
    AlreadyConfirmed,
    AlreadyDispensed,
    ErrorCodes,
    Forbidden,
    InsufficientStock,
    InvalidState,
    NotFound,
    ValidationError,
)
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
from .notifications import notify

logger = logging.getLogger(__name__)

FRONT_DESK_ROLES = (Role.RECEPTION, Role.ADMIN)
INVENTORY_ROLES = (Role.PHARMACY, Role.ADMIN)
LAB_ORDER_ROLES = (Role.RECEPTION, Role.CHECKER_DOCTOR)

COMPLAINT_MAX_LENGTH = 1000


# ============================================
# 内部工具
# ============================================

def _lock_visit(visit_id):
    """
    在当前事务里锁住 Visit 行

    不能和 select_related 一起用：PostgreSQL 不允许对外连接的可空一侧加 FOR UPDATE
    """
    try:
        return Visit.objects.select_for_update().get(pk=visit_id)
    except Visit.DoesNotExist:
        raise NotFound(ErrorCodes.VISIT_NOT_FOUND, "Visit not found", {"visit": visit_id}) from None


def _lock_prescription(prescription_id):
    try:
        return Prescription.objects.select_for_update().get(pk=prescription_id)
    except Prescription.DoesNotExist:
        raise NotFound(
            ErrorCodes.PRESCRIPTION_NOT_FOUND, "Prescription not found", {"prescription": prescription_id}
        ) from None


def _full_clean(instance, exclude=None):
    """模型层校验失败时转成我们自己的 ValidationError"""
    try:
        instance.full_clean(exclude=exclude)
    except DjangoValidationError as exc:
        raise ValidationError(
            ErrorCodes.FIELD_VALIDATION_FAILED, "Input validation failed", exc.message_dict
        ) from None


def _validate_lab_tests(lab_tests):
    for item in lab_tests:
        if not (item.get('test_name') or '').strip():
            raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Lab test name is required")
        if item.get('test_type') not in LabTest.TestType.values:
            raise ValidationError(
                ErrorCodes.FIELD_VALIDATION_FAILED,
                "Invalid lab test type",
                {"testType": item.get('test_type')},
            )
        if costs.to_decimal(item.get('cost')) < 0:
            raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Lab test cost cannot be negative")


def _create_lab_tests(visit, lab_tests):
    """按顺序给 visit 创建化验单，返回创建好的列表"""
    return [
        LabTest.objects.create(
            visit=visit,
            test_name=item['test_name'],
            test_type=item['test_type'],
            cost=costs.to_decimal(item.get('cost')),
            notes=item.get('notes') or '',
        )
        for item in lab_tests
    ]


def _validate_quantities(lines, field='quantity'):
    for line in lines:
        quantity = line.get(field)
        if not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(
                ErrorCodes.FIELD_VALIDATION_FAILED,
                f"Quantity for {line.get('name')} must be at least 1",
                {"medicine": line.get('name'), "quantity": quantity},
            )


def _decrement_stock(name, quantity):
    """
    条件扣减库存：stock >= quantity 时才扣，否则抛 InsufficientStock

    扣减是一条 UPDATE ... WHERE stock >= quantity，由数据库保证并发安全，
    不是先读后写。药房没有登记的药（开方时按 0 元计价）不动库存。
    """
    if quantity <= 0:
        return
    updated = Medicine.objects.filter(name=name, stock__gte=quantity).update(
        stock=F('stock') - quantity,
        updated_at=timezone.now(),
    )
    if updated:
        return
    available = Medicine.objects.filter(name=name).values_list('stock', flat=True).first()
    if available is None:
        logger.info("Medicine %s is not stocked, dispensing without stock movement", name)
        return
    raise InsufficientStock(name, available, quantity)


def _new_visit_event(visit):
    return {
        "type": "new-visit",
        "payload": {
            "visit": {
                "id": visit.pk,
                "visitNumber": visit.visit_number,
                "patient": {
                    "id": visit.patient_id,
                    "name": visit.patient.full_name,
                },
                "complaint": visit.complaint,
                "visitDate": visit.visit_date.isoformat(),
                "status": str(visit.status),
                "createdAt": visit.created_at.isoformat(),
            }
        },
    }


# ============================================
# 挂号
# ============================================

def create_visit(actor, patient_id, complaint, visit_date=None, notes=''):
    """
    创建就诊记录，提交成功后通知所有 checkerDoctor

    通知通过 transaction.on_commit 发出：事务回滚就不会通知，
    通知失败也不会影响已经提交的 Visit。
    """
    lifecycle.ensure_role(actor, FRONT_DESK_ROLES)

    complaint = (complaint or '').strip()
    if not complaint:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Complaint is required")
    if len(complaint) > COMPLAINT_MAX_LENGTH:
        raise ValidationError(
            ErrorCodes.FIELD_VALIDATION_FAILED,
            f"Complaint cannot exceed {COMPLAINT_MAX_LENGTH} characters",
        )

    with transaction.atomic():
        try:
            patient = Patient.objects.get(pk=patient_id)
        except Patient.DoesNotExist:
            raise NotFound(ErrorCodes.PATIENT_NOT_FOUND, "Patient not found", {"patient": patient_id}) from None

        visit = Visit.objects.create(
            patient=patient,
            complaint=complaint,
            visit_date=visit_date or timezone.now(),
            notes=notes or '',
            status=VisitStatus.REGISTERED,
            total_cost=0,
            paid=False,
        )
        event = _new_visit_event(visit)
        transaction.on_commit(lambda: notify(Role.CHECKER_DOCTOR.value, event))

    logger.info("Visit %s registered for patient %s by %s", visit.pk, patient.pk, actor.pk)
    return visit


# ============================================
# 初诊（checkerDoctor）
# ============================================

def record_checker_assessment(actor, visit_id, symptoms, lab_tests):
    """初诊：记录症状并开化验单；有化验单 → lab_pending，没有 → checked"""
    lifecycle.ensure_role(actor, (Role.CHECKER_DOCTOR,))
    lab_tests = list(lab_tests or [])
    _validate_lab_tests(lab_tests)

    with transaction.atomic():
        visit = _lock_visit(visit_id)
        lifecycle.ensure_status(
            visit, (VisitStatus.REGISTERED,),
            ErrorCodes.VISIT_NOT_REGISTERED, "Visit is not in registered status",
        )
        target = VisitStatus.LAB_PENDING if lab_tests else VisitStatus.CHECKED
        lifecycle.ensure_transition(visit, target)

        created = _create_lab_tests(visit, lab_tests)
        previous = visit.status
        visit.symptoms = symptoms or ''
        visit.checker_doctor = actor
        visit.total_cost = costs.accrue(visit.total_cost, costs.sum_lab_test_cost(created))
        visit.status = target
        visit.save(update_fields=['symptoms', 'checker_doctor', 'total_cost', 'status', 'updated_at'])

    logger.info(
        "Visit %s: %s -> %s by checker %s (%d lab tests)",
        visit.pk, previous, visit.status, actor.pk, len(created),
    )
    return visit


def record_checker_direct(actor, visit_id, symptoms, diagnosis=None):
    """直接诊断：有诊断 → diagnosed，没有 → checked"""
    lifecycle.ensure_role(actor, (Role.CHECKER_DOCTOR,))

    with transaction.atomic():
        visit = _lock_visit(visit_id)
        lifecycle.ensure_status(
            visit, (VisitStatus.REGISTERED,),
            ErrorCodes.VISIT_NOT_REGISTERED, "Visit is not in registered status",
        )
        target = VisitStatus.DIAGNOSED if diagnosis else VisitStatus.CHECKED
        lifecycle.ensure_transition(visit, target)

        previous = visit.status
        visit.symptoms = symptoms or ''
        if diagnosis:
            visit.diagnosis = diagnosis
        visit.checker_doctor = actor
        visit.status = target
        visit.save(update_fields=['symptoms', 'diagnosis', 'checker_doctor', 'status', 'updated_at'])

    logger.info("Visit %s: %s -> %s by checker %s (direct)", visit.pk, previous, visit.status, actor.pk)
    return visit


# ============================================
# 化验
# ============================================

def order_lab_tests(actor, visit_id, lab_tests):
    """给已初诊（或已在等化验）的 Visit 追加化验单"""
    lifecycle.ensure_role(actor, LAB_ORDER_ROLES)
    lab_tests = list(lab_tests or [])
    if not lab_tests:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "At least one lab test is required")
    _validate_lab_tests(lab_tests)

    with transaction.atomic():
        visit = _lock_visit(visit_id)
        lifecycle.ensure_status(
            visit, (VisitStatus.CHECKED, VisitStatus.LAB_PENDING),
            ErrorCodes.VISIT_NOT_READY_FOR_LAB, "Lab tests can only be ordered for checked visits",
        )
        if visit.status != VisitStatus.LAB_PENDING:
            lifecycle.ensure_transition(visit, VisitStatus.LAB_PENDING)

        created = _create_lab_tests(visit, lab_tests)
        previous = visit.status
        visit.total_cost = costs.accrue(visit.total_cost, costs.sum_lab_test_cost(created))
        visit.status = VisitStatus.LAB_PENDING
        visit.save(update_fields=['total_cost', 'status', 'updated_at'])

    logger.info(
        "Visit %s: %s -> %s, %d lab tests ordered by %s",
        visit.pk, previous, visit.status, len(created), actor.pk,
    )
    return created


def complete_lab_test(actor, lab_test_id, result, file_url=None, notes=None):
    """
    录入化验结果

    【并发】
    1. is_completed 用 UPDATE ... WHERE is_completed = false 做 compare-and-set，
       同一张化验单只有一个请求能成功，另一个得到 AlreadyCompleted
    2. 先锁住 Visit 行（和 order_lab_tests 是同一把锁），再重新查询这个 Visit 的全部化验单，
       全部完成才推进 lab_pending → lab_done；并发追加的化验单要么已经提交、要么等这里提交后再写入
    3. 推进本身也是条件更新：两个请求同时看到「全部完成」时，第二个更新 0 行，不报错
    """
    lifecycle.ensure_role(actor, (Role.LAB_TECH,))
    if not (result or '').strip():
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Test result is required")

    with transaction.atomic():
        try:
            visit_id = LabTest.objects.values_list('visit_id', flat=True).get(pk=lab_test_id)
        except LabTest.DoesNotExist:
            raise NotFound(ErrorCodes.LAB_TEST_NOT_FOUND, "Lab test not found", {"labTest": lab_test_id}) from None
        _lock_visit(visit_id)

        now = timezone.now()
        changes = {
            'result': result,
            'performed_by': actor,
            'is_completed': True,
            'completed_at': now,
        }
        if file_url is not None:
            changes['file_url'] = file_url
        if notes is not None:
            changes['notes'] = notes
        updated = LabTest.objects.filter(pk=lab_test_id, is_completed=False).update(**changes)
        if not updated:
            raise AlreadyCompleted(
                ErrorCodes.LAB_TEST_ALREADY_COMPLETED, "Lab test already completed", {"labTest": lab_test_id}
            )

        all_done = not LabTest.objects.filter(visit_id=visit_id, is_completed=False).exists()
        advanced = 0
        if all_done:
            advanced = Visit.objects.filter(pk=visit_id, status=VisitStatus.LAB_PENDING).update(
                status=VisitStatus.LAB_DONE, updated_at=now,
            )

    logger.info("Lab test %s completed by %s", lab_test_id, actor.pk)
    if advanced:
        logger.info("Visit %s: %s -> %s (all lab tests completed)", visit_id, VisitStatus.LAB_PENDING, VisitStatus.LAB_DONE)
    return LabTest.objects.select_related('performed_by', 'visit').get(pk=lab_test_id)


# ============================================
# 开方（mainDoctor）
# ============================================

def _validate_medicine_lines(medicines):
    if not medicines:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "At least one medicine is required")
    _validate_quantities(medicines)
    names = [line['name'] for line in medicines]
    if len(set(names)) != len(names):
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Each medicine can only appear once")


def _current_prices(medicines):
    names = [line['name'] for line in medicines]
    return dict(Medicine.objects.filter(name__in=names).values_list('name', 'price'))


def _create_lines(prescription, medicines, prices):
    PrescriptionMedicine.objects.bulk_create([
        PrescriptionMedicine(
            prescription=prescription,
            name=line['name'],
            dosage=line['dosage'],
            duration=line['duration'],
            instruction=line['instruction'],
            quantity=line['quantity'],
            unit_price=prices.get(line['name']) or 0,
        )
        for line in medicines
    ])


def create_prescription(actor, visit_id, medicines, diagnosis=None, notes=None):
    """
    开处方

    单价取开方时药房的价格，写进每一行的 unit_price（之后调价不影响已开的处方）；
    药房没有的药按 0 元计价，不报错。
    """
    lifecycle.ensure_role(actor, (Role.MAIN_DOCTOR,))
    medicines = list(medicines or [])
    _validate_medicine_lines(medicines)

    with transaction.atomic():
        visit = _lock_visit(visit_id)
        lifecycle.ensure_status(
            visit, (VisitStatus.LAB_DONE,),
            ErrorCodes.VISIT_NOT_READY_FOR_PRESCRIPTION, "Visit is not ready for prescription",
        )
        lifecycle.ensure_transition(visit, VisitStatus.DIAGNOSED)

        prices = _current_prices(medicines)
        total = costs.sum_medicine_cost(medicines, prices.get)

        prescription = Prescription.objects.create(
            visit=visit,
            main_doctor=actor,
            pharmacy_status=PharmacyStatus.PENDING,
            notes=notes or '',
            total_cost=total,
        )
        _create_lines(prescription, medicines, prices)

        previous = visit.status
        if diagnosis:
            visit.diagnosis = diagnosis
        visit.main_doctor = actor
        visit.status = VisitStatus.DIAGNOSED
        visit.total_cost = costs.accrue(visit.total_cost, total)
        visit.save(update_fields=['diagnosis', 'main_doctor', 'status', 'total_cost', 'updated_at'])

    logger.info(
        "Visit %s: %s -> %s, prescription %s (%s) by %s",
        visit.pk, previous, visit.status, prescription.pk, total, actor.pk,
    )
    return prescription


def update_prescription(actor, prescription_id, medicines=None, notes=None):
    """
    修改处方：只有开方医生本人，并且还没发完药

    - medicines：整张替换明细，按当前药价重新计价；药房已经开始发药（partially_dispensed）后不能再换
    - notes：发完药之前都能改
    - Visit.total_cost 只加不减：新总价更高时补上差额，更低时 Visit 上已经记的费用不退
    """
    lifecycle.ensure_role(actor, (Role.MAIN_DOCTOR,))
    if medicines is not None:
        medicines = list(medicines)
        _validate_medicine_lines(medicines)

    with transaction.atomic():
        prescription = _lock_prescription(prescription_id)
        if prescription.main_doctor_id != actor.pk:
            raise Forbidden(
                ErrorCodes.NOT_PRESCRIBING_DOCTOR,
                "You are not authorized to update this prescription",
                {"prescription": prescription.pk},
            )
        if prescription.pharmacy_status == PharmacyStatus.DISPENSED:
            raise AlreadyDispensed(
                ErrorCodes.PRESCRIPTION_ALREADY_DISPENSED,
                "Cannot update dispensed prescription",
                {"prescription": prescription.pk},
            )

        previous_total = prescription.total_cost
        if medicines is not None:
            if prescription.pharmacy_status != PharmacyStatus.PENDING:
                raise InvalidState(
                    ErrorCodes.PRESCRIPTION_DISPENSING_STARTED,
                    "Medicines cannot be changed after dispensing has started",
                    {"prescription": prescription.pk, "pharmacyStatus": str(prescription.pharmacy_status)},
                )
            visit = _lock_visit(prescription.visit_id)
            prices = _current_prices(medicines)
            total = costs.sum_medicine_cost(medicines, prices.get)
            prescription.medicines.all().delete()
            _create_lines(prescription, medicines, prices)
            prescription.total_cost = total
            if total > previous_total:
                visit.total_cost = costs.accrue(visit.total_cost, total - previous_total)
                visit.save(update_fields=['total_cost', 'updated_at'])
        if notes is not None:
            prescription.notes = notes
        prescription.save(update_fields=['total_cost', 'notes', 'updated_at'])

    logger.info(
        "Prescription %s updated by %s (%s -> %s)",
        prescription.pk, actor.pk, previous_total, prescription.total_cost,
    )
    return prescription


# ============================================
# 发药（pharmacy）
# ============================================

def _lock_dispensable(prescription_id):
    """锁住处方和它的 Visit，检查还能不能发药"""
    prescription = _lock_prescription(prescription_id)
    if prescription.pharmacy_status == PharmacyStatus.DISPENSED:
        raise AlreadyDispensed(
            ErrorCodes.PRESCRIPTION_ALREADY_DISPENSED,
            "Prescription already dispensed",
            {"prescription": prescription.pk},
        )
    visit = _lock_visit(prescription.visit_id)
    lifecycle.ensure_transition(visit, VisitStatus.DONE)
    return prescription, visit


def _finish_dispense(actor, prescription, visit, lines, notes):
    now = timezone.now()
    PrescriptionMedicine.objects.bulk_update(lines, ['quantity', 'dispensed_quantity'])

    fully = all(line.quantity == 0 for line in prescription.medicines.all())
    prescription.pharmacy_status = PharmacyStatus.DISPENSED if fully else PharmacyStatus.PARTIALLY_DISPENSED
    prescription.dispensed_by = actor
    if fully:
        prescription.dispensed_at = now
    if notes is not None:
        prescription.notes = notes
    prescription.save(update_fields=['pharmacy_status', 'dispensed_by', 'dispensed_at', 'notes', 'updated_at'])

    if fully:
        visit.status = VisitStatus.DONE
        visit.save(update_fields=['status', 'updated_at'])
        logger.info("Visit %s: %s -> %s (prescription %s dispensed)", visit.pk, VisitStatus.DIAGNOSED, VisitStatus.DONE, prescription.pk)
    return prescription


def dispense_prescription(actor, prescription_id, notes=None):
    """
    全部发药

    所有行都在同一个事务里条件扣减，任何一行库存不足就抛 InsufficientStock，
    之前已经扣掉的行跟着事务一起回滚。部分发过的处方，这里发剩下的数量。
    """
    lifecycle.ensure_role(actor, (Role.PHARMACY,))

    with transaction.atomic():
        prescription, visit = _lock_dispensable(prescription_id)
        lines = list(prescription.medicines.all())
        for line in lines:
            _decrement_stock(line.name, line.quantity)
        for line in lines:
            line.dispensed_quantity += line.quantity
            line.quantity = 0
        prescription = _finish_dispense(actor, prescription, visit, lines, notes)

    logger.info("Prescription %s dispensed by %s", prescription.pk, actor.pk)
    return prescription


def partial_dispense_prescription(actor, prescription_id, dispensed_medicines, notes=None):
    """
    部分发药：只发 dispensed_medicines 里列出的药

    先校验全部条目（名字必须在处方里，数量不能超过剩余），再扣库存；
    所有行剩余都为 0 时才算 dispensed，Visit 也才进入 done。
    """
    lifecycle.ensure_role(actor, (Role.PHARMACY,))
    dispensed_medicines = list(dispensed_medicines or [])
    if not dispensed_medicines:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "At least one medicine is required")
    _validate_quantities(dispensed_medicines)

    requested = OrderedDict()
    for item in dispensed_medicines:
        requested[item['name']] = requested.get(item['name'], 0) + item['quantity']

    with transaction.atomic():
        prescription, visit = _lock_dispensable(prescription_id)
        lines = {line.name: line for line in prescription.medicines.all()}

        for name, quantity in requested.items():
            line = lines.get(name)
            if line is None:
                raise ValidationError(
                    ErrorCodes.MEDICINE_NOT_IN_PRESCRIPTION,
                    f"Medicine {name} is not in this prescription",
                    {"medicine": name},
                )
            if quantity > line.quantity:
                raise ValidationError(
                    ErrorCodes.DISPENSE_EXCEEDS_REMAINING,
                    f"Cannot dispense {quantity} of {name}. Remaining: {line.quantity}",
                    {"medicine": name, "remaining": line.quantity, "requested": quantity},
                )

        for name, quantity in requested.items():
            _decrement_stock(name, quantity)

        touched = []
        for name, quantity in requested.items():
            line = lines[name]
            line.quantity -= quantity
            line.dispensed_quantity += quantity
            touched.append(line)
        prescription = _finish_dispense(actor, prescription, visit, touched, notes)

    logger.info(
        "Prescription %s %s by %s", prescription.pk, prescription.pharmacy_status, actor.pk,
    )
    return prescription


# ============================================
# 收费
# ============================================

def record_payment(actor, visit_id, amount, payment_type, payment_method=Payment.PaymentMethod.CASH,
                   transaction_id=None, notes=None, is_paid=True):
    """
    收费

    费用累加到 Visit.total_cost；is_paid=False 时只登记应收，等 confirm_payment 再确认
    """
    lifecycle.ensure_role(actor, FRONT_DESK_ROLES)
    amount = costs.to_decimal(amount)
    if amount < 0:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Amount cannot be negative")

    with transaction.atomic():
        visit = _lock_visit(visit_id)
        payment = Payment(
            visit=visit,
            amount=amount,
            payment_type=payment_type,
            payment_method=payment_method,
            is_paid=is_paid,
            paid_at=timezone.now() if is_paid else None,
            received_by=actor,
            transaction_id=transaction_id or '',
            notes=notes or '',
        )
        _full_clean(payment, exclude=['visit', 'received_by'])
        payment.save()

        visit.total_cost = costs.accrue(visit.total_cost, amount)
        if is_paid:
            visit.paid = True
        visit.save(update_fields=['total_cost', 'paid', 'updated_at'])

    logger.info("Payment %s of %s recorded on visit %s by %s", payment.pk, amount, visit.pk, actor.pk)
    return payment


def confirm_payment(actor, payment_id):
    """确认收款：is_paid 只能从 False 变 True，不能回退"""
    lifecycle.ensure_role(actor, FRONT_DESK_ROLES)

    with transaction.atomic():
        try:
            visit_id = Payment.objects.values_list('visit_id', flat=True).get(pk=payment_id)
        except Payment.DoesNotExist:
            raise NotFound(ErrorCodes.PAYMENT_NOT_FOUND, "Payment not found", {"payment": payment_id}) from None

        now = timezone.now()
        updated = Payment.objects.filter(pk=payment_id, is_paid=False).update(is_paid=True, paid_at=now)
        if not updated:
            raise AlreadyConfirmed(
                ErrorCodes.PAYMENT_ALREADY_CONFIRMED, "Payment already confirmed", {"payment": payment_id}
            )
        Visit.objects.filter(pk=visit_id).update(paid=True, updated_at=now)

    logger.info("Payment %s confirmed by %s", payment_id, actor.pk)
    return Payment.objects.select_related('visit', 'received_by').get(pk=payment_id)


# ============================================
# 通用状态变更
# ============================================

def transition_visit(actor, visit_id, status, notes=None):
    """
    PUT /visits/:id/status

    顺序：角色（按目标状态查表）→ Visit 是否存在 → 状态图 → 额外条件
    额外条件：
    - lab_done：所有化验单都已完成
    - done：如果有处方，处方必须已全部发药
    """
    if status not in VisitStatus.values:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, f"Invalid status: {status}", {"status": status})
    lifecycle.ensure_role_for_target(actor, status)

    with transaction.atomic():
        visit = _lock_visit(visit_id)
        lifecycle.ensure_transition(visit, status)

        if status == VisitStatus.LAB_DONE and visit.lab_tests.filter(is_completed=False).exists():
            raise InvalidState(
                ErrorCodes.LAB_TESTS_INCOMPLETE, "All lab tests must be completed first", {"visit": visit.pk}
            )
        if status == VisitStatus.DONE:
            pending = Prescription.objects.filter(visit=visit).exclude(pharmacy_status=PharmacyStatus.DISPENSED)
            if pending.exists():
                raise InvalidState(
                    ErrorCodes.PRESCRIPTION_NOT_DISPENSED,
                    "Prescription must be dispensed first",
                    {"visit": visit.pk},
                )

        previous = visit.status
        visit.status = status
        if notes:
            visit.notes = notes
        visit.save(update_fields=['status', 'notes', 'updated_at'])

    logger.info("Visit %s: %s -> %s by %s (%s)", visit.pk, previous, visit.status, actor.pk, actor.role)
    return visit


# ============================================
# 病人
# ============================================

PATIENT_FIELDS = (
    'first_name', 'last_name', 'gender', 'age', 'phone', 'email',
    'street', 'city', 'state', 'zip_code', 'country',
)


def register_patient(actor, **data):
    lifecycle.ensure_role(actor, FRONT_DESK_ROLES)
    patient = Patient(registered_by=actor, **{k: v for k, v in data.items() if k in PATIENT_FIELDS})
    _full_clean(patient)
    patient.save()
    logger.info("Patient %s registered by %s", patient.pk, actor.pk)
    return patient


def update_patient(actor, patient_id, **changes):
    """只允许改人口学信息，registered_by 不能改"""
    lifecycle.ensure_role(actor, FRONT_DESK_ROLES)
    with transaction.atomic():
        try:
            patient = Patient.objects.select_for_update().get(pk=patient_id)
        except Patient.DoesNotExist:
            raise NotFound(ErrorCodes.PATIENT_NOT_FOUND, "Patient not found", {"patient": patient_id}) from None
        for field, value in changes.items():
            if field in PATIENT_FIELDS:
                setattr(patient, field, value)
        _full_clean(patient)
        patient.save()
    logger.info("Patient %s updated by %s", patient.pk, actor.pk)
    return patient


def delete_patient(actor, patient_id):
    """有就诊记录的病人不能删"""
    lifecycle.ensure_role(actor, (Role.ADMIN,))
    with transaction.atomic():
        try:
            patient = Patient.objects.get(pk=patient_id)
        except Patient.DoesNotExist:
            raise NotFound(ErrorCodes.PATIENT_NOT_FOUND, "Patient not found", {"patient": patient_id}) from None
        try:
            patient.delete()
        except ProtectedError:
            raise InvalidState(
                ErrorCodes.PATIENT_HAS_VISITS,
                "Patient has visits and cannot be deleted",
                {"patient": patient_id},
            ) from None
    logger.info("Patient %s deleted by %s", patient_id, actor.pk)


# ============================================
# 药品库存
# ============================================

MEDICINE_FIELDS = (
    'name', 'generic_name', 'price', 'stock', 'minimum_stock',
    'unit', 'category', 'manufacturer', 'is_active',
)


def create_medicine(actor, **data):
    lifecycle.ensure_role(actor, INVENTORY_ROLES)
    medicine = Medicine(**{k: v for k, v in data.items() if k in MEDICINE_FIELDS})
    _full_clean(medicine)
    medicine.save()
    logger.info("Medicine %s added with stock %s by %s", medicine.name, medicine.stock, actor.pk)
    return medicine


def adjust_medicine_stock(actor, medicine_id, stock, operation='set'):
    """
    调整库存

    operation:
        add: 进货，stock 加上给定数量（数据库里原子加）
        set: 盘点，直接设为给定数量
    """
    lifecycle.ensure_role(actor, INVENTORY_ROLES)
    if operation not in ('add', 'set'):
        raise ValidationError(
            ErrorCodes.FIELD_VALIDATION_FAILED, "Operation must be add or set", {"operation": operation}
        )
    if not isinstance(stock, int) or stock < 0:
        raise ValidationError(ErrorCodes.FIELD_VALIDATION_FAILED, "Stock must be a non-negative integer")

    new_value = F('stock') + stock if operation == 'add' else stock
    updated = Medicine.objects.filter(pk=medicine_id).update(stock=new_value, updated_at=timezone.now())
    if not updated:
        raise NotFound(ErrorCodes.MEDICINE_NOT_FOUND, "Medicine not found", {"medicine": medicine_id})

    medicine = Medicine.objects.get(pk=medicine_id)
    logger.info("Medicine %s stock %s %s -> %s by %s", medicine.name, operation, stock, medicine.stock, actor.pk)
    return medicine


# ============================================
# 员工账号（admin）
# ============================================

USER_FIELDS = ('full_name', 'email', 'role', 'is_active')


def _lock_user(user_id):
    try:
        return User.objects.select_for_update().get(pk=user_id)
    except User.DoesNotExist:
        raise NotFound(ErrorCodes.USER_NOT_FOUND, "User not found", {"user": user_id}) from None


def _ensure_not_self(actor, user, message):
    if user.pk == actor.pk:
        raise InvalidState(ErrorCodes.CANNOT_MODIFY_SELF, message, {"user": user.pk})


def update_user(actor, user_id, **changes):
    """
    修改员工信息：full_name / email / role / is_active

    空字符串当作「不改」；管理员不能改自己的角色，也不能停用自己。
    """
    lifecycle.ensure_role(actor, (Role.ADMIN,))
    changes = {k: v for k, v in changes.items() if k in USER_FIELDS and v not in (None, '')}

    with transaction.atomic():
        user = _lock_user(user_id)
        if ('role' in changes and changes['role'] != user.role) or changes.get('is_active') is False:
            _ensure_not_self(actor, user, "You cannot change your own role or deactivate your own account")

        email = changes.get('email')
        if email and User.objects.filter(email__iexact=email).exclude(pk=user.pk).exists():
            raise ValidationError(
                ErrorCodes.EMAIL_TAKEN, "Email is already taken by another user", {"email": email}
            )

        for field, value in changes.items():
            setattr(user, field, value)
        _full_clean(user, exclude=['password'])
        user.save()

    logger.info("User %s updated by %s (%s)", user.pk, actor.pk, ", ".join(sorted(changes)))
    return user


def toggle_user_status(actor, user_id):
    """启用 / 停用账号；停用后登录和 token 认证都会失败"""
    lifecycle.ensure_role(actor, (Role.ADMIN,))

    with transaction.atomic():
        user = _lock_user(user_id)
        _ensure_not_self(actor, user, "You cannot deactivate your own account")
        user.is_active = not user.is_active
        user.save(update_fields=['is_active'])

    logger.info("User %s %s by %s", user.pk, "activated" if user.is_active else "deactivated", actor.pk)
    return user


def delete_user(actor, user_id):
    """经手过病人、处方或收费的账号不能删，只能停用"""
    lifecycle.ensure_role(actor, (Role.ADMIN,))

    with transaction.atomic():
        user = _lock_user(user_id)
        _ensure_not_self(actor, user, "You cannot delete your own account")
        try:
            user.delete()
        except ProtectedError:
            raise InvalidState(
                ErrorCodes.USER_HAS_RECORDS,
                "User has clinical records and cannot be deleted; deactivate the account instead",
                {"user": user_id},
            ) from None

    logger.info("User %s deleted by %s", user_id, actor.pk)
