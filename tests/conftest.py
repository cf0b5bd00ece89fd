"""
======================================
共享 fixtures
======================================

- 每个角色一个员工账号
- 一个病人、一种常用药（Paracetamol，单价 5，库存 100）
- 走到某个状态的 Visit（全部通过 services 推进，和真实流程一致）
- notify 默认被 mock 掉，测试不需要 Redis
"""

from decimal import Decimal
from unittest import mock

import pytest
from rest_framework.test import APIClient

from clinic import services
from clinic.models import Medicine, Patient, Role, User


@pytest.fixture(autouse=True)
def notify_mock():
    with mock.patch("clinic.services.notify") as m:
        yield m


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role, username=None):
        counter["n"] += 1
        return User.objects.create_user(
            username=username or f"{role}-{counter['n']}",
            password="secret-pass-123",
            role=role,
            full_name=f"{role} user",
        )
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(Role.ADMIN)


@pytest.fixture
def reception(make_user):
    return make_user(Role.RECEPTION)


@pytest.fixture
def checker(make_user):
    return make_user(Role.CHECKER_DOCTOR)


@pytest.fixture
def lab_tech(make_user):
    return make_user(Role.LAB_TECH)


@pytest.fixture
def main_doctor(make_user):
    return make_user(Role.MAIN_DOCTOR)


@pytest.fixture
def pharmacist(make_user):
    return make_user(Role.PHARMACY)


@pytest.fixture
def patient(reception):
    return Patient.objects.create(
        first_name="John",
        last_name="Smith",
        gender=Patient.Gender.MALE,
        age=42,
        phone="+1 555 0100",
        registered_by=reception,
    )


@pytest.fixture
def paracetamol(db):
    return Medicine.objects.create(name="Paracetamol", price=Decimal("5.00"), stock=100)


# ============================================
# 走到指定状态的 Visit
# ============================================

CBC = {"test_name": "CBC", "test_type": "blood", "cost": Decimal("100")}

PARACETAMOL_LINE = {
    "name": "Paracetamol",
    "dosage": "500mg",
    "duration": "5 days",
    "instruction": "after meals",
    "quantity": 10,
}


@pytest.fixture
def registered_visit(reception, patient):
    return services.create_visit(reception, patient.pk, "fever")


@pytest.fixture
def lab_pending_visit(registered_visit, checker):
    return services.record_checker_assessment(checker, registered_visit.pk, "fever,cough", [CBC])


@pytest.fixture
def lab_done_visit(lab_pending_visit, lab_tech):
    test = lab_pending_visit.lab_tests.get()
    services.complete_lab_test(lab_tech, test.pk, "normal")
    lab_pending_visit.refresh_from_db()
    return lab_pending_visit


@pytest.fixture
def prescribe(lab_done_visit, main_doctor):
    """给 lab_done 的 Visit 开处方；medicines 默认 Paracetamol x10"""
    def _prescribe(medicines=None):
        return services.create_prescription(
            main_doctor, lab_done_visit.pk, medicines or [PARACETAMOL_LINE], diagnosis="viral fever",
        )
    return _prescribe


# ============================================
# HTTP 客户端
# ============================================

@pytest.fixture
def client_for():
    def _client(user):
        client = APIClient()
        client.force_authenticate(user=user)
        return client
    return _client
