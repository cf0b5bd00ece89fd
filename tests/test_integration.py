"""
======================================
Integration Tests: 完整 HTTP 链路
======================================

这是 INTEGRATION TEST（集成测试）。
- 模拟真实用户操作：通过 HTTP 请求发送数据
- 经过完整链路：HTTP → 认证 → 角色 → Serializer → services → 异常处理器 → 响应
- 验证前端最终收到的 JSON 格式和内容

与 Service Test 的区别：
- Service Test: 直接调用 services.xxx()，不经过 HTTP
- Integration Test: 发 HTTP 请求，验证整个系统串在一起是否正确
"""

from decimal import Decimal
from unittest import mock

import pytest
from django.core.files.storage import default_storage
from django.core.files.uploadedfile import SimpleUploadedFile
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient

from clinic import services
from clinic.models import LabTest, Medicine, Patient, Role

from .conftest import CBC, PARACETAMOL_LINE

VISIT_BODY_LAB = {
    "symptoms": "fever,cough",
    "labTests": [{"testName": "CBC", "testType": "blood", "cost": 100}],
}


# ============================================
# 认证 / 健康检查
# ============================================

@pytest.mark.django_db
class TestAuth:

    def test_health_needs_no_login(self):
        response = APIClient().get("/health/")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "ok"

    def test_anonymous_request_is_401(self):
        response = APIClient().get("/api/visits/")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_login_then_me(self, make_user):
        make_user(Role.PHARMACY, username="pharma")
        client = APIClient()
        response = client.post("/api/auth/login/", {"username": "pharma", "password": "secret-pass-123"},
                               format="json")
        assert response.status_code == 200
        token = response.json()["data"]["token"]

        client.credentials(HTTP_AUTHORIZATION=f"Token {token}")
        me = client.get("/api/auth/me/").json()
        assert me["data"]["user"]["role"] == "pharmacy"

    def test_bad_password(self, make_user):
        make_user(Role.PHARMACY, username="pharma")
        response = APIClient().post("/api/auth/login/", {"username": "pharma", "password": "nope"}, format="json")
        assert response.status_code == 401
        assert response.json()["success"] is False


# ============================================
# 完整流程（HTTP）
# ============================================

@pytest.mark.django_db
class TestVisitWorkflow:

    def test_full_flow(self, client_for, reception, checker, lab_tech, main_doctor, pharmacist,
                       patient, paracetamol):
        response = client_for(reception).post(
            "/api/visits/", {"patient": patient.pk, "complaint": "fever"}, format="json",
        )
        assert response.status_code == 201
        visit = response.json()["data"]["visit"]
        assert visit["status"] == "registered"
        assert visit["totalCost"] == 0
        visit_id = visit["id"]

        response = client_for(checker).put(
            f"/api/checker/visits/{visit_id}/checker/", VISIT_BODY_LAB, format="json",
        )
        assert response.status_code == 200
        visit = response.json()["data"]["visit"]
        assert visit["status"] == "lab_pending"
        assert visit["totalCost"] == 100
        test_id = visit["labTests"][0]["id"]

        upload = SimpleUploadedFile("cbc.pdf", b"%PDF-1.4 result", content_type="application/pdf")
        response = client_for(lab_tech).put(
            f"/api/labs/{test_id}/result/", {"result": "normal", "resultFile": upload}, format="multipart",
        )
        assert response.status_code == 200
        lab_test = response.json()["data"]["labTest"]
        assert lab_test["isCompleted"] is True
        assert lab_test["fileUrl"].startswith("/uploads/lab-results/")
        assert lab_test["performedBy"]["id"] == lab_tech.pk

        response = client_for(main_doctor).post("/api/prescriptions/", {
            "visit": visit_id,
            "medicines": [{"name": "Paracetamol", "dosage": "500mg", "duration": "5 days",
                           "instruction": "after meals", "quantity": 10}],
            "diagnosis": "viral fever",
        }, format="json")
        assert response.status_code == 201
        prescription = response.json()["data"]["prescription"]
        assert prescription["totalCost"] == 50
        assert prescription["pharmacyStatus"] == "pending"

        response = client_for(pharmacist).put(
            f"/api/pharmacy/prescriptions/{prescription['id']}/dispense/", {}, format="json",
        )
        assert response.status_code == 200
        assert response.json()["data"]["prescription"]["pharmacyStatus"] == "dispensed"

        visit = client_for(reception).get(f"/api/visits/{visit_id}/").json()["data"]["visit"]
        assert visit["status"] == "done"
        assert visit["totalCost"] == 150
        assert visit["diagnosis"] == "viral fever"
        paracetamol.refresh_from_db()
        assert paracetamol.stock == 90

    def test_lab_tech_forbidden_before_body_validation(self, client_for, registered_visit, lab_tech):
        response = client_for(lab_tech).put(
            f"/api/checker/visits/{registered_visit.pk}/checker/", {}, format="json",
        )
        assert response.status_code == 403
        assert response.json()["errors"][0]["type"] == "FORBIDDEN"

    def test_missing_complaint(self, client_for, reception, patient):
        response = client_for(reception).post("/api/visits/", {"patient": patient.pk}, format="json")
        assert response.status_code == 400
        error = response.json()["errors"][0]
        assert error["code"] == "FIELD_VALIDATION_FAILED"
        assert "complaint" in error["detail"]

    def test_unknown_patient(self, client_for, reception):
        response = client_for(reception).post(
            "/api/visits/", {"patient": 999999, "complaint": "fever"}, format="json",
        )
        assert response.status_code == 404
        assert response.json()["errors"][0]["code"] == "PATIENT_NOT_FOUND"

    def test_unknown_visit(self, client_for, reception):
        response = client_for(reception).get("/api/visits/999999/")
        assert response.status_code == 404

    def test_generic_transition_rejects_skip(self, client_for, registered_visit, lab_tech):
        response = client_for(lab_tech).put(
            f"/api/visits/{registered_visit.pk}/status/", {"status": "lab_done"}, format="json",
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["type"] == "INVALID_STATE"

    def test_generic_transition_role_gate(self, client_for, registered_visit, reception):
        response = client_for(reception).put(
            f"/api/visits/{registered_visit.pk}/status/", {"status": "diagnosed"}, format="json",
        )
        assert response.status_code == 403

    def test_rejects_unsupported_upload(self, client_for, lab_pending_visit, lab_tech):
        test = lab_pending_visit.lab_tests.get()
        upload = SimpleUploadedFile("run.exe", b"MZ", content_type="application/x-msdownload")
        response = client_for(lab_tech).put(
            f"/api/labs/{test.pk}/result/", {"result": "normal", "resultFile": upload}, format="multipart",
        )
        assert response.status_code == 400
        assert "resultFile" in response.json()["errors"][0]["detail"]
        assert LabTest.objects.get(pk=test.pk).is_completed is False

    def test_second_result_is_rejected(self, client_for, lab_pending_visit, lab_tech):
        test = lab_pending_visit.lab_tests.get()
        client = client_for(lab_tech)
        assert client.put(f"/api/labs/{test.pk}/result/", {"result": "ok"}, format="json").status_code == 200
        response = client.put(f"/api/labs/{test.pk}/result/", {"result": "again"}, format="json")
        assert response.status_code == 400
        assert response.json()["errors"][0]["code"] == "LAB_TEST_ALREADY_COMPLETED"


# ============================================
# 药房
# ============================================

@pytest.mark.django_db
class TestPharmacy:

    def test_insufficient_stock_message(self, client_for, prescribe, pharmacist):
        Medicine.objects.create(name="Paracetamol", price=Decimal("5"), stock=5)
        prescription = prescribe()

        response = client_for(pharmacist).put(
            f"/api/pharmacy/prescriptions/{prescription.pk}/dispense/", {}, format="json",
        )
        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Insufficient stock for Paracetamol. Available: 5, Required: 10"
        assert body["errors"][0]["detail"] == {"medicine": "Paracetamol", "available": 5, "required": 10}

    def test_partial_dispense(self, client_for, prescribe, pharmacist, paracetamol):
        prescription = prescribe()
        response = client_for(pharmacist).put(
            f"/api/pharmacy/prescriptions/{prescription.pk}/partial-dispense/",
            {"dispensedMedicines": [{"name": "Paracetamol", "quantity": 4}]},
            format="json",
        )
        assert response.status_code == 200
        data = response.json()["data"]["prescription"]
        assert data["pharmacyStatus"] == "partially_dispensed"
        assert data["medicines"][0]["quantity"] == 6
        assert data["medicines"][0]["dispensedQuantity"] == 4

        pending = client_for(pharmacist).get("/api/pharmacy/prescriptions/").json()["data"]
        assert [p["id"] for p in pending["prescriptions"]] == [prescription.pk]

    def test_low_stock_filter(self, client_for, pharmacist):
        Medicine.objects.create(name="Aspirin", price=1, stock=3, minimum_stock=10)
        Medicine.objects.create(name="Zinc", price=1, stock=300, minimum_stock=10)
        data = client_for(pharmacist).get("/api/pharmacy/medicines/?lowStock=true").json()["data"]
        assert [m["name"] for m in data["medicines"]] == ["Aspirin"]
        assert data["pagination"]["total"] == 1

    def test_create_medicine_and_restock(self, client_for, admin):
        client = client_for(admin)
        response = client.post("/api/pharmacy/medicines/", {"name": "Ibuprofen", "price": "3.50", "stock": 5},
                               format="json")
        assert response.status_code == 201
        medicine_id = response.json()["data"]["medicine"]["id"]

        response = client.put(f"/api/pharmacy/medicines/{medicine_id}/stock/",
                              {"stock": 20, "operation": "add"}, format="json")
        assert response.json()["data"]["medicine"]["stock"] == 25

    def test_doctor_cannot_see_inventory(self, client_for, main_doctor):
        assert client_for(main_doctor).get("/api/pharmacy/medicines/").status_code == 403


# ============================================
# 收费 / 病人 / 列表
# ============================================

@pytest.mark.django_db
class TestFrontDesk:

    def test_payment_then_checker_queue(self, client_for, reception, checker, registered_visit, patient):
        unpaid = services.create_visit(reception, patient.pk, "cough")

        response = client_for(reception).post("/api/payments/", {
            "visit": registered_visit.pk, "amount": "30.00",
            "paymentType": "consultation", "paymentMethod": "card",
        }, format="json")
        assert response.status_code == 201
        assert response.json()["data"]["payment"]["isPaid"] is True

        queue = client_for(checker).get("/api/checker/visits/pending/").json()["data"]["visits"]
        assert [v["id"] for v in queue] == [registered_visit.pk]
        assert unpaid.pk not in [v["id"] for v in queue]

        payments = client_for(checker).get(f"/api/payments/visit/{registered_visit.pk}/").json()
        assert payments["data"]["payments"][0]["amount"] == 30

    def test_confirm_payment(self, client_for, reception, registered_visit):
        payment = services.record_payment(reception, registered_visit.pk, 20, "lab", "cash", is_paid=False)
        client = client_for(reception)
        assert client.put(f"/api/payments/{payment.pk}/confirm/").status_code == 200
        response = client.put(f"/api/payments/{payment.pk}/confirm/")
        assert response.status_code == 400
        assert response.json()["errors"][0]["code"] == "PAYMENT_ALREADY_CONFIRMED"

    def test_register_patient_with_address(self, client_for, reception):
        response = client_for(reception).post("/api/patients/", {
            "firstName": "Ana", "lastName": "Lopez", "gender": "female", "age": 29,
            "phone": "+1 (555) 010-2020",
            "address": {"city": "Austin", "zipCode": "73301"},
        }, format="json")
        assert response.status_code == 201
        patient = Patient.objects.get(pk=response.json()["data"]["patient"]["id"])
        assert (patient.city, patient.zip_code, patient.country) == ("Austin", "73301", "USA")

    def test_only_admin_deletes_patients(self, client_for, reception, admin, patient):
        assert client_for(reception).delete(f"/api/patients/{patient.pk}/").status_code == 403
        assert client_for(admin).delete(f"/api/patients/{patient.pk}/").status_code == 200

    def test_patient_with_visits_is_kept(self, client_for, admin, registered_visit, patient):
        response = client_for(admin).delete(f"/api/patients/{patient.pk}/")
        assert response.status_code == 400
        assert response.json()["errors"][0]["code"] == "PATIENT_HAS_VISITS"

    def test_lab_order_by_reception(self, client_for, reception, checker, registered_visit):
        services.record_checker_direct(checker, registered_visit.pk, "cough")
        response = client_for(reception).post("/api/labs/", {
            "visit": registered_visit.pk,
            "labTests": [{"testName": "CBC", "testType": "blood", "cost": "40"}],
        }, format="json")
        assert response.status_code == 201
        registered_visit.refresh_from_db()
        assert registered_visit.status == "lab_pending"
        assert registered_visit.total_cost == Decimal("40")

    def test_main_doctor_sees_lab_done_queue(self, client_for, main_doctor, lab_done_visit):
        data = client_for(main_doctor).get("/api/prescriptions/lab-done/").json()["data"]
        assert [v["id"] for v in data["visits"]] == [lab_done_visit.pk]

    def test_prescription_lookup_by_visit(self, client_for, reception, prescribe, lab_done_visit):
        prescribe([{**PARACETAMOL_LINE, "name": "Herbal Tea"}])
        data = client_for(reception).get(f"/api/prescriptions/visit/{lab_done_visit.pk}/").json()["data"]
        assert data["prescription"]["medicines"][0]["name"] == "Herbal Tea"
        assert data["prescription"]["totalCost"] == 0


@pytest.mark.django_db
def test_recent_notifications_for_caller_role(client_for, checker):
    events = [{"type": "new-visit", "payload": {"visit": {"id": 3}}}]
    with mock.patch("clinic.views.get_recent_notifications", return_value=events) as recent:
        response = client_for(checker).get("/api/notifications/")
    recent.assert_called_once_with("checkerDoctor")
    assert response.json()["data"]["notifications"] == events


@pytest.mark.django_db
def test_checker_assessment_fixture_matches_http_body(client_for, checker, registered_visit):
    """conftest 里的 CBC 和前端 camelCase 请求体表示同一张化验单"""
    client_for(checker).put(f"/api/checker/visits/{registered_visit.pk}/checker/", VISIT_BODY_LAB, format="json")
    test = LabTest.objects.get(visit=registered_visit)
    assert (test.test_name, test.test_type, test.cost) == (CBC["test_name"], CBC["test_type"], CBC["cost"])


# ============================================
# 化验附件 / 化验队列
# ============================================

def stored_results():
    if not default_storage.exists("lab-results"):
        return set()
    return set(default_storage.listdir("lab-results")[1])


def pdf(name="cbc.pdf"):
    return SimpleUploadedFile(name, b"%PDF-1.4 result", content_type="application/pdf")


@pytest.mark.django_db
class TestLabUploads:

    def test_rejected_result_leaves_no_file(self, client_for, lab_pending_visit, lab_tech):
        test = lab_pending_visit.lab_tests.get()
        client = client_for(lab_tech)
        assert client.put(f"/api/labs/{test.pk}/result/", {"result": "ok"}, format="json").status_code == 200
        before = stored_results()

        response = client.put(f"/api/labs/{test.pk}/result/", {"result": "again", "resultFile": pdf()},
                              format="multipart")
        assert response.status_code == 400
        assert stored_results() == before

    def test_unknown_lab_test_leaves_no_file(self, client_for, lab_tech):
        before = stored_results()
        response = client_for(lab_tech).put("/api/labs/999999/result/", {"result": "ok", "resultFile": pdf()},
                                            format="multipart")
        assert response.status_code == 404
        assert stored_results() == before

    def test_accepted_file_is_kept(self, client_for, lab_pending_visit, lab_tech):
        test = lab_pending_visit.lab_tests.get()
        response = client_for(lab_tech).put(f"/api/labs/{test.pk}/result/", {"result": "ok", "resultFile": pdf()},
                                            format="multipart")
        file_url = response.json()["data"]["labTest"]["fileUrl"]
        assert file_url.rsplit("/", 1)[-1] in stored_results()


@pytest.mark.django_db
class TestLabQueues:

    def test_pending_then_completed(self, client_for, lab_pending_visit, lab_tech):
        test = lab_pending_visit.lab_tests.get()
        client = client_for(lab_tech)

        pending = client.get("/api/labs/pending/").json()["data"]["labTests"]
        assert [t["id"] for t in pending] == [test.pk]

        services.complete_lab_test(lab_tech, test.pk, "normal")
        assert client.get("/api/labs/pending/").json()["data"]["labTests"] == []
        completed = client.get("/api/labs/completed/").json()["data"]
        assert [t["id"] for t in completed["labTests"]] == [test.pk]
        assert completed["pagination"]["total"] == 1

        detail = client.get(f"/api/labs/{test.pk}/").json()["data"]["labTest"]
        assert (detail["testName"], detail["result"], detail["isCompleted"]) == ("CBC", "normal", True)

    def test_unknown_lab_test(self, client_for, lab_tech):
        response = client_for(lab_tech).get("/api/labs/999999/")
        assert response.status_code == 404
        assert response.json()["errors"][0]["code"] == "LAB_TEST_NOT_FOUND"

    def test_reception_cannot_read_lab_queue(self, client_for, reception):
        assert client_for(reception).get("/api/labs/pending/").status_code == 403


# ============================================
# checkerDoctor 自己的 Visit
# ============================================

@pytest.mark.django_db
class TestCheckerOwnVisits:

    def test_lists_only_own_visits(self, client_for, checker, make_user, reception, patient, lab_pending_visit):
        services.create_visit(reception, patient.pk, "headache")
        data = client_for(checker).get("/api/checker/visits/").json()["data"]
        assert [v["id"] for v in data["visits"]] == [lab_pending_visit.pk]

        other = make_user(Role.CHECKER_DOCTOR)
        assert client_for(other).get("/api/checker/visits/").json()["data"]["visits"] == []

    def test_status_filter(self, client_for, checker, lab_pending_visit):
        data = client_for(checker).get("/api/checker/visits/?status=done").json()["data"]
        assert data["visits"] == []

    def test_detail_of_visit_taken_by_another_checker(self, client_for, checker, make_user, lab_pending_visit):
        own = client_for(checker).get(f"/api/checker/visits/{lab_pending_visit.pk}/")
        assert own.status_code == 200
        assert own.json()["data"]["visit"]["labTests"][0]["testName"] == "CBC"

        other = make_user(Role.CHECKER_DOCTOR)
        response = client_for(other).get(f"/api/checker/visits/{lab_pending_visit.pk}/")
        assert response.status_code == 403
        assert response.json()["errors"][0]["code"] == "VISIT_NOT_ASSIGNED"

    def test_unassigned_visit_is_visible(self, client_for, checker, registered_visit):
        assert client_for(checker).get(f"/api/checker/visits/{registered_visit.pk}/").status_code == 200


# ============================================
# 修改处方
# ============================================

@pytest.mark.django_db
class TestPrescriptionEdit:

    def test_doctor_edits_pending_prescription(self, client_for, prescribe, main_doctor, pharmacist, paracetamol):
        prescription = prescribe()
        response = client_for(main_doctor).put(f"/api/prescriptions/{prescription.pk}/", {
            "medicines": [{**PARACETAMOL_LINE, "quantity": 20}],
            "notes": "double dose",
        }, format="json")
        assert response.status_code == 200
        data = response.json()["data"]["prescription"]
        assert data["totalCost"] == 100
        assert data["notes"] == "double dose"

        seen = client_for(pharmacist).get(f"/api/prescriptions/{prescription.pk}/").json()["data"]
        assert seen["prescription"]["medicines"][0]["quantity"] == 20

    def test_other_doctor_forbidden(self, client_for, prescribe, make_user):
        prescription = prescribe()
        other = make_user(Role.MAIN_DOCTOR)
        response = client_for(other).put(f"/api/prescriptions/{prescription.pk}/", {"notes": "x"}, format="json")
        assert response.status_code == 403

    def test_pharmacist_forbidden_before_body_validation(self, client_for, prescribe, pharmacist):
        prescription = prescribe()
        response = client_for(pharmacist).put(f"/api/prescriptions/{prescription.pk}/",
                                              {"medicines": []}, format="json")
        assert response.status_code == 403

    def test_dispensed_prescription_is_locked(self, client_for, prescribe, main_doctor, pharmacist, paracetamol):
        prescription = prescribe()
        services.dispense_prescription(pharmacist, prescription.pk)
        response = client_for(main_doctor).put(f"/api/prescriptions/{prescription.pk}/", {"notes": "late"},
                                               format="json")
        assert response.status_code == 400
        assert response.json()["errors"][0]["type"] == "ALREADY_PROCESSED"


# ============================================
# 收费查询
# ============================================

@pytest.mark.django_db
class TestPaymentQueries:

    def test_filter_and_detail(self, client_for, reception, registered_visit):
        services.record_payment(reception, registered_visit.pk, 30, "consultation")
        pending = services.record_payment(reception, registered_visit.pk, 80, "lab", "insurance", is_paid=False)
        client = client_for(reception)

        data = client.get("/api/payments/?isPaid=false").json()["data"]
        assert [p["id"] for p in data["payments"]] == [pending.pk]
        assert client.get("/api/payments/?paymentType=consultation").json()["data"]["pagination"]["total"] == 1
        assert client.get(f"/api/payments/?receivedBy={reception.pk}").json()["data"]["pagination"]["total"] == 2

        detail = client.get(f"/api/payments/{pending.pk}/").json()["data"]["payment"]
        assert (detail["amount"], detail["paymentMethod"], detail["isPaid"]) == (80, "insurance", False)

    def test_unknown_payment(self, client_for, admin):
        response = client_for(admin).get("/api/payments/999999/")
        assert response.status_code == 404
        assert response.json()["errors"][0]["code"] == "PAYMENT_NOT_FOUND"

    def test_doctor_cannot_list_payments(self, client_for, checker):
        assert client_for(checker).get("/api/payments/").status_code == 403


# ============================================
# 员工账号管理（admin）
# ============================================

@pytest.mark.django_db
class TestUserAdmin:

    def test_list_with_filters(self, client_for, admin, lab_tech, reception):
        data = client_for(admin).get("/api/users/?role=labTech").json()["data"]
        assert [u["id"] for u in data["users"]] == [lab_tech.pk]

        services.toggle_user_status(admin, reception.pk)
        inactive = client_for(admin).get("/api/users/?isActive=false").json()["data"]["users"]
        assert [u["id"] for u in inactive] == [reception.pk]

    def test_update_user(self, client_for, admin, checker):
        response = client_for(admin).put(f"/api/users/{checker.pk}/", {"fullName": "Dr. Lee", "role": "mainDoctor"},
                                         format="json")
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert (user["fullName"], user["role"]) == ("Dr. Lee", "mainDoctor")

    def test_deactivated_token_stops_working(self, client_for, admin, pharmacist):
        token = Token.objects.create(user=pharmacist)
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=f"Token {token.key}")
        assert client.get("/api/auth/me/").status_code == 200

        response = client_for(admin).put(f"/api/users/{pharmacist.pk}/toggle-status/")
        assert response.json()["message"] == "User deactivated successfully"
        assert client.get("/api/auth/me/").status_code == 401

    def test_users_by_role(self, client_for, admin, make_user):
        make_user(Role.LAB_TECH)
        off = make_user(Role.LAB_TECH)
        services.toggle_user_status(admin, off.pk)

        users = client_for(admin).get("/api/users/role/labTech/").json()["data"]["users"]
        assert off.pk not in [u["id"] for u in users]
        assert len(users) == 1
        assert client_for(admin).get("/api/users/role/janitor/").status_code == 400

    def test_admin_cannot_delete_self(self, client_for, admin):
        response = client_for(admin).delete(f"/api/users/{admin.pk}/")
        assert response.status_code == 400
        assert response.json()["errors"][0]["code"] == "CANNOT_MODIFY_SELF"

    def test_non_admin_forbidden(self, client_for, reception):
        assert client_for(reception).get("/api/users/").status_code == 403
