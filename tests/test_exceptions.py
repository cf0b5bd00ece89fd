"""
======================================
Error Tests: 异常系统验证
======================================

这是 ERROR TEST（异常系统测试）。
- 测试的不是业务逻辑，而是"报错基础设施"本身
- 确保 exceptions.py 的异常类格式正确
- 确保 custom_exception_handler 能把异常转为统一 JSON 响应
- 如果这些测试失败，说明所有异常处理都有问题

与 Service Test 的区别：
- Service Test 测 "什么时候报错"（业务逻辑）
- Error Test 测 "报错的格式和管道对不对"（基础设施）
"""

import logging

import pytest
from rest_framework.exceptions import NotAuthenticated
from rest_framework.exceptions import ValidationError as DRFValidationError

from clinic.exceptions import (
    AlreadyCompleted,
    AlreadyConfirmed,
    AlreadyDispensed,
    ErrorCodes,
    Forbidden,
    InsufficientStock,
    InvalidState,
    NotFound,
    ValidationError,
    custom_exception_handler,
)


# ============================================
# 异常类格式测试（不需要数据库）
# ============================================

class TestExceptionFormat:
    """测试异常类的 to_dict() 输出格式"""

    def test_invalid_state_to_dict(self):
        error = InvalidState(
            code=ErrorCodes.INVALID_TRANSITION,
            message="Cannot change status from registered to lab_done",
            detail={"from": "registered", "to": "lab_done"},
        )
        result = error.to_dict()

        assert result["type"] == "INVALID_STATE"
        assert result["code"] == "INVALID_TRANSITION"
        assert result["message"] == "Cannot change status from registered to lab_done"
        assert result["detail"]["to"] == "lab_done"

    def test_validation_error_default_detail(self):
        error = ValidationError(code="FIELD_VALIDATION_FAILED", message="Complaint is required")
        # detail 没传时默认为空 dict
        assert error.to_dict()["detail"] == {}

    def test_insufficient_stock(self):
        error = InsufficientStock("Paracetamol", 5, 10)
        result = error.to_dict()

        assert str(error) == "Insufficient stock for Paracetamol. Available: 5, Required: 10"
        assert result["type"] == "INSUFFICIENT_STOCK"
        assert result["detail"] == {"medicine": "Paracetamol", "available": 5, "required": 10}

    def test_idempotency_guards_share_a_type(self):
        for cls in (AlreadyCompleted, AlreadyConfirmed, AlreadyDispensed):
            assert cls("X", "x").to_dict()["type"] == "ALREADY_PROCESSED"

    @pytest.mark.parametrize("cls,status", [
        (ValidationError, 400),
        (NotFound, 404),
        (InvalidState, 400),
        (Forbidden, 403),
        (AlreadyCompleted, 400),
        (AlreadyConfirmed, 400),
        (AlreadyDispensed, 400),
    ])
    def test_http_status_codes(self, cls, status):
        """验证每种异常对应的 HTTP 状态码"""
        assert cls.http_status == status

    def test_insufficient_stock_status(self):
        assert InsufficientStock.http_status == 400


# ============================================
# 异常处理器测试（模拟异常 → 验证 JSON 响应）
# ============================================

class TestExceptionHandler:
    """
    直接调用 custom_exception_handler(exc, context)，
    验证返回的 Response 状态码和 JSON 格式。
    """

    def test_app_exception(self):
        response = custom_exception_handler(
            Forbidden(ErrorCodes.ROLE_FORBIDDEN, "Role 'labTech' is not allowed to perform this action"), {}
        )

        assert response.status_code == 403
        assert response.data["success"] is False
        assert response.data["message"] == "Role 'labTech' is not allowed to perform this action"
        assert response.data["errors"][0]["type"] == "FORBIDDEN"
        assert response.data["errors"][0]["code"] == "ROLE_FORBIDDEN"

    def test_insufficient_stock_message_is_surfaced(self):
        response = custom_exception_handler(InsufficientStock("Paracetamol", 5, 10), {})

        assert response.status_code == 400
        assert response.data["message"] == "Insufficient stock for Paracetamol. Available: 5, Required: 10"
        assert response.data["errors"][0]["detail"]["available"] == 5

    def test_drf_validation_error(self):
        """Serializer 抛出的 ValidationError → 400 + FIELD_VALIDATION_FAILED"""
        error = DRFValidationError({"complaint": ["This field is required."]})
        response = custom_exception_handler(error, {})

        assert response.status_code == 400
        assert response.data["errors"][0]["type"] == "VALIDATION_ERROR"
        assert response.data["errors"][0]["code"] == "FIELD_VALIDATION_FAILED"
        assert "complaint" in response.data["errors"][0]["detail"]

    def test_drf_api_exception_keeps_status(self):
        response = custom_exception_handler(NotAuthenticated(), {})

        assert response.status_code == 401
        assert response.data["success"] is False
        assert response.data["errors"][0]["code"] == "API_ERROR"

    def test_unexpected_error_is_hidden_and_logged(self, caplog):
        with caplog.at_level(logging.ERROR, logger="clinic.exceptions"):
            response = custom_exception_handler(RuntimeError("db password is hunter2"), {})

        assert response.status_code == 500
        assert response.data["errors"][0]["code"] == "INTERNAL_ERROR"
        assert "hunter2" not in response.data["message"]
        assert any("Unhandled error" in record.message for record in caplog.records)
