"""
===============================================================================
统一异常处理系统 (Unified Exception Handling System)
===============================================================================

这个文件是整个错误处理的「中央控制室」。

核心设计理念：
--------------
1. 【service 只管 raise】
   services.py 发现问题直接抛出下面的业务异常，
   不关心 HTTP 状态码，也不关心 JSON 格式。

2. 【格式只在一个地方控制】
   custom_exception_handler 把异常转成统一响应：
       {"success": false, "message": "...", "errors": [{type, code, message, detail}]}

3. 【不自动重试】
   所有业务异常都直接返回给调用方（前端），由前端决定是否重试。

修改指南：
---------
Q: 我想添加新的错误类型？
A: 1. 在 ErrorCodes 添加错误代码常量
   2. 创建 BaseAppException 的子类，设置 error_type / http_status

使用示例：
---------
    from clinic.exceptions import InvalidState, ErrorCodes

    if visit.status != VisitStatus.REGISTERED:
        raise InvalidState(ErrorCodes.VISIT_NOT_REGISTERED, "Visit is not in registered status")
"""

from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


# ============================================================================
# 第一部分：错误代码常量
# ============================================================================
#
# 命名规则：{实体}_{问题类型}
# 前端可以根据 code 做特定处理（如显示不同提示）
# ============================================================================

class ErrorCodes:
    """错误代码常量类"""
    # 输入相关
    FIELD_VALIDATION_FAILED = "FIELD_VALIDATION_FAILED"
    INVALID_UPLOAD = "INVALID_UPLOAD"
    EMAIL_TAKEN = "EMAIL_TAKEN"
    MEDICINE_NOT_IN_PRESCRIPTION = "MEDICINE_NOT_IN_PRESCRIPTION"
    DISPENSE_EXCEEDS_REMAINING = "DISPENSE_EXCEEDS_REMAINING"

    # 找不到
    PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
    VISIT_NOT_FOUND = "VISIT_NOT_FOUND"
    LAB_TEST_NOT_FOUND = "LAB_TEST_NOT_FOUND"
    PRESCRIPTION_NOT_FOUND = "PRESCRIPTION_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    MEDICINE_NOT_FOUND = "MEDICINE_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # 状态机相关
    INVALID_TRANSITION = "INVALID_TRANSITION"
    VISIT_NOT_REGISTERED = "VISIT_NOT_REGISTERED"
    VISIT_NOT_READY_FOR_LAB = "VISIT_NOT_READY_FOR_LAB"
    VISIT_NOT_READY_FOR_PRESCRIPTION = "VISIT_NOT_READY_FOR_PRESCRIPTION"
    LAB_TESTS_INCOMPLETE = "LAB_TESTS_INCOMPLETE"
    PRESCRIPTION_NOT_DISPENSED = "PRESCRIPTION_NOT_DISPENSED"
    PATIENT_HAS_VISITS = "PATIENT_HAS_VISITS"
    PRESCRIPTION_DISPENSING_STARTED = "PRESCRIPTION_DISPENSING_STARTED"
    USER_HAS_RECORDS = "USER_HAS_RECORDS"
    CANNOT_MODIFY_SELF = "CANNOT_MODIFY_SELF"

    # 权限
    ROLE_FORBIDDEN = "ROLE_FORBIDDEN"
    NOT_PRESCRIBING_DOCTOR = "NOT_PRESCRIBING_DOCTOR"
    VISIT_NOT_ASSIGNED = "VISIT_NOT_ASSIGNED"

    # 幂等保护
    LAB_TEST_ALREADY_COMPLETED = "LAB_TEST_ALREADY_COMPLETED"
    PAYMENT_ALREADY_CONFIRMED = "PAYMENT_ALREADY_CONFIRMED"
    PRESCRIPTION_ALREADY_DISPENSED = "PRESCRIPTION_ALREADY_DISPENSED"

    # 库存
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"

    # 系统相关
    API_ERROR = "API_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# 第二部分：自定义异常类
# ============================================================================
#
# 【继承结构】
# BaseAppException
#   ├── ValidationError      输入不合法，400
#   ├── NotFound             引用的实体不存在，404
#   ├── InvalidState         当前状态不允许这个操作，400
#   ├── Forbidden            角色不允许这个操作，403
#   ├── AlreadyProcessed     幂等保护，400
#   │     ├── AlreadyCompleted
#   │     ├── AlreadyConfirmed
#   │     └── AlreadyDispensed
#   └── InsufficientStock    库存不足，400
# ============================================================================

class BaseAppException(Exception):
    """
    所有业务异常的基类

    Attributes:
        code: 机器可读的错误代码（ErrorCodes 中的常量）
        message: 用户可读的错误消息（会直接返回给前端）
        detail: 结构化的补充信息（如库存不足时的 available / required）
    """
    error_type = "APP_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, message: str, detail: dict | None = None):
        self.code = code
        self.message = message
        self.detail = detail or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "type": self.error_type,
            "code": self.code,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationError(BaseAppException):
    error_type = "VALIDATION_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST


class NotFound(BaseAppException):
    error_type = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class InvalidState(BaseAppException):
    error_type = "INVALID_STATE"
    http_status = status.HTTP_400_BAD_REQUEST


class Forbidden(BaseAppException):
    error_type = "FORBIDDEN"
    http_status = status.HTTP_403_FORBIDDEN


class AlreadyProcessed(BaseAppException):
    error_type = "ALREADY_PROCESSED"
    http_status = status.HTTP_400_BAD_REQUEST


class AlreadyCompleted(AlreadyProcessed):
    pass


class AlreadyConfirmed(AlreadyProcessed):
    pass


class AlreadyDispensed(AlreadyProcessed):
    pass


class InsufficientStock(BaseAppException):
    """
    库存不足

    消息格式和前端约定好，不要随便改：
        "Insufficient stock for Paracetamol. Available: 5, Required: 10"
    """
    error_type = "INSUFFICIENT_STOCK"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, medicine: str, available: int, required: int):
        self.medicine = medicine
        self.available = available
        self.required = required
        super().__init__(
            ErrorCodes.INSUFFICIENT_STOCK,
            f"Insufficient stock for {medicine}. Available: {available}, Required: {required}",
            {"medicine": medicine, "available": available, "required": required},
        )


# ============================================================================
# 第三部分：DRF 异常处理器
# ============================================================================
#
# 【配置位置】settings.py -> REST_FRAMEWORK -> EXCEPTION_HANDLER
#
# 处理顺序：
# 1. BaseAppException → 对应状态码 + errors
# 2. DRF ValidationError（Serializer 抛出）→ 400 + FIELD_VALIDATION_FAILED
# 3. 其他 DRF 异常（401 / 403 / 404 / 405）→ 原状态码
# 4. 未知异常 → 500，只返回通用消息，详细信息写日志
# ============================================================================

def custom_exception_handler(exc: Exception, context: dict) -> Response:
    if isinstance(exc, BaseAppException):
        return Response(
            {
                "success": False,
                "message": exc.message,
                "errors": [exc.to_dict()],
            },
            status=exc.http_status,
        )

    if isinstance(exc, DRFValidationError):
        return Response(
            {
                "success": False,
                "message": "Validation failed",
                "errors": [{
                    "type": "VALIDATION_ERROR",
                    "code": ErrorCodes.FIELD_VALIDATION_FAILED,
                    "message": "Input validation failed",
                    "detail": exc.detail,
                }],
            },
            status=status.HTTP_400_BAD_REQUEST,
        )

    # AuthenticationFailed, NotAuthenticated, PermissionDenied, Http404 ...
    response = exception_handler(exc, context)
    if response is not None:
        message = response.data.get("detail", str(exc)) if isinstance(response.data, dict) else str(exc)
        return Response(
            {
                "success": False,
                "message": str(message),
                "errors": [{
                    "type": "API_ERROR",
                    "code": ErrorCodes.API_ERROR,
                    "message": str(message),
                    "detail": {},
                }],
            },
            status=response.status_code,
            headers=_auth_headers(response),
        )

    # 【安全关键】不能把真实错误信息（SQL、路径、堆栈）返回给前端
    view = context.get("view")
    logger.exception("Unhandled error in %s", getattr(view, "__name__", view), exc_info=exc)
    return Response(
        {
            "success": False,
            "message": "Server error, please try again later",
            "errors": [{
                "type": "SERVER_ERROR",
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "Server error, please try again later",
                "detail": {},
            }],
        },
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _auth_headers(response: Response) -> dict:
    # 401 需要保留 WWW-Authenticate 头，否则 DRF 会把 401 降级成 403
    if "WWW-Authenticate" in response:
        return {"WWW-Authenticate": response["WWW-Authenticate"]}
    return {}
