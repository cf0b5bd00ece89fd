"""
===============================================================================
Visit 状态机 (Visit Lifecycle)
===============================================================================

所有「状态能不能变」「谁能让它变」的规则都集中在这里，
services.py 和 views.py 不再各自写一遍 if 判断。

状态图：
    registered  → checked | lab_pending | diagnosed
    checked     → lab_pending | diagnosed
    lab_pending → lab_done
    lab_done    → diagnosed
    diagnosed   → done
    done        → (终态)

检查顺序（每个操作都一样）：
    1. 角色     → Forbidden
    2. 是否存在 → NotFound     （由 services 负责）
    3. 状态     → InvalidState
"""

from typing import Iterable

from .exceptions import ErrorCodes, Forbidden, InvalidState
from .models import Role, VisitStatus


def _values(*members) -> frozenset:
    # 表里统一存字符串，和数据库里读出来的 status / role 直接比较
    return frozenset(str(member) for member in members)


TRANSITIONS = {
    str(VisitStatus.REGISTERED): _values(VisitStatus.CHECKED, VisitStatus.LAB_PENDING, VisitStatus.DIAGNOSED),
    str(VisitStatus.CHECKED): _values(VisitStatus.LAB_PENDING, VisitStatus.DIAGNOSED),
    str(VisitStatus.LAB_PENDING): _values(VisitStatus.LAB_DONE),
    str(VisitStatus.LAB_DONE): _values(VisitStatus.DIAGNOSED),
    str(VisitStatus.DIAGNOSED): _values(VisitStatus.DONE),
    str(VisitStatus.DONE): _values(),
}

# 目标状态 → 允许把 Visit 推到这个状态的角色
ROLE_PERMISSIONS = {
    str(VisitStatus.REGISTERED): _values(Role.RECEPTION),
    str(VisitStatus.CHECKED): _values(Role.CHECKER_DOCTOR),
    str(VisitStatus.LAB_PENDING): _values(Role.RECEPTION, Role.CHECKER_DOCTOR),
    str(VisitStatus.LAB_DONE): _values(Role.LAB_TECH),
    str(VisitStatus.DIAGNOSED): _values(Role.MAIN_DOCTOR, Role.CHECKER_DOCTOR),
    str(VisitStatus.DONE): _values(Role.PHARMACY),
}


def can_transition(current: str, target: str) -> bool:
    """current → target 是否是状态图里的一条边（同状态不算）"""
    return str(target) in TRANSITIONS.get(str(current), frozenset())


def role_may_set(role: str, target: str) -> bool:
    return str(role) in ROLE_PERMISSIONS.get(str(target), frozenset())


def ensure_role(actor, roles: Iterable[str]) -> None:
    """actor 的角色不在 roles 里就抛 Forbidden"""
    roles = _values(*roles)
    role = getattr(actor, 'role', None)
    role = str(role) if role is not None else None
    if role not in roles:
        raise Forbidden(
            ErrorCodes.ROLE_FORBIDDEN,
            f"Role '{role}' is not allowed to perform this action",
            {"role": role, "allowed": sorted(roles)},
        )


def ensure_role_for_target(actor, target: str) -> None:
    ensure_role(actor, ROLE_PERMISSIONS.get(str(target), frozenset()))


def ensure_status(visit, allowed: Iterable[str], code: str, message: str) -> None:
    """Visit 当前状态不在 allowed 里就抛 InvalidState"""
    allowed = _values(*allowed)
    if str(visit.status) not in allowed:
        raise InvalidState(code, message, {
            "visit": visit.pk,
            "status": str(visit.status),
            "expected": sorted(allowed),
        })


def ensure_transition(visit, target: str) -> None:
    if not can_transition(visit.status, target):
        raise InvalidState(
            ErrorCodes.INVALID_TRANSITION,
            f"Cannot change status from {visit.status} to {target}",
            {"visit": visit.pk, "from": str(visit.status), "to": str(target)},
        )
