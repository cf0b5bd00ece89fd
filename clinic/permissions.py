"""
======================================
角色权限（DRF Permission）
======================================

用法：
    @api_view(['GET'])
    @permission_classes([IsAuthenticated, role_required(Role.PHARMACY, Role.ADMIN)])
    def medicines(request): ...

角色不符时直接抛 clinic.exceptions.Forbidden，
和 service 层的检查走同一个异常处理器，返回格式一致。
"""

from rest_framework.permissions import BasePermission

from .lifecycle import ensure_role


class HasRole(BasePermission):
    roles = ()

    def has_permission(self, request, view):
        ensure_role(request.user, self.roles)
        return True


def role_required(*roles):
    """生成一个只允许 roles 访问的 Permission 类"""
    name = 'HasRole_' + '_'.join(str(role) for role in roles)
    return type(name, (HasRole,), {'roles': tuple(roles)})
