"""
======================================
费用累计规则（Cost Accrual Rules）
======================================

纯函数，不碰数据库，方便单独测试。

规则：
- 化验费：所有化验单 cost 之和
- 药费：sum(单价 × 数量)，单价由调用方提供的 price_lookup 查询，查不到按 0 算
- Visit.total_cost 只能加，不能减
"""

from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional

ZERO = Decimal('0')


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # float 先转字符串，避免 Decimal(0.1) 的二进制误差
    return Decimal(str(value))


def sum_lab_test_cost(tests: Iterable) -> Decimal:
    """
    化验费合计

    tests 里的元素可以是 LabTest 实例，也可以是 {"cost": ...} 字典
    """
    total = ZERO
    for test in tests:
        cost = test.get('cost') if isinstance(test, Mapping) else getattr(test, 'cost', None)
        total += to_decimal(cost)
    return total


def sum_medicine_cost(
    lines: Iterable,
    price_lookup: Callable[[str], Optional[Decimal]],
) -> Decimal:
    """
    药费合计：sum(price_lookup(name) × quantity)

    price_lookup 返回 None 表示药房没有这个药，按 0 计价
    """
    total = ZERO
    for line in lines:
        if isinstance(line, Mapping):
            name, quantity = line['name'], line['quantity']
        else:
            name, quantity = line.name, line.quantity
        total += to_decimal(price_lookup(name)) * int(quantity)
    return total


def accrue(current_total, delta) -> Decimal:
    """把 delta 累加到 current_total 上；delta 为负直接报错"""
    delta = to_decimal(delta)
    if delta < 0:
        raise ValueError(f"cost delta must be non-negative, got {delta}")
    return to_decimal(current_total) + delta
