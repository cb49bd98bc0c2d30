"""精度工具（用于 qty/price 按交易对精度取整，避免 float 噪声）。

所有函数以“小数位数”为参数（交易所 symbol 元数据里的 quantityPrecision /
pricePrecision），内部走 Decimal，输出再钉回 float。
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal


def _quantize(value: float, decimals: int, rounding: str) -> float:
    d = int(decimals)
    if d < 0:
        raise ValueError("decimals must be >= 0")
    q = Decimal(1).scaleb(-d)
    out = Decimal(str(float(value))).quantize(q, rounding=rounding)
    return float(out)


def decimal_round(value: float, decimals: int) -> float:
    """四舍五入到指定小数位。"""
    return _quantize(value, decimals, ROUND_HALF_UP)


def decimal_ceil(value: float, decimals: int) -> float:
    """向上取整到指定小数位。"""
    return _quantize(value, decimals, ROUND_CEILING)
