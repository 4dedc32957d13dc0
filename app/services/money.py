"""金额换算工具：两位小数金额与最小货币单位（分/kobo）互转，统一四舍五入（ROUND_HALF_UP）。"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """把 int/float/str/Decimal 转为 Decimal，float 先转字符串避免二进制误差。"""
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"金额格式无效: {value!r}") from e


def to_money(value) -> Decimal:
    """保留两位小数。"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value) -> str:
    """格式化为 "12.30" 形式的字符串（PayPal 等十进制渠道使用）。"""
    return f"{to_money(value):.2f}"


def to_minor_units(value) -> int:
    """金额 → 最小货币单位整数：19.999 → 2000。"""
    return int((to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value) -> Decimal:
    """最小货币单位整数 → 两位小数金额：2000 → 20.00。"""
    return to_money(Decimal(int(value)) / 100)
