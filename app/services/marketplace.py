"""
市场分账：平台费 / 商家收入计算与市场订单判定。

- 费率类型：fixed（固定金额）、percentage（百分比）、conditional（按条件匹配第一条）
- 平台费限制在 [0, 订单总额]，两者均保留两位小数，且 platform_fee + vendor_earnings == total
- 市场订单：分账开启、首个订单项能解析出商家、商家不是下单人、商家已连接收款账户
"""

import logging
from decimal import Decimal

from app.models.schemas import FeeCondition, FeeSplit, HasVendor, MarketplaceSettings, Order
from app.services.money import to_money
from app.services.user_service import UserService
from app.services.vendor_connections import is_connected

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def _fee_for(fee_type: str, value: Decimal, total: Decimal) -> Decimal:
    if fee_type == "fixed":
        return Decimal(value)
    return total * Decimal(value) / 100


def match_condition(
    total: Decimal, conditions: list[FeeCondition], vendor_tier: str | None,
) -> FeeCondition | None:
    """返回第一条满足金额区间和商家等级的条件。"""
    for cond in conditions:
        if cond.min_amount is not None and total < cond.min_amount:
            continue
        if cond.max_amount is not None and total > cond.max_amount:
            continue
        if cond.vendor_tier and cond.vendor_tier != vendor_tier:
            continue
        return cond
    return None


def calculate_vendor_earnings(
    total, settings: MarketplaceSettings, vendor_tier: str | None = None,
) -> FeeSplit:
    """
    计算平台费与商家收入。

    Args:
        total: 订单总额。
        settings: 渠道的分账配置。
        vendor_tier: 商家等级，仅条件费率使用。
    """
    total = to_money(total)
    if not settings.enabled:
        return FeeSplit(platform_fee=ZERO, vendor_earnings=total, fee_type="none")

    if settings.fee_type == "conditional":
        cond = match_condition(total, settings.fee_conditions, vendor_tier)
        fee = _fee_for(cond.type, cond.value, total) if cond else ZERO
    else:
        fee = _fee_for(settings.fee_type, settings.fee_value, total)

    fee = to_money(min(max(fee, ZERO), total))
    return FeeSplit(platform_fee=fee, vendor_earnings=total - fee, fee_type=settings.fee_type)


def resolve_vendor_id(item: HasVendor | None) -> int | None:
    return item.get_vendor_id() if item is not None else None


def is_marketplace_order(order: Order, settings: MarketplaceSettings, provider: str) -> bool:
    """判断订单是否走分账；任一条件不满足时按普通收款处理。"""
    if not settings.enabled:
        return False
    vendor_id = resolve_vendor_id(order.get_first_item())
    if not vendor_id or not order.customer_id:
        return False
    if int(vendor_id) == int(order.customer_id):
        return False
    if not is_connected(vendor_id, provider):
        logger.info(
            "商家未连接 %s 收款账户，按普通收款处理: order_id=%s, vendor_id=%s",
            provider, order.id, vendor_id,
        )
        return False
    return True


def calculate_order_split(order: Order, settings: MarketplaceSettings) -> FeeSplit:
    """按订单 pricing.total（缺省为订单项合计）和商家等级计算分账。"""
    total = order.get_details("pricing.total")
    if total in (None, ""):
        total = order.get_total()
    vendor_tier = None
    vendor_id = order.get_vendor_id()
    if vendor_id and settings.fee_type == "conditional":
        vendor = UserService().get_user(int(vendor_id))
        vendor_tier = vendor.vendor_tier if vendor else None
    return calculate_vendor_earnings(total, settings, vendor_tier)


def percentage_fee_value(settings: MarketplaceSettings) -> Decimal:
    """Paystack 子账户 percentage_charge：仅百分比费率有效，其他类型为 0。"""
    if settings.enabled and settings.fee_type == "percentage":
        return Decimal(settings.fee_value)
    return ZERO
