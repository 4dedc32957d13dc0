"""
PayPal 市场分账：商家收款邮箱、Payouts 批量付款、商家子订单与付款日志。

PayPal 不支持收款时拆分，平台先全额收款，订单完成后通过 Payouts 把商家收入打给商家邮箱。
"""

import logging
import re
import secrets
import time
from datetime import datetime
from decimal import Decimal

from app.database import get_db
from app.models.schemas import Order, PayPalSettings, VendorSubOrder
from app.services.errors import ValidationError
from app.services.gateway_http import GatewayResult
from app.services.marketplace import calculate_order_split, is_marketplace_order
from app.services.money import to_decimal, to_money
from app.services.order_service import OrderService
from app.services.paypal_client import PayPalClient
from app.services.platform_config import get_json_config, set_json_config
from app.services.user_service import UserService
from app.services.vendor_connections import get_connection, save_connection

logger = logging.getLogger(__name__)

PAYOUT_LOG_KEY = "paypal_payout_logs"
PAYOUT_LOG_LIMIT = 100
MIN_PAYOUT_AMOUNT = Decimal("1.00")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# PayPal 付款项状态 → 子订单付款状态
PAYOUT_ITEM_STATUS = {
    "SUCCEEDED": "completed",
    "SUCCESS": "completed",
    "FAILED": "failed",
    "BLOCKED": "failed",
    "REFUNDED": "failed",
    "RETURNED": "failed",
    "CANCELED": "failed",
    "UNCLAIMED": "processing",
    "PENDING": "processing",
}


def is_valid_email(email: str | None) -> bool:
    return bool(email and EMAIL_RE.match(email.strip()))


# ── 商家收款邮箱 ──────────────────────────────────────────


def set_vendor_email(vendor_id: int, email: str) -> None:
    """
    保存商家 PayPal 收款邮箱。

    Raises:
        ValidationError: 邮箱格式不合法。
    """
    email = (email or "").strip()
    if not is_valid_email(email):
        raise ValidationError("PayPal 邮箱格式不正确")
    save_connection(vendor_id, "paypal", {"email": email})


def get_vendor_email(vendor_id: int) -> str | None:
    """商家收款邮箱；未设置时回退到账户邮箱。"""
    creds = get_connection(vendor_id, "paypal") or {}
    if is_valid_email(creds.get("email")):
        return creds["email"]
    user = UserService().get_user(vendor_id)
    return user.email if user else None


# ── 子订单 ────────────────────────────────────────────────


def _row_to_sub_order(row) -> VendorSubOrder:
    return VendorSubOrder(
        id=row["id"],
        parent_order_id=row["parent_order_id"],
        vendor_id=row["vendor_id"],
        vendor_amount=to_decimal(row["vendor_amount"]),
        payout_status=row["payout_status"],
        payout_item_id=row["payout_item_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_sub_order(parent_order_id: int, vendor_id: int, amount: Decimal) -> int:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        cursor = db.execute(
            """INSERT INTO vendor_sub_orders
               (parent_order_id, vendor_id, vendor_amount, payout_status, created_at, updated_at)
               VALUES (?, ?, ?, 'pending', ?, ?)""",
            (parent_order_id, vendor_id, str(to_money(amount)), now, now),
        )
        db.commit()
        return cursor.lastrowid
    finally:
        db.close()


def update_sub_order_status(sub_order_id: int, status: str, payout_item_id: str | None = None) -> None:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        if payout_item_id:
            db.execute(
                """UPDATE vendor_sub_orders
                   SET payout_status = ?, payout_item_id = ?, updated_at = ? WHERE id = ?""",
                (status, payout_item_id, now, sub_order_id),
            )
        else:
            db.execute(
                "UPDATE vendor_sub_orders SET payout_status = ?, updated_at = ? WHERE id = ?",
                (status, now, sub_order_id),
            )
        db.commit()
    finally:
        db.close()


def get_sub_order(sub_order_id: int) -> VendorSubOrder | None:
    db = get_db()
    try:
        row = db.execute("SELECT * FROM vendor_sub_orders WHERE id = ?", (sub_order_id,)).fetchone()
        return _row_to_sub_order(row) if row else None
    finally:
        db.close()


def find_sub_order_by_payout_item(payout_item_id: str) -> VendorSubOrder | None:
    db = get_db()
    try:
        row = db.execute(
            "SELECT * FROM vendor_sub_orders WHERE payout_item_id = ?", (payout_item_id,)
        ).fetchone()
        return _row_to_sub_order(row) if row else None
    finally:
        db.close()


# ── 付款日志 ──────────────────────────────────────────────


def log_payout(payout_data: dict, items: list[dict]) -> None:
    header = payout_data.get("batch_header") or {}
    logs = get_json_config(PAYOUT_LOG_KEY, []) or []
    logs.append({
        "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "batch_id": header.get("payout_batch_id"),
        "batch_status": header.get("batch_status"),
        "items_count": len(items),
        "items": items,
    })
    set_json_config(PAYOUT_LOG_KEY, logs[-PAYOUT_LOG_LIMIT:])


def get_payout_logs(limit: int = 20) -> list[dict]:
    """最近的付款日志，新的在前。"""
    logs = get_json_config(PAYOUT_LOG_KEY, []) or []
    return list(reversed(logs))[:limit]


# ── Payouts ───────────────────────────────────────────────


def create_vendor_payout(
    client: PayPalClient,
    payout_items: list[dict],
    email_subject: str = "",
    email_message: str = "",
    sender_batch_id: str | None = None,
) -> GatewayResult:
    """
    发起 Payouts 批量付款。

    Args:
        payout_items: 每项含 recipient_email / amount / currency / note / recipient_id。
        sender_batch_id: 批次号；PayPal 拒绝 30 天内重复的批次号，固定批次号的重试不会重复付款。

    Returns:
        GatewayResult；参数校验失败时不发起请求。
    """
    if not payout_items:
        return GatewayResult(success=False, error="没有付款项")

    for item in payout_items:
        if not item.get("recipient_email") or not item.get("amount") or not item.get("currency"):
            return GatewayResult(success=False, error="付款项缺少必填字段")
        if not is_valid_email(item["recipient_email"]):
            return GatewayResult(success=False, error=f"收款邮箱不合法: {item['recipient_email']}")
        if to_money(item["amount"]) < MIN_PAYOUT_AMOUNT:
            return GatewayResult(success=False, error="付款金额不能低于 1.00")

    sender_batch_id = sender_batch_id or f"payout_{int(time.time())}_{secrets.token_hex(4)}"
    payout_data = {
        "sender_batch_header": {
            "sender_batch_id": sender_batch_id,
            "recipient_type": "EMAIL",
            "email_subject": email_subject or "You have a payment",
            "email_message": email_message or "You have received a payment. Thank you.",
        },
        "items": [
            {
                "amount": {
                    "value": PayPalClient.to_paypal_amount(item["amount"]),
                    "currency": item["currency"],
                },
                "receiver": item["recipient_email"],
                "note": item.get("note") or "Marketplace payout",
                "sender_item_id": str(item.get("recipient_id") or secrets.token_hex(6)),
                "recipient_wallet": "PAYPAL",
            }
            for item in payout_items
        ],
    }

    result = client.create_payout(payout_data)
    if result.success:
        log_payout(result.data or {}, [
            {**item, "amount": PayPalClient.to_paypal_amount(item["amount"])} for item in payout_items
        ])
    else:
        logger.error("PayPal 付款失败: %s, details=%s", result.error, result.details)
    return result


def process_order_payout(order: Order, settings: PayPalSettings, client: PayPalClient | None = None) -> GatewayResult:
    """
    为已完成的市场订单向商家付款，并把结果写回订单 marketplace.*。

    不做重复付款保护，调用方（payout_queue）负责幂等。
    """
    marketplace = settings.marketplace
    if not is_marketplace_order(order, marketplace, "paypal"):
        return GatewayResult(success=False, error="不是市场订单")

    vendor_id = int(order.get_vendor_id())
    split = calculate_order_split(order, marketplace)
    if split.vendor_earnings <= 0:
        logger.error("商家收入为 0，跳过付款: order_id=%d", order.id)
        return GatewayResult(success=False, error="商家收入为 0")

    vendor_email = get_vendor_email(vendor_id)
    if not vendor_email:
        logger.error("未找到商家收款邮箱: order_id=%d, vendor_id=%d", order.id, vendor_id)
        return GatewayResult(success=False, error="未找到商家收款邮箱")

    sub_order_id = create_sub_order(order.id, vendor_id, split.vendor_earnings)
    client = client or PayPalClient(settings)
    result = create_vendor_payout(
        client,
        [{
            "recipient_email": vendor_email,
            "amount": split.vendor_earnings,
            "currency": order.currency,
            "note": f"Payment for order #{order.id}",
            "recipient_id": sub_order_id,
        }],
        email_subject="You have a payment",
        email_message=(
            f"You have received a payment of {order.currency} "
            f"{PayPalClient.to_paypal_amount(split.vendor_earnings)} for order #{order.id}."
        ),
        sender_batch_id=f"payout_order_{order.id}",
    )

    if not result.success:
        update_sub_order_status(sub_order_id, "failed")
        return result

    data = result.data or {}
    items = data.get("items") or []
    payout_item_id = items[0].get("payout_item_id") if items else None
    update_sub_order_status(sub_order_id, "processing", payout_item_id)

    order.set_details("marketplace.vendor_payout_id", (data.get("batch_header") or {}).get("payout_batch_id"))
    order.set_details("marketplace.vendor_earnings", str(split.vendor_earnings))
    order.set_details("marketplace.platform_fee", str(split.platform_fee))
    order.set_details("marketplace.sub_order_id", sub_order_id)
    OrderService().save(order)
    logger.info(
        "商家付款已发起: order_id=%d, vendor_id=%d, amount=%s",
        order.id, vendor_id, split.vendor_earnings,
    )
    return result


def handle_payout_item_event(payout_item_id: str, transaction_status: str) -> VendorSubOrder | None:
    """PAYMENT.PAYOUTS-ITEM.* 事件：更新对应子订单的付款状态。"""
    sub_order = find_sub_order_by_payout_item(payout_item_id)
    if not sub_order:
        return None
    status = PAYOUT_ITEM_STATUS.get(transaction_status.upper(), sub_order.payout_status)
    update_sub_order_status(sub_order.id, status)
    sub_order.payout_status = status
    logger.info("商家付款状态更新: sub_order_id=%d, status=%s", sub_order.id, status)
    return sub_order
