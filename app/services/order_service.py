"""
订单服务模块：创建订单、按 ID / 关联键查找订单、持久化状态与 details。

关联键（如 paypal.capture_id、paystack.reference）在保存时写入 order_refs 表，
(ref_key, ref_value) 唯一索引保证一个渠道交易号只对应一个订单。
保存时在 BEGIN IMMEDIATE 事务内按当前数据库状态做状态迁移校验（先写者胜）。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

from app.database import get_db
from app.models.schemas import LineItem, Order, OrderStatus, can_transition
from app.services.errors import ValidationError
from app.services.money import to_decimal
from app.services.user_service import UserService

logger = logging.getLogger(__name__)

# 渠道交易关联键：Webhook / 回跳时据此查找订单
CORRELATION_KEYS = (
    "paypal.order_id",
    "paypal.capture_id",
    "paypal.authorization_id",
    "paypal.subscription_id",
    "mercadopago.preference_id",
    "mercadopago.payment_id",
    "mercadopago.preapproval_id",
    "paystack.reference",
    "paystack.subscription_code",
    "square.payment_link_id",
    "square.order_id",
    "square.payment_id",
    "square.subscription_id",
    "wallet.deposit_id",
)


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"无法序列化类型: {type(value).__name__}")


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _row_to_item(row) -> LineItem:
    return LineItem(
        id=row["id"],
        order_id=row["order_id"],
        label=row["label"],
        amount=to_decimal(row["amount"]),
        quantity=row["quantity"],
        currency=row["currency"],
        item_type=row["item_type"],
        description=row["description"],
        vendor_id=row["vendor_id"],
        post_author_id=row["post_author_id"],
        subscription_unit=row["subscription_unit"],
        subscription_frequency=row["subscription_frequency"],
        trial_days=row["trial_days"],
    )


class OrderService:
    """订单服务：创建、查询、保存。"""

    def create_order(
        self,
        customer_id: int | None,
        payment_method: str,
        items: list[dict],
        currency: str = "USD",
        details: dict | None = None,
        status: str = OrderStatus.PENDING_PAYMENT.value,
    ) -> Order:
        """
        创建订单及订单项。

        Args:
            customer_id: 下单用户 ID。
            payment_method: 支付方式键，如 paypal_payment。
            items: 订单项列表，每项含 label/amount/quantity，可选 vendor_id 等。
            currency: 币种。
            details: 初始 details。

        Raises:
            ValidationError: 订单项为空或金额不合法。
        """
        if not items:
            raise ValidationError("订单项不能为空")

        normalized = []
        for item in items:
            try:
                amount = to_decimal(item.get("amount"))
            except ValueError as e:
                raise ValidationError(str(e)) from e
            quantity = int(item.get("quantity") or 1)
            if amount <= 0 or quantity <= 0:
                raise ValidationError("订单项金额和数量必须大于 0")
            if not item.get("label"):
                raise ValidationError("订单项名称不能为空")
            normalized.append((item, amount, quantity))

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO orders
                   (customer_id, payment_method, status, currency, details, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    customer_id, payment_method, status, currency.upper(),
                    json.dumps(details or {}, ensure_ascii=False, default=_json_default),
                    now, now,
                ),
            )
            order_id = cursor.lastrowid
            for item, amount, quantity in normalized:
                db.execute(
                    """INSERT INTO order_items
                       (order_id, item_type, label, description, amount, quantity, currency,
                        vendor_id, post_author_id, subscription_unit, subscription_frequency, trial_days)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        order_id,
                        item.get("item_type") or ("subscription" if item.get("subscription_unit") else "regular"),
                        item["label"],
                        item.get("description"),
                        str(amount),
                        quantity,
                        (item.get("currency") or currency).upper(),
                        item.get("vendor_id"),
                        item.get("post_author_id"),
                        item.get("subscription_unit"),
                        item.get("subscription_frequency"),
                        item.get("trial_days"),
                    ),
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("订单已创建: order_id=%d, payment_method=%s", order_id, payment_method)
        return self.get_order(order_id)

    def get_order(self, order_id: int) -> Order | None:
        """按 ID 加载订单（含订单项和下单用户）。"""
        db = get_db()
        try:
            row = db.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            if not row:
                return None
            item_rows = db.execute(
                "SELECT * FROM order_items WHERE order_id = ? ORDER BY id", (order_id,)
            ).fetchall()
        finally:
            db.close()

        customer = None
        if row["customer_id"]:
            customer = UserService().get_user(row["customer_id"])

        return Order(
            id=row["id"],
            payment_method=row["payment_method"],
            status=row["status"],
            currency=row["currency"],
            customer_id=row["customer_id"],
            customer=customer,
            transaction_id=row["transaction_id"],
            details=json.loads(row["details"] or "{}"),
            items=[_row_to_item(r) for r in item_rows],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def find_by_ref(self, ref_key: str, ref_value) -> Order | None:
        """按渠道关联键精确查找订单，找不到返回 None。"""
        if ref_value in (None, ""):
            return None
        db = get_db()
        try:
            row = db.execute(
                "SELECT order_id FROM order_refs WHERE ref_key = ? AND ref_value = ?",
                (ref_key, str(ref_value)),
            ).fetchone()
        finally:
            db.close()
        return self.get_order(row["order_id"]) if row else None

    def find_recent_for_customer(
        self, payment_method: str, email: str, statuses: tuple[str, ...], missing_ref: str | None = None,
    ) -> Order | None:
        """
        按买家邮箱查找最近一笔指定支付方式的订单。

        missing_ref 不为空时只匹配尚未写入该关联键的订单。
        """
        if not email:
            return None
        placeholders = ",".join("?" for _ in statuses)
        db = get_db()
        try:
            rows = db.execute(
                f"""SELECT o.id FROM orders o JOIN users u ON u.id = o.customer_id
                    WHERE o.payment_method = ? AND lower(u.email) = lower(?)
                      AND o.status IN ({placeholders})
                    ORDER BY o.id DESC LIMIT 20""",
                (payment_method, email, *statuses),
            ).fetchall()
        finally:
            db.close()
        for row in rows:
            order = self.get_order(row["id"])
            if order and (not missing_ref or not order.get_details(missing_ref)):
                return order
        return None

    def list_for_user(self, user_id: int, limit: int = 20, offset: int = 0) -> list[Order]:
        """买家或商家相关的订单，按时间倒序。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT DISTINCT o.id FROM orders o
                   LEFT JOIN order_items i ON i.order_id = o.id
                   WHERE o.customer_id = ? OR i.vendor_id = ? OR i.post_author_id = ?
                   ORDER BY o.id DESC LIMIT ? OFFSET ?""",
                (user_id, user_id, user_id, max(int(limit), 0), max(int(offset), 0)),
            ).fetchall()
        finally:
            db.close()
        return [order for order in (self.get_order(r["id"]) for r in rows) if order]

    def save(self, order: Order) -> Order:
        """
        持久化订单状态、交易号和 details。

        在写锁事务内重新读取当前状态：若内存中的新状态不是合法迁移
        （例如并发的回跳已把订单置为 canceled），保留数据库中的状态。
        details 与数据库中的版本深度合并，避免覆盖并发写入的字段。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute(
                "SELECT status, details FROM orders WHERE id = ?", (order.id,)
            ).fetchone()
            if not row:
                raise ValueError(f"订单 id={order.id} 不存在")

            current_status = row["status"]
            if not can_transition(current_status, order.status):
                logger.warning(
                    "订单状态已被并发修改，保留 %s（忽略 %s）: order_id=%d",
                    current_status, order.status, order.id,
                )
                order.status = current_status

            merged = _deep_merge(json.loads(row["details"] or "{}"), order.details)
            order.details = merged

            db.execute(
                """UPDATE orders
                   SET status = ?, payment_method = ?, transaction_id = ?, details = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    order.status,
                    order.payment_method,
                    order.transaction_id,
                    json.dumps(merged, ensure_ascii=False, default=_json_default),
                    now,
                    order.id,
                ),
            )
            self._register_refs(db, order, now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        order.updated_at = now
        return order

    # ── 原子标记 ──────────────────────────────────────────

    def claim_flag(self, order_id: int, path: str, statuses: tuple[str, ...] = ()) -> bool:
        """
        原子设置 details 中的布尔标记（如 wallet.credited），已被设置过返回 False。

        statuses 非空时订单必须处于其中一个状态才能占位。
        持有标记的内存订单在 release_flag 之前保存，否则合并时会把标记写回。
        """
        json_path = f"$.{path}"
        sql = """UPDATE orders
                 SET details = json_set(details, ?, json('true')), updated_at = ?
                 WHERE id = ? AND json_extract(details, ?) IS NULL"""
        params: list = [json_path, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), order_id, json_path]
        if statuses:
            sql += f" AND status IN ({', '.join('?' * len(statuses))})"
            params.extend(statuses)
        db = get_db()
        try:
            cursor = db.execute(sql, params)
            db.commit()
            return cursor.rowcount == 1
        finally:
            db.close()

    def release_flag(self, order_id: int, path: str) -> None:
        db = get_db()
        try:
            db.execute(
                "UPDATE orders SET details = json_remove(details, ?) WHERE id = ?",
                (f"$.{path}", order_id),
            )
            db.commit()
        finally:
            db.close()

    @staticmethod
    def _register_refs(db, order: Order, now: str) -> None:
        """写入关联键；已被其他订单占用时只记录日志（先写者胜）。"""
        for key in CORRELATION_KEYS:
            value = order.get_details(key)
            if value in (None, ""):
                continue
            value = str(value)
            existing = db.execute(
                "SELECT order_id FROM order_refs WHERE ref_key = ? AND ref_value = ?",
                (key, value),
            ).fetchone()
            if existing:
                if existing["order_id"] != order.id:
                    logger.warning(
                        "关联键冲突: %s=%s 已属于订单 %d，忽略订单 %d",
                        key, value, existing["order_id"], order.id,
                    )
                continue
            db.execute(
                "INSERT INTO order_refs (order_id, ref_key, ref_value, created_at) VALUES (?, ?, ?, ?)",
                (order.id, key, value, now),
            )
