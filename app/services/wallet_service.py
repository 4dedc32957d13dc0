"""
钱包服务：余额账本（单位：分）。

- 余额计数器保存在 users.wallet_balance，每次变动追加一条不可变的 wallet_transactions 记录
- 入账 / 扣款在 BEGIN IMMEDIATE 事务内完成读余额 → 计算 → 写余额 → 写流水，
  同一用户的并发操作串行执行，流水的 balance_after 始终等于写入后的余额
- 事务提交后触发 wallet.credited / wallet.debited 事件
"""

import logging
from datetime import datetime
from decimal import Decimal

from app.database import get_db
from app.models.schemas import WalletTransaction
from app.services import events
from app.services.errors import InsufficientBalanceError, NotFoundError, ValidationError
from app.services.money import format_money, from_minor_units, to_decimal, to_minor_units
from app.services.platform_config import load_section, load_wallet_settings

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "AUD": "A$",
    "CAD": "C$",
    "CHF": "CHF ",
    "CNY": "¥",
    "INR": "₹",
    "MXN": "MX$",
    "BRL": "R$",
    "ARS": "$",
    "NGN": "₦",
    "ZAR": "R",
    "GHS": "GH₵",
    "KES": "KSh",
}

TRANSACTION_TYPES = ("deposit", "purchase", "refund", "adjustment")

# 站点币种的取值优先级
_CURRENCY_SECTIONS = ("stripe", "paypal", "paystack", "mercadopago")


def get_site_currency() -> str:
    for section in _CURRENCY_SECTIONS:
        currency = load_section(section).get("currency")
        if currency:
            return str(currency).upper()
    return "USD"


def format_amount(cents: int, currency: str | None = None) -> str:
    """格式化金额，如 format_amount(1250, "NGN") → "₦12.50"。"""
    currency = (currency or get_site_currency()).upper()
    symbol = CURRENCY_SYMBOLS.get(currency, currency + " ")
    value = from_minor_units(cents)
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def has_real_payment_gateway() -> bool:
    """钱包充值需要至少一个可用的收款渠道。"""
    if load_section("stripe").get("api_key"):
        return True
    for section in ("paypal", "paystack", "mercadopago"):
        enabled = load_section(section).get("enabled")
        if enabled in (True, 1, "1", "true", "yes", "on"):
            return True
    return False


def _row_to_transaction(row) -> WalletTransaction:
    return WalletTransaction(
        id=row["id"],
        user_id=row["user_id"],
        transaction_type=row["transaction_type"],
        amount=row["amount"],
        balance_after=row["balance_after"],
        currency=row["currency"],
        reference_type=row["reference_type"],
        reference_id=row["reference_id"],
        gateway=row["gateway"],
        gateway_transaction_id=row["gateway_transaction_id"],
        description=row["description"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class WalletService:
    """钱包余额与流水。"""

    def is_enabled(self) -> bool:
        return load_wallet_settings().enabled and has_real_payment_gateway()

    def get_balance_cents(self, user_id: int) -> int:
        """
        Raises:
            NotFoundError: 用户不存在。
        """
        db = get_db()
        try:
            row = db.execute("SELECT wallet_balance FROM users WHERE id = ?", (user_id,)).fetchone()
        finally:
            db.close()
        if not row:
            raise NotFoundError(f"用户 id={user_id} 不存在")
        return int(row["wallet_balance"])

    def get_balance(self, user_id: int) -> Decimal:
        return from_minor_units(self.get_balance_cents(user_id))

    def has_sufficient_balance(self, user_id: int, amount) -> bool:
        return self.get_balance_cents(user_id) >= to_minor_units(amount)

    # ── 入账 / 扣款 ───────────────────────────────────────

    def credit(self, user_id: int, amount, meta: dict | None = None) -> dict:
        """
        入账。

        Args:
            amount: 金额（元），内部换算为分。
            meta: type / reference_type / reference_id / gateway /
                  gateway_transaction_id / description。

        Returns:
            {"success": True, "transaction_id": int, "new_balance": Decimal}

        Raises:
            ValidationError: 金额不大于 0。
            NotFoundError: 用户不存在。
        """
        meta = meta or {}
        cents = self._to_cents(amount)
        tx_id, new_balance = self._apply(
            user_id, cents,
            transaction_type=meta.get("type", "deposit"),
            reference_type=meta.get("reference_type"),
            reference_id=meta.get("reference_id"),
            gateway=meta.get("gateway"),
            gateway_transaction_id=meta.get("gateway_transaction_id"),
            description=meta.get("description") or "Wallet credit",
        )
        events.dispatch(events.WALLET_CREDITED, user_id=user_id, amount=cents, transaction_id=tx_id)
        return {"success": True, "transaction_id": tx_id, "new_balance": from_minor_units(new_balance)}

    def debit(self, user_id: int, amount, meta: dict | None = None) -> dict:
        """
        扣款，流水金额记为负数，gateway 固定为 wallet。

        Raises:
            ValidationError: 金额不大于 0。
            InsufficientBalanceError: 余额不足，余额与流水均不变。
            NotFoundError: 用户不存在。
        """
        meta = meta or {}
        cents = self._to_cents(amount)
        tx_id, new_balance = self._apply(
            user_id, -cents,
            transaction_type=meta.get("type", "purchase"),
            reference_type=meta.get("reference_type"),
            reference_id=meta.get("reference_id"),
            gateway="wallet",
            gateway_transaction_id=None,
            description=meta.get("description") or "Wallet payment",
        )
        events.dispatch(events.WALLET_DEBITED, user_id=user_id, amount=cents, transaction_id=tx_id)
        return {"success": True, "transaction_id": tx_id, "new_balance": from_minor_units(new_balance)}

    def refund(self, user_id: int, amount, order_id: int) -> dict:
        return self.credit(user_id, amount, {
            "type": "refund",
            "reference_type": "order",
            "reference_id": order_id,
            "description": f"Refund for Order #{order_id}",
        })

    def adjust(self, user_id: int, amount, description: str = "", admin: str | None = None) -> dict:
        """管理员调整余额：正数入账，负数扣款。"""
        value = to_decimal(amount)
        if value == 0:
            raise ValidationError("Invalid amount")
        note = description or f"Adjustment by {admin or 'admin'}"
        meta = {"type": "adjustment", "description": note}
        logger.info("钱包余额调整: user_id=%d, amount=%s, admin=%s", user_id, value, admin)
        if value > 0:
            return self.credit(user_id, value, meta)
        return self.debit(user_id, -value, meta)

    @staticmethod
    def _to_cents(amount) -> int:
        try:
            cents = to_minor_units(amount)
        except ValueError as e:
            raise ValidationError("Invalid amount") from e
        if cents <= 0:
            raise ValidationError("Invalid amount")
        return cents

    def _apply(self, user_id: int, delta: int, **fields) -> tuple[int, int]:
        """在写锁事务内变动余额并追加流水，返回 (流水 ID, 新余额)。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        currency = get_site_currency()
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute("SELECT wallet_balance FROM users WHERE id = ?", (user_id,)).fetchone()
            if not row:
                raise NotFoundError(f"用户 id={user_id} 不存在")
            current = int(row["wallet_balance"])
            new_balance = current + delta
            if new_balance < 0:
                raise InsufficientBalanceError("Insufficient wallet balance")

            db.execute(
                "UPDATE users SET wallet_balance = ?, updated_at = ? WHERE id = ?",
                (new_balance, now, user_id),
            )
            cursor = db.execute(
                """INSERT INTO wallet_transactions
                   (user_id, transaction_type, amount, balance_after, currency,
                    reference_type, reference_id, gateway, gateway_transaction_id,
                    description, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'completed', ?, ?)""",
                (
                    user_id, fields["transaction_type"], delta, new_balance, currency,
                    fields["reference_type"], fields["reference_id"], fields["gateway"],
                    fields["gateway_transaction_id"], fields["description"], now, now,
                ),
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "钱包余额变动: user_id=%d, delta=%d, balance=%d, type=%s",
            user_id, delta, new_balance, fields["transaction_type"],
        )
        return cursor.lastrowid, new_balance

    # ── 查询 ──────────────────────────────────────────────

    def get_transactions(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        transaction_type: str | None = None,
        order: str = "DESC",
    ) -> list[WalletTransaction]:
        direction = "ASC" if str(order).upper() == "ASC" else "DESC"
        sql = "SELECT * FROM wallet_transactions WHERE user_id = ?"
        params: list = [user_id]
        if transaction_type:
            sql += " AND transaction_type = ?"
            params.append(transaction_type)
        sql += f" ORDER BY created_at {direction}, id {direction} LIMIT ? OFFSET ?"
        params.extend([max(int(limit), 0), max(int(offset), 0)])

        db = get_db()
        try:
            rows = db.execute(sql, params).fetchall()
            return [_row_to_transaction(r) for r in rows]
        finally:
            db.close()

    def get_transaction_count(self, user_id: int, transaction_type: str | None = None) -> int:
        sql = "SELECT COUNT(*) AS cnt FROM wallet_transactions WHERE user_id = ?"
        params: list = [user_id]
        if transaction_type:
            sql += " AND transaction_type = ?"
            params.append(transaction_type)
        db = get_db()
        try:
            return db.execute(sql, params).fetchone()["cnt"]
        finally:
            db.close()

    def validate_deposit_amount(self, amount) -> dict:
        """校验充值金额是否在 [min_deposit, max_deposit] 内。"""
        settings = load_wallet_settings()
        try:
            value = to_decimal(amount)
        except ValueError:
            return {"valid": False, "error": "Invalid amount"}
        if value < settings.min_deposit:
            return {
                "valid": False,
                "error": f"Minimum deposit amount is {format_amount(to_minor_units(settings.min_deposit))}",
            }
        if value > settings.max_deposit:
            return {
                "valid": False,
                "error": f"Maximum deposit amount is {format_amount(to_minor_units(settings.max_deposit))}",
            }
        return {"valid": True, "error": None}


def transaction_to_dict(tx: WalletTransaction) -> dict:
    """接口输出格式：金额以元表示，附带格式化字符串。"""
    return {
        "id": tx.id,
        "type": tx.transaction_type,
        "amount": format_money(from_minor_units(tx.amount)),
        "amount_formatted": format_amount(abs(tx.amount), tx.currency),
        "balance_after": format_money(from_minor_units(tx.balance_after)),
        "balance_after_formatted": format_amount(tx.balance_after, tx.currency),
        "currency": tx.currency,
        "reference_type": tx.reference_type,
        "reference_id": tx.reference_id,
        "gateway": tx.gateway,
        "description": tx.description,
        "status": tx.status,
        "created_at": tx.created_at,
        "is_credit": tx.amount > 0,
    }
