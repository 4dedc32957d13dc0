"""
钱包支付：用钱包余额直接付款，不经过任何渠道。

- 结账时选择 wallet_payment：扣款成功即完成订单，扣款失败取消订单
- 已有的待付款订单可以改用钱包支付（pay_order_with_wallet），扣款失败时订单保持原状
- 扣款前以 wallet.paid 原子占位，同一订单只扣款一次
"""

import logging
from decimal import Decimal

from app.models.schemas import OrderStatus
from app.services import events
from app.services.errors import InsufficientBalanceError, NotFoundError, PermissionDeniedError, ValidationError
from app.services.money import to_decimal, to_minor_units, to_money
from app.services.order_service import OrderService
from app.services.payment_methods.base import PaymentMethod, utc_now
from app.services.platform_config import load_wallet_settings
from app.services.wallet_service import WalletService, format_amount

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (OrderStatus.PENDING_PAYMENT.value, OrderStatus.PENDING_APPROVAL.value)
PAID_FLAG = "wallet.paid"


class WalletPayment(PaymentMethod):
    key = "wallet_payment"
    provider = "wallet"
    label = "Wallet"

    def load_settings(self):
        return load_wallet_settings()

    def should_sync(self) -> bool:
        return False

    def get_capture_method(self) -> str:
        return "automatic"

    def get_wallet_total(self) -> Decimal:
        """优先使用订单已保存的 pricing.total，否则按订单项计算。"""
        stored = self.order.get_details("pricing.total")
        try:
            value = to_decimal(stored)
        except ValueError:
            value = Decimal("0")
        if value > 0:
            return to_money(value)
        return self.get_total()

    def _process_payment(self) -> dict:
        return self.pay(cancel_on_failure=True)

    def pay(self, cancel_on_failure: bool = False) -> dict:
        """
        从买家钱包扣款并完成订单。

        Args:
            cancel_on_failure: 扣款失败时取消订单（结账时新建的订单）。

        Returns:
            成功：{"success": True, "redirect_url", "new_balance", "new_balance_formatted"}；
            失败：{"success": False, "message": ...}。
        """
        wallet = WalletService()
        if not wallet.is_enabled():
            return self._decline("Wallet feature is not available", cancel_on_failure)
        customer_id = self.order.customer_id
        if not customer_id:
            return self._decline("Please log in to use your wallet", cancel_on_failure)
        if self.order.status not in PAYABLE_STATUSES:
            return {"success": False, "message": "This order cannot be paid with wallet"}
        total = self.get_wallet_total()
        if total <= 0:
            return self._decline("Invalid order total", cancel_on_failure)

        if not self.orders.claim_flag(self.order.id, PAID_FLAG, PAYABLE_STATUSES):
            logger.info("钱包支付重复提交: order_id=%d", self.order.id)
            return {"success": False, "message": "This order cannot be paid with wallet"}

        try:
            result = wallet.debit(customer_id, total, {
                "type": "purchase",
                "reference_type": "order",
                "reference_id": self.order.id,
                "description": f"Payment for Order #{self.order.id}",
            })
        except InsufficientBalanceError:
            balance = format_amount(wallet.get_balance_cents(customer_id))
            message = f"Insufficient wallet balance. You have {balance} but need {format_amount(to_minor_units(total))}"
            return self._decline(message, cancel_on_failure, release=True)
        except Exception:
            self.orders.release_flag(self.order.id, PAID_FLAG)
            raise

        transaction_id = result["transaction_id"]
        self.order.set_status(OrderStatus.COMPLETED)
        self.order.set_transaction_id(f"wallet_{transaction_id}")
        self.order.set_details("wallet.paid", True)
        self.order.set_details("wallet.transaction_id", transaction_id)
        self.order.set_details("wallet.paid_at", utc_now())
        self.order.set_details("pricing.total", str(total))
        self.save()
        events.dispatch(events.ORDER_CUSTOMER_COMPLETED, order_id=self.order.id)
        logger.info("钱包支付成功: order_id=%d, user_id=%d, amount=%s", self.order.id, customer_id, total)

        new_balance = result["new_balance"]
        return {
            "success": True,
            "redirect_url": self.order_page_url(),
            "new_balance": str(new_balance),
            "new_balance_formatted": format_amount(to_minor_units(new_balance)),
        }

    def _decline(self, message: str, cancel: bool, release: bool = False) -> dict:
        if cancel and self.order.status in PAYABLE_STATUSES:
            self.order.set_status(OrderStatus.CANCELED)
            self.order.set_details("wallet.failed_at", utc_now())
            self.save()
        if release:
            self.orders.release_flag(self.order.id, PAID_FLAG)
        logger.warning("钱包支付失败: order_id=%d, %s", self.order.id, message)
        return {"success": False, "message": message}


def pay_order_with_wallet(order_id: int, user_id: int) -> dict:
    """
    用钱包支付已有的待付款订单，成功后订单的支付方式改为 wallet_payment。

    Raises:
        NotFoundError: 订单不存在。
        PermissionDeniedError: 订单不属于该用户。
        ValidationError: 订阅 / 充值订单不能用钱包支付。
    """
    order = OrderService().get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.customer_id != user_id:
        raise PermissionDeniedError("You cannot pay for this order")
    if any(item.item_type in ("subscription", "deposit") for item in order.items):
        raise ValidationError("This order cannot be paid with wallet")

    if order.payment_method != WalletPayment.key:
        order.set_details("wallet.previous_payment_method", order.payment_method)
        order.payment_method = WalletPayment.key
    return WalletPayment(order).pay()
