"""
Square 支付方式：Payment Link（quick_pay）一次性支付与订阅首付。

Square 回跳地址带 transactionId（支付 ID）与 orderId；没有支付 ID 时
通过 Square 订单的 tenders 找到支付。
"""

import logging

from app.models.schemas import OrderStatus
from app.services import events
from app.services.payment_methods.base import OrderAction, PaymentMethod, SubscriptionMethod, utc_now
from app.services.platform_config import load_square_settings
from app.services.square_client import SquareClient, generate_idempotency_key

logger = logging.getLogger(__name__)

ORDER_REF_PREFIX = "voxel_order_"
SUBSCRIPTION_REF_PREFIX = "voxel_subscription_"

PAYMENT_STATUS = {
    "COMPLETED": OrderStatus.COMPLETED,
    "APPROVED": OrderStatus.PENDING_APPROVAL,
    "PENDING": OrderStatus.PENDING_PAYMENT,
    "FAILED": OrderStatus.CANCELED,
    "CANCELED": OrderStatus.CANCELED,
}


class SquareMixin:
    provider = "square"

    def load_settings(self):
        return load_square_settings()

    def create_client(self):
        return SquareClient(self.settings)

    def build_checkout_data(self, name: str, note: str, return_kind: str) -> dict:
        total_cents = sum(
            SquareClient.to_square_amount(item.amount) * int(item.quantity) for item in self.get_line_items()
        )
        data = {
            "idempotency_key": generate_idempotency_key(),
            "quick_pay": {
                "name": name[:255],
                "price_money": {"amount": total_cents, "currency": self.order.currency},
                "location_id": self.client.get_location_id(),
            },
            "checkout_options": {
                "redirect_url": self.return_url(return_kind),
                "ask_for_shipping_address": False,
            },
            "pre_populated_data": {},
            "payment_note": note,
        }
        if self.settings.support_email:
            data["checkout_options"]["merchant_support_email"] = self.settings.support_email
        email = self.get_customer_email()
        if email:
            data["pre_populated_data"]["buyer_email"] = email
        return data

    def create_link(self, data: dict) -> str:
        """创建 Payment Link 并保存关联键，返回支付地址。"""
        result = self.client.create_payment_link(data).raise_for_error()
        link = (result.data or {}).get("payment_link")
        if not link:
            raise ValueError("Square 未返回 payment link")
        self.order.set_details("square.payment_link_id", link.get("id"))
        self.order.set_details("square.order_id", link.get("order_id"))
        self.order.set_details("square.status", "PENDING")
        self.order.set_details("pricing.total", str(self.get_total()))
        url = link.get("url") or link.get("long_url")
        if not url:
            raise ValueError("Square 未返回支付地址")
        return url

    def owns_payment(self, payment: dict) -> bool:
        """支付属于本订单：Square 订单号与保存的一致，或支付备注为本订单的关联号。"""
        square_order_id = self.order.get_details("square.order_id")
        if square_order_id and payment.get("order_id") == square_order_id:
            return True
        return payment.get("note") in (
            f"{ORDER_REF_PREFIX}{self.order.id}", f"{SUBSCRIPTION_REF_PREFIX}{self.order.id}",
        )

    def fetch_payment(self, params: dict) -> dict | None:
        """按回跳参数或 Square 订单找到支付。"""
        payment_id = params.get("transactionId") or self.order.get_details("square.payment_id")
        if not payment_id:
            square_order_id = params.get("orderId") or self.order.get_details("square.order_id")
            if not square_order_id:
                return None
            result = self.client.get_order(square_order_id)
            if not result.success:
                logger.error("Square 订单查询失败: order_id=%d, %s", self.order.id, result.error)
                return None
            tenders = ((result.data or {}).get("order") or {}).get("tenders") or []
            payment_id = tenders[0].get("payment_id") if tenders else None
            if not payment_id:
                return None

        result = self.client.get_payment(payment_id)
        if not result.success:
            logger.error("Square 支付查询失败: order_id=%d, %s", self.order.id, result.error)
            return None
        return (result.data or {}).get("payment")


class SquarePayment(SquareMixin, PaymentMethod):
    key = "square_payment"
    label = "Square payment"

    def _process_payment(self) -> dict:
        if not self.get_line_items():
            raise ValueError("订单没有订单项")

        items = self.get_line_items()
        first = items[0].label
        if len(items) > 1:
            name = f"{first[:80]} (+{len(items) - 1} more) - Order #{self.order.id}"
        else:
            name = f"{first[:100]} - Order #{self.order.id}"
        data = self.build_checkout_data(name, f"{ORDER_REF_PREFIX}{self.order.id}", "success")
        if items[0].description:
            data["description"] = items[0].description[:60]

        url = self.create_link(data)
        self.order.set_details("square.capture_method", self.get_capture_method())
        self.save()
        return {"success": True, "redirect_url": url}

    # ── 完成处理 ──────────────────────────────────────────

    def handle_order_completed(self, payment: dict) -> None:
        self.order.set_details("square.payment", payment)
        self.order.set_details("square.status", payment.get("status") or "COMPLETED")
        if payment.get("id"):
            self.store_transaction_id(payment["id"])
            self.order.set_details("square.payment_id", payment["id"])
        amount_money = payment.get("amount_money") or {}
        if amount_money.get("amount") is not None:
            self.order.set_details("pricing.total", str(SquareClient.from_square_amount(amount_money["amount"])))

        status = PAYMENT_STATUS.get(payment.get("status") or "", OrderStatus.PENDING_PAYMENT)
        capture_method = self.order.get_details("square.capture_method") or self.get_capture_method()
        if status == OrderStatus.COMPLETED and capture_method == "manual":
            status = OrderStatus.PENDING_APPROVAL
        self.order.set_status(status)

        self.mark_synced()
        self.save()
        if self.order.status == OrderStatus.COMPLETED.value:
            self.after_completed()

    def handle_refund(self, refund: dict) -> None:
        """refund.updated：退款完成后标记订单已退款。"""
        self.order.set_details("square.refund", refund)
        if refund.get("status") == "COMPLETED":
            self.order.set_status(OrderStatus.REFUNDED)
        self.save()

    def handle_return(self, kind: str, params: dict) -> str:
        if kind == "cancel":
            self._cancel_unpaid()
            return self.order_page_url()
        payment = self.fetch_payment(params)
        if not payment:
            # 支付可能尚未写入 Square，交给 Webhook / 同步处理
            return self.order_page_url()
        if not self.owns_payment(payment):
            return self.reject_foreign_payment("payment_id", payment.get("id"))
        self.handle_order_completed(payment)
        if self.order.status == OrderStatus.CANCELED.value:
            return self.failure_url()
        return self.order_page_url()

    def sync(self) -> None:
        payment = self.fetch_payment({})
        if payment:
            self.handle_order_completed(payment)

    # ── 订单操作 ──────────────────────────────────────────

    def get_vendor_actions(self) -> list[OrderAction]:
        if self.order.status != OrderStatus.PENDING_APPROVAL.value:
            return []
        return [
            OrderAction("vendor.approve", "Approve", self._approve, "primary"),
            OrderAction("vendor.decline", "Decline", self._decline),
        ]

    def get_customer_actions(self) -> list[OrderAction]:
        if self.order.status != OrderStatus.PENDING_APPROVAL.value:
            return []
        return [OrderAction("customer.cancel", "Cancel order", self._customer_cancel)]

    def _approve(self) -> dict:
        self.order.set_details("square.approved_at", utc_now())
        return self._mark_completed_by_vendor()

    def _refund(self, reason: str) -> None:
        payment_id = self.order.get_details("square.payment_id")
        amount = self.order.get_details("pricing.total")
        if not payment_id or not amount:
            return
        result = self.client.refund_payment(payment_id, amount, self.order.currency, reason)
        if result.success:
            self.order.set_details("square.refund_id", ((result.data or {}).get("refund") or {}).get("id"))
        else:
            logger.error("Square 退款失败: order_id=%d, %s", self.order.id, result.error)

    def _decline(self) -> dict:
        self._refund("Order declined by vendor")
        self.order.set_details("square.declined_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_VENDOR_DECLINED)

    def _customer_cancel(self) -> dict:
        self._refund("Customer requested cancellation")
        self.order.set_details("square.canceled_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_CUSTOMER_CANCELED)


class SquareSubscription(SquareMixin, SubscriptionMethod):
    key = "square_subscription"
    label = "Square subscription"
    subscription_ref_key = "square.subscription_id"

    STATUS_MAP = {
        "ACTIVE": OrderStatus.SUB_ACTIVE,
        "PAUSED": OrderStatus.SUB_PAUSED,
        "CANCELED": OrderStatus.SUB_CANCELED,
        "DEACTIVATED": OrderStatus.SUB_CANCELED,
        "PENDING": OrderStatus.PENDING_PAYMENT,
    }

    def _process_payment(self) -> dict:
        item = self.get_subscription_item()
        if not item:
            raise ValueError("订单没有订阅项")

        unit, frequency = self.get_interval()
        self.order.set_details("square.subscription_setup", {
            "interval": unit,
            "frequency": frequency,
            "trial_days": item.trial_days,
            "amount": str(item.amount),
            "currency": item.currency,
            "product_label": item.label,
        })
        data = self.build_checkout_data(
            f"{item.label[:80]} (Subscription) - Order #{self.order.id}",
            f"{SUBSCRIPTION_REF_PREFIX}{self.order.id}",
            "subscription",
        )
        url = self.create_link(data)
        self.order.set_details("square.is_subscription", True)
        self.save()
        return {"success": True, "redirect_url": url}

    # ── 完成处理 ──────────────────────────────────────────

    def handle_initial_payment_completed(self, payment: dict) -> None:
        """首付完成即激活订阅。"""
        self.order.set_details("square.initial_payment", payment)
        if payment.get("id"):
            self.order.set_details("square.payment_id", payment["id"])
        status = payment.get("status")
        if status == "COMPLETED":
            self.order.set_status(OrderStatus.SUB_ACTIVE)
            self.store_transaction_id(payment.get("id") or f"square_sub_{self.order.id}")
            if not self.order.get_details("square.subscription_started_at"):
                self.order.set_details("square.subscription_started_at", utc_now())
        elif status in ("FAILED", "CANCELED"):
            self.order.set_status(OrderStatus.CANCELED)
        self.mark_synced()
        self.save()

    def subscription_updated(self, subscription: dict) -> None:
        self.order.set_details("square.subscription", subscription)
        self.order.set_details("square.status", subscription.get("status") or "ACTIVE")
        if subscription.get("id"):
            self.order.set_details("square.subscription_id", subscription["id"])
        self.apply_subscription_status((subscription.get("status") or "").upper())
        self.mark_synced()
        self.save()

    def handle_return(self, kind: str, params: dict) -> str:
        payment = self.fetch_payment(params)
        if payment and not self.owns_payment(payment):
            return self.reject_foreign_payment("payment_id", payment.get("id"))
        if payment:
            self.handle_initial_payment_completed(payment)
        if self.order.status == OrderStatus.CANCELED.value:
            return self.failure_url()
        return self.order_page_url()

    def sync(self) -> None:
        subscription_id = self.get_subscription_id()
        if subscription_id:
            result = self.client.get_subscription(subscription_id)
            subscription = (result.data or {}).get("subscription") if result.success else None
            if subscription:
                self.subscription_updated(subscription)
            return
        payment = self.fetch_payment({})
        if payment:
            self.handle_initial_payment_completed(payment)

    # ── 订单操作 ──────────────────────────────────────────

    def get_customer_actions(self) -> list[OrderAction]:
        actions = []
        if self.order.status in (OrderStatus.SUB_ACTIVE.value, OrderStatus.SUB_PAUSED.value):
            actions.append(OrderAction("customer.cancel_subscription", "Cancel subscription", self._cancel))
        if self.order.status == OrderStatus.SUB_ACTIVE.value:
            actions.append(OrderAction("customer.pause_subscription", "Pause subscription", self._pause))
        if self.order.status == OrderStatus.SUB_PAUSED.value:
            actions.append(OrderAction("customer.resume_subscription", "Resume subscription", self._resume))
        return actions

    def _cancel(self) -> dict:
        # 只有首付、没有 Square 订阅对象时只取消本地订阅
        subscription_id = self.get_subscription_id()
        if subscription_id:
            result = self.client.cancel_subscription(subscription_id)
            if not result.success:
                logger.error("Square 取消订阅失败: order_id=%d, %s", self.order.id, result.error)
        self.order.set_details("square.canceled_at", utc_now())
        return self._finish(OrderStatus.SUB_CANCELED, events.ORDER_CUSTOMER_CANCELED)

    def _pause(self) -> dict:
        self.order.set_details("square.paused_at", utc_now())
        return self._subscription_call(
            self.client.pause_subscription, OrderStatus.SUB_PAUSED, "Failed to pause subscription",
        )

    def _resume(self) -> dict:
        self.order.set_details("square.resumed_at", utc_now())
        return self._subscription_call(
            self.client.resume_subscription, OrderStatus.SUB_ACTIVE, "Failed to resume subscription",
        )
