"""
线下支付（货到付款、银行转账等）：不调用任何渠道，由商家手动确认收款。
"""

import calendar
import logging
import time
from datetime import datetime, timedelta, timezone

from app.models.schemas import OrderStatus
from app.services import events
from app.services.payment_methods.base import OrderAction, PaymentMethod, SubscriptionMethod, utc_now
from app.services.platform_config import load_offline_settings

logger = logging.getLogger(__name__)


def add_interval(start: datetime, unit: str, frequency: int) -> datetime:
    """按订阅周期推算下次付款时间，月末日期按目标月天数截断。"""
    frequency = max(int(frequency or 1), 1)
    if unit == "day":
        return start + timedelta(days=frequency)
    if unit == "week":
        return start + timedelta(weeks=frequency)
    months = frequency * 12 if unit == "year" else frequency if unit == "month" else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class OfflineMixin:
    provider = "offline"

    def load_settings(self):
        return load_offline_settings()

    def initial_status(self) -> OrderStatus:
        if self.settings.order_status == OrderStatus.PENDING_APPROVAL.value:
            return OrderStatus.PENDING_APPROVAL
        return OrderStatus.PENDING_PAYMENT

    def get_notes_to_customer(self) -> str | None:
        instructions = self.settings.instructions
        return instructions.strip() if isinstance(instructions, str) and instructions.strip() else None

    def should_sync(self) -> bool:
        return False

    def _is_unpaid(self) -> bool:
        return self.order.status in (OrderStatus.PENDING_PAYMENT.value, OrderStatus.PENDING_APPROVAL.value)


class OfflinePayment(OfflineMixin, PaymentMethod):
    key = "offline_payment"
    label = "Offline payment"

    def _process_payment(self) -> dict:
        self.order.set_details("offline.payment_method", "offline")
        self.order.set_details("offline.created_at", utc_now())
        self.order.set_details("pricing.total", str(self.get_total()))
        self.order.set_transaction_id(f"offline_{self.order.id}_{int(time.time())}")
        self.order.set_status(self.initial_status())
        notes = self.get_notes_to_customer()
        if notes:
            self.order.set_details("offline.instructions", notes)
        self.save()
        logger.info("线下支付订单已创建: order_id=%d, status=%s", self.order.id, self.order.status)
        return {"success": True, "redirect_url": self.order_page_url()}

    def get_vendor_actions(self) -> list[OrderAction]:
        if not self._is_unpaid():
            return []
        return [
            OrderAction("vendor.mark_paid", "Mark as Paid", self._mark_paid, "primary"),
            OrderAction("vendor.cancel", "Cancel Order", self._vendor_cancel),
        ]

    def get_customer_actions(self) -> list[OrderAction]:
        if not self._is_unpaid():
            return []
        return [OrderAction("customer.cancel", "Cancel order", self._customer_cancel)]

    def _mark_paid(self) -> dict:
        self.order.set_details("offline.paid_at", utc_now())
        return self._mark_completed_by_vendor()

    def _vendor_cancel(self) -> dict:
        self.order.set_details("offline.canceled_at", utc_now())
        self.order.set_details("offline.canceled_by", "vendor")
        return self._finish(OrderStatus.CANCELED, events.ORDER_VENDOR_DECLINED)

    def _customer_cancel(self) -> dict:
        self.order.set_details("offline.canceled_at", utc_now())
        self.order.set_details("offline.canceled_by", "customer")
        return self._finish(OrderStatus.CANCELED, events.ORDER_CUSTOMER_CANCELED)


class OfflineSubscription(OfflineMixin, SubscriptionMethod):
    """
    线下订阅：商家确认首付后激活，并按周期记录续费。

    付款记录保存在 offline.payment_history，下次付款时间为 UTC 时间戳。
    """

    key = "offline_subscription"
    label = "Offline subscription"
    subscription_ref_key = "offline.subscription_id"

    STATUS_MAP = {
        "active": OrderStatus.SUB_ACTIVE,
        "canceled": OrderStatus.SUB_CANCELED,
    }

    def _process_payment(self) -> dict:
        if not self.get_line_items():
            raise ValueError("订单没有订单项")

        unit, frequency = self.get_interval()
        subscription_id = f"offline_sub_{self.order.id}_{int(time.time())}"
        self.order.set_details("offline.subscription_id", subscription_id)
        self.order.set_details("offline.is_subscription", True)
        self.order.set_details("offline.subscription_status", "pending")
        self.order.set_details("offline.created_at", utc_now())
        self.order.set_details("offline.billing_interval", {"unit": unit, "frequency": frequency})
        self.order.set_details("offline.payment_history", [])
        self.order.set_details("pricing.total", str(self.get_total()))
        self.order.set_transaction_id(subscription_id)
        self.order.set_status(self.initial_status())
        notes = self.get_notes_to_customer()
        if notes:
            self.order.set_details("offline.instructions", notes)
        self.save()
        return {"success": True, "redirect_url": self.order_page_url()}

    def get_billing_interval(self) -> tuple[str, int]:
        interval = self.order.get_details("offline.billing_interval")
        if interval:
            return interval.get("unit") or "month", int(interval.get("frequency") or 1)
        return self.get_interval()

    def next_payment_date(self, now: datetime | None = None) -> int:
        unit, frequency = self.get_billing_interval()
        now = now or datetime.now(timezone.utc)
        return int(add_interval(now, unit, frequency).timestamp())

    def subscription_updated(self, subscription: dict) -> None:
        status = subscription.get("status") or "active"
        self.order.set_details("offline.subscription_status", status)
        if subscription.get("next_payment_date"):
            self.order.set_details("offline.next_payment_date", subscription["next_payment_date"])
        self.apply_subscription_status(status)
        self.order.set_details("offline.last_updated_at", utc_now())
        self.save()

    def _record_payment(self, note: str, kind: str) -> None:
        history = list(self.order.get_details("offline.payment_history") or [])
        history.append({
            "date": utc_now(),
            "amount": self.order.get_details("pricing.total") or "0",
            "note": note,
            "type": kind,
        })
        self.order.set_details("offline.payment_history", history)
        self.order.set_details("offline.last_payment_date", int(time.time()))
        self.order.set_details("offline.next_payment_date", self.next_payment_date())

    # ── 订单操作 ──────────────────────────────────────────

    def get_vendor_actions(self) -> list[OrderAction]:
        if self._is_unpaid():
            return [
                OrderAction("vendor.mark_paid", "Mark as Paid", self._activate, "primary"),
                OrderAction("vendor.cancel", "Cancel Order", self._vendor_cancel),
            ]
        if self.order.status == OrderStatus.SUB_ACTIVE.value:
            return [
                OrderAction("vendor.mark_renewal_paid", "Record Renewal Payment", self._renew, "primary"),
                OrderAction("vendor.cancel_subscription", "Cancel Subscription", self._cancel_subscription),
            ]
        return []

    def get_customer_actions(self) -> list[OrderAction]:
        if self._is_unpaid():
            return [OrderAction("customer.cancel", "Cancel order", self._customer_cancel)]
        return []

    def _activate(self) -> dict:
        self._record_payment("Initial subscription payment", "initial")
        self.order.set_details("offline.subscription_status", "active")
        self.order.set_details("offline.paid_at", utc_now())
        return self._finish(OrderStatus.SUB_ACTIVE, events.ORDER_VENDOR_APPROVED)

    def _renew(self) -> dict:
        self._record_payment("Renewal payment", "renewal")
        self.order.set_details("offline.last_updated_at", utc_now())
        self.save()
        return {"success": True, "message": "Renewal payment recorded"}

    def _cancel_subscription(self) -> dict:
        self.order.set_details("offline.subscription_status", "canceled")
        self.order.set_details("offline.canceled_at", utc_now())
        return self._finish(OrderStatus.SUB_CANCELED)

    def _vendor_cancel(self) -> dict:
        self.order.set_details("offline.subscription_status", "canceled")
        self.order.set_details("offline.canceled_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_VENDOR_DECLINED)

    def _customer_cancel(self) -> dict:
        self.order.set_details("offline.subscription_status", "canceled")
        self.order.set_details("offline.canceled_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_CUSTOMER_CANCELED)
