"""
Paystack 支付方式：标准结账（一次性）与计划订阅。

金额以 kobo（最小货币单位）提交；市场订单在收款时通过
subaccount + transaction_charge + bearer 直接分账。
"""

import json
import logging
import re

from app.models.schemas import OrderStatus
from app.services import events
from app.services.marketplace import calculate_order_split, is_marketplace_order
from app.services.payment_methods.base import OrderAction, PaymentMethod, SubscriptionMethod, utc_now
from app.services.paystack_client import PaystackClient, generate_reference, map_interval
from app.services.paystack_connect import PaystackConnect
from app.services.platform_config import get_json_config, load_paystack_settings, set_json_config

logger = logging.getLogger(__name__)

PLAN_CACHE_KEY = "paystack_plan_codes"

TRANSACTION_STATUS = {
    "success": OrderStatus.COMPLETED,
    "abandoned": OrderStatus.CANCELED,
    "failed": OrderStatus.CANCELED,
    "reversed": OrderStatus.REFUNDED,
}


def _slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


class PaystackMixin:
    provider = "paystack"

    def load_settings(self):
        return load_paystack_settings()

    def create_client(self):
        return PaystackClient(self.settings)

    def get_currency(self) -> str:
        return (self.settings.currency or "NGN").upper()

    def require_email(self) -> str:
        email = self.get_customer_email()
        if not email:
            raise ValueError("Paystack 支付需要买家邮箱")
        return email

    def order_metadata(self, **extra) -> dict:
        return {
            "order_id": self.order.id,
            "custom_fields": [{
                "display_name": "Order ID",
                "variable_name": "order_id",
                "value": str(self.order.id),
            }],
            **extra,
        }

    def owns_transaction(self, transaction: dict) -> bool:
        """交易 reference 与订单保存的一致，或 metadata.order_id 指向本订单。"""
        stored = self.order.get_details("paystack.reference")
        if stored and transaction.get("reference") == stored:
            return True
        metadata = transaction.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = None
        if not isinstance(metadata, dict):
            return False
        return str(metadata.get("order_id")) == str(self.order.id)

    def verify_returned_transaction(self, params: dict) -> tuple[dict | None, str | None]:
        """
        回跳核验：优先使用订单保存的 reference。

        Returns:
            (交易, None) 或 (None, 失败跳转地址)。
        """
        reference = self.order.get_details("paystack.reference") or params.get("reference") or params.get("trxref")
        if not reference:
            return None, self.failure_url()
        result = self.client.verify_transaction(reference)
        if not result.success or not result.data:
            logger.error("Paystack 交易校验失败: order_id=%d, %s", self.order.id, result.error)
            return None, self.failure_url()
        if not self.owns_transaction(result.data):
            return None, self.reject_foreign_payment("reference", reference)
        return result.data, None

    def store_transaction(self, transaction: dict) -> None:
        """保存 verify / charge.success 返回的交易信息。"""
        self.order.set_details("paystack.transaction", transaction)
        self.order.set_details("paystack.status", transaction.get("status") or "unknown")
        if transaction.get("id"):
            self.store_transaction_id(transaction["id"])
            self.order.set_details("paystack.transaction_id", transaction["id"])
        if transaction.get("reference"):
            self.order.set_details("paystack.reference", transaction["reference"])
        if transaction.get("authorization"):
            self.order.set_details("paystack.authorization", transaction["authorization"])
        if transaction.get("customer"):
            self.order.set_details("paystack.customer", transaction["customer"])
            self.order.set_details("paystack.customer_code", transaction["customer"].get("customer_code"))


class PaystackPayment(PaystackMixin, PaymentMethod):
    key = "paystack_payment"
    label = "Paystack payment"

    def _process_payment(self) -> dict:
        if not self.get_line_items():
            raise ValueError("订单没有订单项")

        subaccount_code = None
        if is_marketplace_order(self.order, self.settings.marketplace, "paystack"):
            vendor_id = int(self.order.get_vendor_id())
            subaccount_code = PaystackConnect(self.settings, self.client).get_subaccount_code(vendor_id)

        data = self.build_transaction_data(subaccount_code)
        transaction = self.client.initialize_transaction(data).raise_for_error().data or {}
        if not transaction.get("authorization_url"):
            raise ValueError("Paystack 未返回支付地址")

        self.order.set_details("paystack.reference", transaction.get("reference") or data["reference"])
        self.order.set_details("paystack.access_code", transaction.get("access_code"))
        self.order.set_details("paystack.status", "PENDING")
        self.order.set_details("paystack.capture_method", self.get_capture_method())
        self.order.set_details("pricing.total", str(self.get_total()))
        if subaccount_code:
            split = calculate_order_split(self.order, self.settings.marketplace)
            self.order.set_details("paystack.is_marketplace", True)
            self.order.set_details("paystack.vendor_id", int(self.order.get_vendor_id()))
            self.order.set_details("paystack.subaccount_code", subaccount_code)
            self.order.set_details("marketplace.platform_fee", str(split.platform_fee))
            self.order.set_details("marketplace.vendor_earnings", str(split.vendor_earnings))
        self.save()
        return {"success": True, "redirect_url": transaction["authorization_url"]}

    def build_transaction_data(self, subaccount_code: str | None = None) -> dict:
        data = {
            "email": self.require_email(),
            "amount": PaystackClient.to_paystack_amount(self.get_total()),
            "currency": self.get_currency(),
            "reference": generate_reference(f"vxl_{self.order.id}"),
            "callback_url": self.return_url("callback"),
            "metadata": self.order_metadata(cart=[
                {
                    "name": item.label,
                    "quantity": int(item.quantity),
                    "amount": PaystackClient.to_paystack_amount(item.amount),
                }
                for item in self.get_line_items()
            ]),
        }
        if self.settings.channels:
            data["channels"] = list(self.settings.channels)
        if subaccount_code:
            split = calculate_order_split(self.order, self.settings.marketplace)
            data["subaccount"] = subaccount_code
            fee = PaystackClient.to_paystack_amount(split.platform_fee)
            if fee > 0:
                data["transaction_charge"] = fee
            data["bearer"] = self.settings.marketplace.fee_bearer or "account"
        return data

    # ── 完成处理 ──────────────────────────────────────────

    def handle_payment_completed(self, transaction: dict) -> None:
        self.store_transaction(transaction)
        if transaction.get("amount"):
            self.order.set_details("pricing.total", str(PaystackClient.from_paystack_amount(transaction["amount"])))

        status = TRANSACTION_STATUS.get(transaction.get("status") or "", OrderStatus.PENDING_PAYMENT)
        capture_method = self.order.get_details("paystack.capture_method") or self.get_capture_method()
        if status == OrderStatus.COMPLETED and capture_method == "manual":
            status = OrderStatus.PENDING_APPROVAL
        self.order.set_status(status)

        self.mark_synced()
        self.save()
        if self.order.status == OrderStatus.COMPLETED.value:
            self.after_completed()

    def handle_refunded(self, refund: dict) -> None:
        self.order.set_details("paystack.refund", refund)
        self.order.set_status(OrderStatus.REFUNDED)
        self.save()

    def handle_return(self, kind: str, params: dict) -> str:
        transaction, failure = self.verify_returned_transaction(params)
        if transaction is None:
            return failure
        self.handle_payment_completed(transaction)
        if self.order.status == OrderStatus.CANCELED.value:
            return self.failure_url()
        return self.order_page_url()

    def sync(self) -> None:
        reference = self.order.get_details("paystack.reference")
        if not reference:
            return
        result = self.client.verify_transaction(reference)
        if result.success and result.data:
            self.handle_payment_completed(result.data)

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
        self.order.set_details("paystack.approved_at", utc_now())
        return self._mark_completed_by_vendor()

    def _refund(self) -> None:
        reference = self.order.get_details("paystack.reference")
        if not reference:
            return
        result = self.client.create_refund(reference)
        if result.success:
            self.order.set_details("paystack.refund_id", (result.data or {}).get("id"))
        else:
            logger.error("Paystack 退款失败: order_id=%d, %s", self.order.id, result.error)

    def _decline(self) -> dict:
        self._refund()
        self.order.set_details("paystack.declined_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_VENDOR_DECLINED)

    def _customer_cancel(self) -> dict:
        self._refund()
        self.order.set_details("paystack.canceled_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_CUSTOMER_CANCELED)


class PaystackSubscription(PaystackMixin, SubscriptionMethod):
    key = "paystack_subscription"
    label = "Paystack subscription"
    subscription_ref_key = "paystack.subscription_code"

    STATUS_MAP = {
        "active": OrderStatus.SUB_ACTIVE,
        "non-renewing": OrderStatus.SUB_ACTIVE,
        "attention": OrderStatus.SUB_PAUSED,
        "cancelled": OrderStatus.SUB_CANCELED,
        "complete": OrderStatus.SUB_CANCELED,
        "completed": OrderStatus.SUB_CANCELED,
        "disabled": OrderStatus.SUB_CANCELED,
    }

    def _process_payment(self) -> dict:
        item = self.get_subscription_item()
        if not item:
            raise ValueError("订单没有订阅项")

        plan_code = self.get_or_create_plan()
        data = {
            "email": self.require_email(),
            "amount": PaystackClient.to_paystack_amount(item.amount),
            "currency": self.get_currency(),
            "reference": generate_reference(f"vxl_sub_{self.order.id}"),
            "plan": plan_code,
            "callback_url": self.return_url("subscription"),
            "metadata": self.order_metadata(subscription=True),
        }
        if self.settings.channels:
            data["channels"] = list(self.settings.channels)

        transaction = self.client.initialize_transaction(data).raise_for_error().data or {}
        if not transaction.get("authorization_url"):
            raise ValueError("Paystack 未返回支付地址")

        self.order.set_details("paystack.reference", transaction.get("reference") or data["reference"])
        self.order.set_details("paystack.access_code", transaction.get("access_code"))
        self.order.set_details("paystack.plan_code", plan_code)
        self.order.set_details("paystack.status", "PENDING")
        self.order.set_details("pricing.total", str(item.total))
        self.save()
        return {"success": True, "redirect_url": transaction["authorization_url"]}

    def get_or_create_plan(self) -> str:
        """
        按 (商品名, 金额, 周期) 复用 Paystack 计划，计划代码缓存在 system_config。

        缓存的计划在 Paystack 上已不存在时重新创建。
        """
        item = self.get_subscription_item()
        unit, frequency = self.get_interval()
        interval = map_interval(unit, frequency)
        if not interval:
            raise ValueError(f"不支持的订阅周期: {unit}")

        amount = PaystackClient.to_paystack_amount(item.amount)
        plan_key = _slugify(f"{item.label}-{amount}-{interval}")
        cached = get_json_config(PLAN_CACHE_KEY, {}) or {}

        if cached.get(plan_key):
            if self.client.get_plan(cached[plan_key]).success:
                return cached[plan_key]
            cached.pop(plan_key)
            set_json_config(PLAN_CACHE_KEY, cached)

        result = self.client.create_plan(item.label[:100], item.amount, interval, self.get_currency())
        plan_code = (result.raise_for_error().data or {}).get("plan_code")
        if not plan_code:
            raise ValueError("Paystack 未返回计划代码")
        cached[plan_key] = plan_code
        set_json_config(PLAN_CACHE_KEY, cached)
        logger.info("Paystack 计划已创建: %s -> %s", plan_key, plan_code)
        return plan_code

    # ── 完成处理 ──────────────────────────────────────────

    def handle_initial_payment_completed(self, transaction: dict) -> None:
        self.order.set_details("paystack.initial_payment", transaction)
        self.store_transaction(transaction)
        subscription_code = (transaction.get("authorization") or {}).get("subscription_code")
        if subscription_code:
            self.order.set_details("paystack.subscription_code", subscription_code)

        status = transaction.get("status")
        if status == "success":
            self.order.set_status(OrderStatus.SUB_ACTIVE)
            self.order.set_details("paystack.subscription_status", "active")
        elif status in ("abandoned", "failed"):
            self.order.set_status(OrderStatus.CANCELED)

        self.mark_synced()
        self.save()

    def subscription_updated(self, subscription: dict) -> None:
        """subscription.create / subscription.disable / 查询结果。"""
        self.order.set_details("paystack.subscription", subscription)
        if subscription.get("subscription_code"):
            self.order.set_details("paystack.subscription_code", subscription["subscription_code"])
        if subscription.get("email_token"):
            self.order.set_details("paystack.email_token", subscription["email_token"])
        if subscription.get("next_payment_date"):
            self.order.set_details("paystack.next_payment_date", subscription["next_payment_date"])
        self.order.set_details("paystack.subscription_status", subscription.get("status") or "unknown")
        self.apply_subscription_status(subscription.get("status"))
        self.mark_synced()
        self.save()

    def handle_subscription_payment(self, transaction: dict) -> None:
        """续费成功（charge.success 且带 plan）。"""
        self.order.set_details("paystack.last_payment_id", transaction.get("id"))
        self.order.set_details("paystack.last_payment_status", transaction.get("status") or "unknown")
        self.order.set_details("paystack.last_payment_at", utc_now())
        if transaction.get("status") == "success":
            if self.order.status in (OrderStatus.PENDING_PAYMENT.value, OrderStatus.SUB_PAUSED.value):
                self.order.set_status(OrderStatus.SUB_ACTIVE)
            self.order.set_details("paystack.subscription_status", "active")
        self.save()

    def subscription_payment_failed(self, data: dict) -> None:
        self.order.set_details("paystack.payment_failed", data)
        self.order.set_details("paystack.payment_failed_at", utc_now())
        self.save()

    def handle_return(self, kind: str, params: dict) -> str:
        transaction, failure = self.verify_returned_transaction(params)
        if transaction is None:
            return failure
        self.handle_initial_payment_completed(transaction)
        return self.order_page_url()

    def sync(self) -> None:
        subscription_code = self.get_subscription_id()
        if subscription_code:
            result = self.client.get_subscription(subscription_code)
            if result.success and result.data:
                self.subscription_updated(result.data)
                return
        reference = self.order.get_details("paystack.reference")
        if reference:
            result = self.client.verify_transaction(reference)
            if result.success and result.data:
                self.handle_initial_payment_completed(result.data)

    # ── 订单操作 ──────────────────────────────────────────

    def get_customer_actions(self) -> list[OrderAction]:
        if self.order.status not in (OrderStatus.SUB_ACTIVE.value, OrderStatus.SUB_PAUSED.value):
            return []
        return [OrderAction("customer.cancel_subscription", "Cancel subscription", self._cancel)]

    def get_vendor_actions(self) -> list[OrderAction]:
        if self.order.status not in (OrderStatus.SUB_ACTIVE.value, OrderStatus.SUB_PAUSED.value):
            return []
        return [OrderAction("vendor.cancel_subscription", "Cancel subscription", self._vendor_cancel)]

    def _disable(self, subscription_code: str):
        email_token = self.order.get_details("paystack.email_token")
        if not email_token:
            result = self.client.get_subscription(subscription_code)
            email_token = (result.data or {}).get("email_token") if result.success else None
        return self.client.disable_subscription(subscription_code, email_token or "")

    def _cancel(self) -> dict:
        self.order.set_details("paystack.canceled_at", utc_now())
        self.order.set_details("paystack.subscription_status", "cancelled")
        return self._subscription_call(
            self._disable, OrderStatus.SUB_CANCELED, "Failed to cancel subscription",
            events.ORDER_CUSTOMER_CANCELED,
        )

    def _vendor_cancel(self) -> dict:
        self.order.set_details("paystack.canceled_at", utc_now())
        self.order.set_details("paystack.subscription_status", "cancelled")
        return self._subscription_call(
            self._disable, OrderStatus.SUB_CANCELED, "Failed to cancel subscription",
            events.ORDER_VENDOR_DECLINED,
        )
