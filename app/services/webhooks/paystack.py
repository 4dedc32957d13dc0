"""Paystack webhook：交易 / 订阅 / 发票 / 退款事件。"""

import logging
import re

from app.models.schemas import Order, OrderStatus
from app.services.paystack_client import PaystackClient
from app.services.platform_config import load_paystack_settings
from app.services.webhook_signature import verify_paystack_signature
from app.services.webhooks.base import WebhookProcessor

logger = logging.getLogger(__name__)

# 交易号格式 vxl_{order_id}_{hex}
REFERENCE_PATTERN = re.compile(r"vxl_(\d+)_")


class PaystackWebhookProcessor(WebhookProcessor):
    provider = "paystack"

    def load_settings(self):
        return load_paystack_settings()

    def create_client(self):
        return PaystackClient(self.settings)

    def verify(self, headers, body: bytes, query: dict) -> bool:
        # 未单独配置 webhook 密钥时使用 secret key
        secret = self.settings.webhook_secret or self.settings.secret_key
        return verify_paystack_signature(body, headers.get("x-paystack-signature"), secret)

    def event_type(self, event: dict) -> str:
        return str(event.get("event") or "")

    def handlers(self) -> dict:
        return {
            "charge.success": self.charge_success,
            "charge.failed": self.charge_failed,
            "subscription.create": self.subscription_changed,
            "subscription.disable": self.subscription_changed,
            "subscription.not_renew": self.subscription_changed,
            "invoice.create": self.invoice_changed,
            "invoice.update": self.invoice_changed,
            "invoice.payment_failed": self.invoice_payment_failed,
            "refund.processed": self.refund_processed,
            "refund.failed": self.refund_failed,
            "transfer.success": self.transfer_changed,
            "transfer.failed": self.transfer_changed,
        }

    # ── 订单查找 ──────────────────────────────────────────

    def find_by_reference(self, reference: str | None, metadata: dict | None = None) -> Order | None:
        order = self.find_order("paystack.reference", reference)
        if order:
            return order
        order_id = (metadata or {}).get("order_id")
        if order_id:
            try:
                return self.orders.get_order(int(order_id))
            except (TypeError, ValueError):
                return None
        return self.find_order_by_pattern(reference, REFERENCE_PATTERN)

    def find_subscription_order(self, data: dict) -> Order | None:
        subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else data
        return self.find_order("paystack.subscription_code", subscription.get("subscription_code"))

    # ── 交易 ──────────────────────────────────────────────

    def charge_success(self, event: dict) -> None:
        data = event.get("data") or {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        reference = data.get("reference")

        if self.credit_deposit(metadata.get("deposit_id"), {"reference": reference}):
            return

        order = self.find_by_reference(reference, metadata)
        if order is None and data.get("plan"):
            # 续费扣款的交易号由 Paystack 生成，按订阅查找
            order = self.find_subscription_order(data)
        method = self.method_for(order)
        if method is None:
            return
        if not method.is_subscription:
            method.handle_payment_completed(data)
        elif method.order.get_details("paystack.reference") == reference or method.order.status == OrderStatus.PENDING_PAYMENT.value:
            method.handle_initial_payment_completed(data)
        else:
            method.handle_subscription_payment(data)

    def charge_failed(self, event: dict) -> None:
        data = event.get("data") or {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        method = self.method_for(self.find_by_reference(data.get("reference"), metadata))
        if method is None:
            return
        data = {**data, "status": data.get("status") or "failed"}
        if method.is_subscription:
            method.handle_initial_payment_completed(data)
        else:
            method.handle_payment_completed(data)

    # ── 订阅 ──────────────────────────────────────────────

    def subscription_changed(self, event: dict) -> None:
        data = event.get("data") or {}
        order = self.find_subscription_order(data)
        if order is None and event.get("event") == "subscription.create":
            # 首付成功后 Paystack 才创建订阅，按买家邮箱找尚未关联订阅的订单
            email = (data.get("customer") or {}).get("email")
            order = self.orders.find_recent_for_customer(
                "paystack_subscription", email,
                (OrderStatus.PENDING_PAYMENT.value, OrderStatus.SUB_ACTIVE.value),
                missing_ref="paystack.subscription_code",
            )
        method = self.method_for(order)
        if method is None or not method.is_subscription:
            return
        status = data.get("status")
        if event.get("event") == "subscription.not_renew":
            status = "non-renewing"
        method.subscription_updated({**data, "status": status})

    def invoice_changed(self, event: dict) -> None:
        data = event.get("data") or {}
        method = self.method_for(self.find_subscription_order(data))
        if method is None or not method.is_subscription:
            return
        if data.get("paid") or data.get("status") == "success":
            transaction = dict(data.get("transaction") or {})
            transaction.setdefault("status", "success")
            transaction.setdefault("id", data.get("invoice_code"))
            method.handle_subscription_payment(transaction)
        else:
            method.order.set_details("paystack.next_invoice", {
                "invoice_code": data.get("invoice_code"),
                "amount": data.get("amount"),
                "period_end": data.get("period_end"),
            })
            method.save()

    def invoice_payment_failed(self, event: dict) -> None:
        data = event.get("data") or {}
        method = self.method_for(self.find_subscription_order(data))
        if method is None or not method.is_subscription:
            return
        method.subscription_payment_failed(data)

    # ── 退款 / 转账 ───────────────────────────────────────

    def refund_processed(self, event: dict) -> None:
        data = event.get("data") or {}
        method = self.method_for(self.find_by_reference(data.get("transaction_reference")))
        if method is None or method.is_subscription:
            return
        method.handle_refunded(data)

    def refund_failed(self, event: dict) -> None:
        data = event.get("data") or {}
        method = self.method_for(self.find_by_reference(data.get("transaction_reference")))
        if method is None:
            return
        logger.error("Paystack 退款失败: order_id=%d", method.order.id)
        method.order.set_details("paystack.refund_failed", data)
        method.save()

    def transfer_changed(self, event: dict) -> None:
        data = event.get("data") or {}
        logger.info(
            "Paystack 转账通知: event=%s, reference=%s, status=%s",
            event.get("event"), data.get("reference"), data.get("status"),
        )
