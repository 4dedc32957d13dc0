"""Square webhook：支付 / 退款 / 订单 / 订阅 / 发票事件。"""

import logging

from app.models.schemas import Order
from app.services.payment_methods.base import utc_now
from app.services.platform_config import get_public_base_url, load_square_settings
from app.services.square_client import SquareClient
from app.services.webhook_signature import verify_square_signature
from app.services.webhooks.base import WebhookProcessor

logger = logging.getLogger(__name__)


class SquareWebhookProcessor(WebhookProcessor):
    provider = "square"

    def load_settings(self):
        return load_square_settings()

    def create_client(self):
        return SquareClient(self.settings)

    def notification_url(self) -> str:
        """签名串使用的通知地址，须与 Square 后台登记的一致。"""
        return self.settings.webhook_url or f"{get_public_base_url()}/v1/webhooks/square"

    def verify(self, headers, body: bytes, query: dict) -> bool:
        return verify_square_signature(
            body,
            headers.get("x-square-hmacsha256-signature"),
            self.settings.webhook_signature_key,
            self.notification_url(),
        )

    def handlers(self) -> dict:
        return {
            "payment.created": self.payment_changed,
            "payment.updated": self.payment_changed,
            "payment.completed": self.payment_changed,
            "refund.created": self.refund_changed,
            "refund.updated": self.refund_changed,
            "order.updated": self.order_updated,
            "subscription.created": self.subscription_changed,
            "subscription.updated": self.subscription_changed,
            "invoice.payment_made": self.invoice_payment_made,
            "invoice.scheduled_charge_failed": self.invoice_charge_failed,
            "invoice.canceled": self.invoice_canceled,
        }

    @staticmethod
    def data_object(event: dict) -> dict:
        return ((event.get("data") or {}).get("object")) or {}

    # ── 订单查找 ──────────────────────────────────────────

    def find_payment_order(self, payment: dict) -> Order | None:
        return (
            self.find_order("square.payment_id", payment.get("id"))
            or self.find_order("square.order_id", payment.get("order_id"))
            or self.find_order_by_pattern(payment.get("note"))
        )

    # ── 支付 / 退款 ───────────────────────────────────────

    def payment_changed(self, event: dict) -> None:
        payment = self.data_object(event).get("payment") or {}
        if not payment.get("id"):
            return
        method = self.method_for(self.find_payment_order(payment))
        if method is None:
            return
        if method.is_subscription:
            method.handle_initial_payment_completed(payment)
        else:
            method.handle_order_completed(payment)

    def refund_changed(self, event: dict) -> None:
        refund = self.data_object(event).get("refund") or {}
        method = self.method_for(self.find_order("square.payment_id", refund.get("payment_id")))
        if method is None or method.is_subscription:
            return
        method.handle_refund(refund)

    def order_updated(self, event: dict) -> None:
        """Square 订单完成后主动同步支付状态。"""
        updated = self.data_object(event).get("order_updated") or {}
        if updated.get("state") != "COMPLETED":
            return
        method = self.method_for(self.find_order("square.order_id", updated.get("order_id")))
        if method is None:
            return
        method.sync()

    # ── 订阅 / 发票 ───────────────────────────────────────

    def subscription_changed(self, event: dict) -> None:
        subscription = self.data_object(event).get("subscription") or {}
        method = self.method_for(self.find_order("square.subscription_id", subscription.get("id")))
        if method is None or not method.is_subscription:
            return
        method.subscription_updated(subscription)

    def _invoice_method(self, event: dict):
        invoice = self.data_object(event).get("invoice") or {}
        method = self.method_for(self.find_order("square.subscription_id", invoice.get("subscription_id")))
        if method is None or not method.is_subscription:
            return None, invoice
        return method, invoice

    def invoice_payment_made(self, event: dict) -> None:
        method, invoice = self._invoice_method(event)
        if method is None:
            return
        method.order.set_details("square.last_invoice_id", invoice.get("id"))
        method.order.set_details("square.last_payment_at", utc_now())
        method.save()

    def invoice_charge_failed(self, event: dict) -> None:
        method, invoice = self._invoice_method(event)
        if method is None:
            return
        logger.warning("Square 订阅扣款失败: order_id=%d, invoice=%s", method.order.id, invoice.get("id"))
        method.order.set_details("square.payment_failed_at", utc_now())
        method.save()

    def invoice_canceled(self, event: dict) -> None:
        method, invoice = self._invoice_method(event)
        if method is None:
            return
        method.order.set_details("square.canceled_invoice_id", invoice.get("id"))
        method.save()
