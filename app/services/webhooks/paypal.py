"""PayPal webhook：支付 / 授权 / 订阅 / 商家付款事件。"""

import logging

from app.models.schemas import Order
from app.services.paypal_client import PayPalClient
from app.services.paypal_connect import handle_payout_item_event
from app.services.payment_methods.base import utc_now
from app.services.platform_config import load_paypal_settings
from app.services.webhook_signature import verify_paypal_signature
from app.services.webhooks.base import WebhookProcessor

logger = logging.getLogger(__name__)


def related_order_id(resource: dict) -> str | None:
    """capture / authorization 资源关联的 PayPal 订单号。"""
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return related.get("order_id")


def link_target_id(resource: dict, rel: str = "up") -> str | None:
    """links 中指定 rel 的资源 ID（URL 最后一段）。"""
    href = PayPalClient.find_link(resource.get("links"), rel)
    return href.rstrip("/").rsplit("/", 1)[-1] if href else None


class PayPalWebhookProcessor(WebhookProcessor):
    provider = "paypal"

    def load_settings(self):
        return load_paypal_settings()

    def create_client(self):
        return PayPalClient(self.settings)

    def verify(self, headers, body: bytes, query: dict) -> bool:
        return verify_paypal_signature(headers, body, self.settings.webhook_id)

    def event_type(self, event: dict) -> str:
        return str(event.get("event_type") or "")

    def handlers(self) -> dict:
        return {
            "PAYMENT.CAPTURE.COMPLETED": self.capture_changed,
            "PAYMENT.CAPTURE.PENDING": self.capture_changed,
            "PAYMENT.CAPTURE.DENIED": self.capture_changed,
            "PAYMENT.CAPTURE.DECLINED": self.capture_changed,
            "PAYMENT.CAPTURE.REFUNDED": self.capture_refunded,
            "CHECKOUT.ORDER.APPROVED": self.order_approved,
            "PAYMENT.AUTHORIZATION.CREATED": self.authorization_changed,
            "PAYMENT.AUTHORIZATION.VOIDED": self.authorization_changed,
            "BILLING.SUBSCRIPTION.ACTIVATED": self.subscription_changed,
            "BILLING.SUBSCRIPTION.CANCELLED": self.subscription_changed,
            "BILLING.SUBSCRIPTION.EXPIRED": self.subscription_changed,
            "BILLING.SUBSCRIPTION.SUSPENDED": self.subscription_changed,
            "BILLING.SUBSCRIPTION.UPDATED": self.subscription_changed,
            "BILLING.SUBSCRIPTION.PAYMENT.FAILED": self.subscription_payment_failed,
            "PAYMENT.SALE.COMPLETED": self.sale_completed,
            "PAYMENT.PAYOUTS-ITEM.SUCCEEDED": self.payout_item_changed,
            "PAYMENT.PAYOUTS-ITEM.FAILED": self.payout_item_changed,
            "PAYMENT.PAYOUTS-ITEM.BLOCKED": self.payout_item_changed,
            "PAYMENT.PAYOUTS-ITEM.REFUNDED": self.payout_item_changed,
            "PAYMENT.PAYOUTS-ITEM.RETURNED": self.payout_item_changed,
            "PAYMENT.PAYOUTS-ITEM.CANCELED": self.payout_item_changed,
            "PAYMENT.PAYOUTS-ITEM.UNCLAIMED": self.payout_item_changed,
            "PAYMENT.PAYOUTSBATCH.SUCCESS": self.payout_batch_changed,
            "PAYMENT.PAYOUTSBATCH.DENIED": self.payout_batch_changed,
        }

    # ── 订单查找 ──────────────────────────────────────────

    def find_payment_order(self, resource: dict, ref_key: str) -> Order | None:
        return (
            self.find_order(ref_key, resource.get("id"))
            or self.find_order("paypal.order_id", related_order_id(resource))
            or self.find_order_by_pattern(resource.get("custom_id"))
        )

    def find_subscription_order(self, subscription_id: str | None, custom_id: str | None = None) -> Order | None:
        return self.find_order("paypal.subscription_id", subscription_id) or self.find_order_by_pattern(custom_id)

    def fetch_order(self, resource: dict, fallback: dict) -> dict:
        """重新拉取 PayPal 订单；失败时用通知中的资源组装同结构数据。"""
        paypal_order_id = related_order_id(resource)
        if paypal_order_id:
            result = self.client.get_order(paypal_order_id)
            if result.success and result.data:
                return result.data
            logger.warning("PayPal 订单查询失败，使用通知数据: %s, %s", paypal_order_id, result.error)
        return fallback

    # ── 一次性支付 ────────────────────────────────────────

    def capture_changed(self, event: dict) -> None:
        capture = event.get("resource") or {}
        method = self.method_for(self.find_payment_order(capture, "paypal.capture_id"))
        if method is None or method.is_subscription:
            return
        paypal_order = self.fetch_order(capture, {
            "id": related_order_id(capture),
            "status": capture.get("status"),
            "purchase_units": [{"payments": {"captures": [capture]}}],
        })
        method.handle_order_completed(paypal_order)

    def capture_refunded(self, event: dict) -> None:
        refund = event.get("resource") or {}
        capture_id = link_target_id(refund, "up")
        order = self.find_order("paypal.capture_id", capture_id) or self.find_order_by_pattern(refund.get("custom_id"))
        method = self.method_for(order)
        if method is None or method.is_subscription:
            return
        method.handle_capture_refunded(refund)

    def order_approved(self, event: dict) -> None:
        """买家已批准但未回跳：按订单设置完成 capture / authorize。"""
        resource = event.get("resource") or {}
        units = resource.get("purchase_units") or [{}]
        order = self.find_order("paypal.order_id", resource.get("id")) or self.find_order_by_pattern(
            units[0].get("custom_id")
        )
        method = self.method_for(order)
        if method is None or method.is_subscription:
            return
        method.handle_return("success", {"token": resource.get("id")})

    def authorization_changed(self, event: dict) -> None:
        authorization = event.get("resource") or {}
        method = self.method_for(self.find_payment_order(authorization, "paypal.authorization_id"))
        if method is None or method.is_subscription:
            return
        paypal_order = self.fetch_order(authorization, {
            "id": related_order_id(authorization),
            "status": authorization.get("status"),
            "purchase_units": [{"payments": {"authorizations": [authorization]}}],
        })
        method.handle_order_completed(paypal_order)

    # ── 订阅 ──────────────────────────────────────────────

    def subscription_changed(self, event: dict) -> None:
        subscription = event.get("resource") or {}
        method = self.method_for(self.find_subscription_order(subscription.get("id"), subscription.get("custom_id")))
        if method is None or not method.is_subscription:
            return
        method.subscription_updated(subscription)

    def subscription_payment_failed(self, event: dict) -> None:
        subscription = event.get("resource") or {}
        method = self.method_for(self.find_subscription_order(subscription.get("id"), subscription.get("custom_id")))
        if method is None:
            return
        method.order.set_details("paypal.payment_failed_at", utc_now())
        method.order.set_details("paypal.failed_payments_count", (
            (subscription.get("billing_info") or {}).get("failed_payments_count")
        ))
        method.save()

    def sale_completed(self, event: dict) -> None:
        sale = event.get("resource") or {}
        method = self.method_for(self.find_subscription_order(sale.get("billing_agreement_id"), sale.get("custom")))
        if method is None or not method.is_subscription:
            return
        method.handle_payment_completed(sale)

    # ── 商家付款 ──────────────────────────────────────────

    def payout_item_changed(self, event: dict) -> None:
        resource = event.get("resource") or {}
        payout_item_id = resource.get("payout_item_id")
        status = resource.get("transaction_status") or event.get("event_type", "").rsplit(".", 1)[-1]
        if not payout_item_id:
            return
        if handle_payout_item_event(payout_item_id, status) is None:
            logger.info("PayPal 付款明细无对应子订单: payout_item_id=%s", payout_item_id)

    def payout_batch_changed(self, event: dict) -> None:
        header = (event.get("resource") or {}).get("batch_header") or {}
        logger.info(
            "PayPal 付款批次状态: batch_id=%s, status=%s",
            header.get("payout_batch_id"), header.get("batch_status"),
        )
