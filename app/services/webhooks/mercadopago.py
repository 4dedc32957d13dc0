"""
Mercado Pago webhook。

通知只带资源 ID（data.id 或 resource URL），处理时重新拉取资源。
事件类型取 type，旧版 IPN 取 topic。
"""

import logging
import re

from app.models.schemas import Order
from app.services.mercadopago_client import MercadoPagoClient
from app.services.platform_config import load_mercadopago_settings
from app.services.webhook_signature import verify_mercadopago_signature
from app.services.webhooks.base import WebhookProcessor

logger = logging.getLogger(__name__)

PAYMENT_RESOURCE = re.compile(r"/payments/(\d+)")
PREAPPROVAL_RESOURCE = re.compile(r"/preapproval/([A-Za-z0-9]+)")
MERCHANT_ORDER_RESOURCE = re.compile(r"/merchant_orders/(\d+)")


class MercadoPagoWebhookProcessor(WebhookProcessor):
    provider = "mercadopago"

    def load_settings(self):
        return load_mercadopago_settings()

    def create_client(self):
        return MercadoPagoClient(self.settings)

    @staticmethod
    def data_id(event: dict | None, query: dict) -> str:
        """通知的资源 ID：优先查询参数 data.id，其次请求体 data.id。"""
        value = query.get("data.id") or query.get("id")
        if not value and event:
            value = (event.get("data") or {}).get("id") or event.get("id")
        return str(value or "")

    def verify(self, headers, body: bytes, query: dict) -> bool:
        # 签名串包含 data.id，需要先读取请求体
        try:
            event = self.parse(body)
        except Exception:
            event = None
        return verify_mercadopago_signature(
            headers.get("x-signature"),
            headers.get("x-request-id"),
            self.data_id(event, query),
            self.settings.webhook_secret,
        )

    def event_type(self, event: dict) -> str:
        return str(event.get("type") or event.get("topic") or "")

    def handlers(self) -> dict:
        return {
            "payment": self.payment_event,
            "subscription_preapproval": self.preapproval_event,
            "preapproval": self.preapproval_event,
            "subscription_authorized_payment": self.authorized_payment_event,
            "merchant_order": self.merchant_order_event,
            "mp-connect": self.connect_event,
        }

    @staticmethod
    def resource_id(event: dict, pattern: re.Pattern) -> str | None:
        data_id = (event.get("data") or {}).get("id")
        if data_id:
            return str(data_id)
        resource = str(event.get("resource") or "")
        match = pattern.search(resource)
        if match:
            return match.group(1)
        return resource if resource.isalnum() else None

    # ── 支付 ──────────────────────────────────────────────

    def payment_event(self, event: dict) -> None:
        payment_id = self.resource_id(event, PAYMENT_RESOURCE)
        if not payment_id:
            return
        result = self.client.get_payment(payment_id)
        if not result.success or not result.data:
            logger.warning("Mercado Pago 支付查询失败: payment_id=%s, %s", payment_id, result.error)
            return
        payment = result.data
        reference = payment.get("external_reference")

        if self.credit_deposit(reference, {"payment_id": payment_id}):
            return

        order = self.find_order_by_pattern(reference) or self.find_order("mercadopago.payment_id", payment_id)
        method = self.method_for(order)
        if method is None:
            return
        if method.is_subscription:
            method.handle_subscription_payment(payment)
        else:
            method.handle_payment_completed(payment)

    # ── 订阅 ──────────────────────────────────────────────

    def find_subscription_order(self, preapproval_id: str | None, reference: str | None = None) -> Order | None:
        return self.find_order_by_pattern(reference) or self.find_order("mercadopago.preapproval_id", preapproval_id)

    def preapproval_event(self, event: dict) -> None:
        preapproval_id = self.resource_id(event, PREAPPROVAL_RESOURCE)
        if not preapproval_id:
            return
        result = self.client.get_preapproval(preapproval_id)
        if not result.success or not result.data:
            logger.warning("Mercado Pago 订阅查询失败: preapproval_id=%s, %s", preapproval_id, result.error)
            return
        preapproval = result.data
        method = self.method_for(self.find_subscription_order(preapproval_id, preapproval.get("external_reference")))
        if method is None or not method.is_subscription:
            return
        method.subscription_updated(preapproval)

    def authorized_payment_event(self, event: dict) -> None:
        authorized_payment_id = (event.get("data") or {}).get("id")
        if not authorized_payment_id:
            return
        result = self.client.get_authorized_payment(authorized_payment_id)
        if not result.success or not result.data:
            logger.warning("Mercado Pago 订阅扣款查询失败: id=%s, %s", authorized_payment_id, result.error)
            return
        authorized = result.data
        method = self.method_for(
            self.find_subscription_order(authorized.get("preapproval_id"), authorized.get("external_reference"))
        )
        if method is None or not method.is_subscription:
            return
        payment = dict(authorized.get("payment") or {})
        payment.setdefault("id", authorized.get("id"))
        payment.setdefault("status", "approved" if authorized.get("status") == "processed" else authorized.get("status"))
        method.handle_subscription_payment(payment)

    # ── 商户订单 ──────────────────────────────────────────

    def merchant_order_event(self, event: dict) -> None:
        """商户订单含已批准的支付时同步对应订单。"""
        merchant_order_id = self.resource_id(event, MERCHANT_ORDER_RESOURCE)
        if not merchant_order_id:
            return
        result = self.client.get_merchant_order(merchant_order_id)
        if not result.success or not result.data:
            return
        merchant_order = result.data
        method = self.method_for(self.find_order_by_pattern(merchant_order.get("external_reference")))
        if method is None or method.is_subscription:
            return
        approved = [p for p in merchant_order.get("payments") or [] if p.get("status") == "approved"]
        if not approved:
            return
        payment_result = self.client.get_payment(approved[0]["id"], auth_token=method.vendor_token())
        if payment_result.success and payment_result.data:
            method.handle_payment_completed(payment_result.data)

    def connect_event(self, event: dict) -> None:
        logger.info("Mercado Pago 授权变更通知: user_id=%s, action=%s", event.get("user_id"), event.get("action"))
