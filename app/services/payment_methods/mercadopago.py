"""
Mercado Pago 支付方式：Checkout Pro 偏好（一次性）与 preapproval（订阅）。

市场订单用商家 OAuth 令牌创建偏好，平台费通过 marketplace_fee 在收款时扣除；
商家令牌不可用时退回平台直收。
"""

import logging

from app.models.schemas import OrderStatus
from app.services import events
from app.services.marketplace import calculate_order_split, is_marketplace_order
from app.services.mercadopago_client import MercadoPagoClient
from app.services.mercadopago_connect import MercadoPagoConnect
from app.services.payment_methods.base import OrderAction, PaymentMethod, SubscriptionMethod, utc_now
from app.services.platform_config import load_mercadopago_settings

logger = logging.getLogger(__name__)

ORDER_REF_PREFIX = "voxel_order_"
SUBSCRIPTION_REF_PREFIX = "voxel_subscription_"

PAYMENT_STATUS = {
    "approved": OrderStatus.COMPLETED,
    "authorized": OrderStatus.PENDING_APPROVAL,
    "pending": OrderStatus.PENDING_PAYMENT,
    "in_process": OrderStatus.PENDING_PAYMENT,
    "in_mediation": OrderStatus.PENDING_PAYMENT,
    "rejected": OrderStatus.CANCELED,
    "cancelled": OrderStatus.CANCELED,
    "refunded": OrderStatus.REFUNDED,
    "charged_back": OrderStatus.REFUNDED,
}


def preapproval_frequency(unit: str, count: int) -> tuple[int, str]:
    """订阅周期 → (frequency, frequency_type)，周换算为天，年换算为月。"""
    count = max(int(count or 1), 1)
    if unit == "day":
        return count, "days"
    if unit == "week":
        return count * 7, "days"
    if unit == "year":
        return count * 12, "months"
    return count, "months"


class MercadoPagoMixin:
    provider = "mercadopago"

    def load_settings(self):
        return load_mercadopago_settings()

    def create_client(self):
        return MercadoPagoClient(self.settings)

    def vendor_token(self) -> str | None:
        """市场订单使用商家令牌访问支付数据。"""
        vendor_id = self.order.get_details("mercadopago.vendor_id")
        if not self.order.get_details("mercadopago.is_marketplace") or not vendor_id:
            return None
        return MercadoPagoConnect(self.settings, self.client).get_vendor_access_token(int(vendor_id))

    def checkout_url(self, data: dict) -> str | None:
        if self.settings.mode == "sandbox":
            return data.get("sandbox_init_point") or data.get("init_point")
        return data.get("init_point")


class MercadoPagoPayment(MercadoPagoMixin, PaymentMethod):
    key = "mercadopago_payment"
    label = "Mercado Pago payment"

    def _process_payment(self) -> dict:
        if not self.get_line_items():
            raise ValueError("订单没有订单项")

        vendor_id = None
        vendor_token = None
        if is_marketplace_order(self.order, self.settings.marketplace, "mercadopago"):
            vendor_id = int(self.order.get_vendor_id())
            vendor_token = MercadoPagoConnect(self.settings, self.client).get_vendor_access_token(vendor_id)
            if not vendor_token:
                logger.warning("商家令牌不可用，改为平台直收: order_id=%d, vendor_id=%d", self.order.id, vendor_id)
                vendor_id = None

        preference = self.build_preference_data(vendor_id is not None)
        result = self.client.create_preference(preference, auth_token=vendor_token).raise_for_error()
        data = result.data or {}
        if not data.get("id"):
            raise ValueError("Mercado Pago 未返回偏好 ID")

        self.order.set_details("mercadopago.preference_id", data["id"])
        self.order.set_details("mercadopago.status", "PENDING")
        self.order.set_details("mercadopago.capture_method", self.get_capture_method())
        self.order.set_details("pricing.total", str(self.get_total()))
        if vendor_id is not None:
            split = calculate_order_split(self.order, self.settings.marketplace)
            self.order.set_details("mercadopago.is_marketplace", True)
            self.order.set_details("mercadopago.vendor_id", vendor_id)
            self.order.set_details("marketplace.platform_fee", str(split.platform_fee))
            self.order.set_details("marketplace.vendor_earnings", str(split.vendor_earnings))
        self.save()

        url = self.checkout_url(data)
        if not url:
            raise ValueError("Mercado Pago 未返回支付地址")
        return {"success": True, "redirect_url": url}

    def build_preference_data(self, is_marketplace: bool = False) -> dict:
        currency = self.order.currency
        items = []
        for index, item in enumerate(self.get_line_items()):
            items.append({
                "id": f"{self.order.id}_{index}",
                "title": item.label[:256],
                "description": (item.description or "")[:256],
                "quantity": int(item.quantity),
                "currency_id": currency,
                "unit_price": MercadoPagoClient.to_mercadopago_amount(item.amount),
            })

        data = {
            "items": items,
            "back_urls": {
                "success": self.return_url("success"),
                "failure": self.return_url("failure"),
                "pending": self.return_url("pending"),
            },
            "auto_return": "approved",
            "external_reference": f"{ORDER_REF_PREFIX}{self.order.id}",
            "notification_url": self.webhook_url(),
            "statement_descriptor": (self.settings.brand_name or "PayBridge")[:22],
            "payment_methods": {
                "excluded_payment_types": [],
                "excluded_payment_methods": [],
                "installments": 12,
            },
            "binary_mode": False,
        }
        if is_marketplace:
            split = calculate_order_split(self.order, self.settings.marketplace)
            if split.platform_fee > 0:
                data["marketplace_fee"] = MercadoPagoClient.to_mercadopago_amount(split.platform_fee)
        return data

    # ── 完成处理 ──────────────────────────────────────────

    def handle_payment_completed(self, payment: dict) -> None:
        self.order.set_details("mercadopago.payment", payment)
        self.order.set_details("mercadopago.status", payment.get("status") or "unknown")
        if payment.get("id"):
            self.store_transaction_id(payment["id"])
            self.order.set_details("mercadopago.payment_id", str(payment["id"]))
        if payment.get("transaction_amount"):
            amount = MercadoPagoClient.from_mercadopago_amount(payment["transaction_amount"])
            self.order.set_details("pricing.total", str(amount))

        status = PAYMENT_STATUS.get(payment.get("status") or "", OrderStatus.PENDING_PAYMENT)
        capture_method = self.order.get_details("mercadopago.capture_method") or self.get_capture_method()
        if status == OrderStatus.COMPLETED and capture_method == "manual":
            status = OrderStatus.PENDING_APPROVAL
        self.order.set_status(status)

        self.mark_synced()
        self.save()
        if self.order.status == OrderStatus.COMPLETED.value:
            self.after_completed()

    def handle_return(self, kind: str, params: dict) -> str:
        payment_id = params.get("payment_id") or params.get("collection_id")
        if not payment_id:
            if kind == "failure":
                self._cancel_unpaid()
                return self.failure_url()
            return self.order_page_url()

        result = self.client.get_payment(payment_id, auth_token=self.vendor_token())
        if not result.success or not result.data:
            logger.error("Mercado Pago 支付查询失败: order_id=%d, %s", self.order.id, result.error)
            return self.failure_url()
        if result.data.get("external_reference") != f"{ORDER_REF_PREFIX}{self.order.id}":
            return self.reject_foreign_payment("payment_id", payment_id)
        self.handle_payment_completed(result.data)
        if kind == "failure":
            return self.failure_url()
        return self.order_page_url()

    def sync(self) -> None:
        payment_id = self.order.get_details("mercadopago.payment_id")
        if not payment_id:
            return
        result = self.client.get_payment(payment_id, auth_token=self.vendor_token())
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
        self.order.set_details("mercadopago.approved_at", utc_now())
        return self._mark_completed_by_vendor()

    def _refund(self) -> None:
        payment_id = self.order.get_details("mercadopago.payment_id")
        if not payment_id:
            return
        result = self.client.refund_payment(payment_id, auth_token=self.vendor_token())
        if result.success:
            self.order.set_details("mercadopago.refund_id", (result.data or {}).get("id"))
        else:
            logger.error("Mercado Pago 退款失败: order_id=%d, %s", self.order.id, result.error)

    def _decline(self) -> dict:
        self._refund()
        self.order.set_details("mercadopago.declined_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_VENDOR_DECLINED)

    def _customer_cancel(self) -> dict:
        self._refund()
        self.order.set_details("mercadopago.canceled_at", utc_now())
        return self._finish(OrderStatus.CANCELED, events.ORDER_CUSTOMER_CANCELED)


class MercadoPagoSubscription(MercadoPagoMixin, SubscriptionMethod):
    key = "mercadopago_subscription"
    label = "Mercado Pago subscription"
    subscription_ref_key = "mercadopago.preapproval_id"

    STATUS_MAP = {
        "authorized": OrderStatus.SUB_ACTIVE,
        "active": OrderStatus.SUB_ACTIVE,
        "paused": OrderStatus.SUB_PAUSED,
        "cancelled": OrderStatus.SUB_CANCELED,
        "pending": OrderStatus.PENDING_PAYMENT,
    }

    def _process_payment(self) -> dict:
        item = self.get_subscription_item()
        if not item:
            raise ValueError("订单没有订阅项")

        result = self.client.create_preapproval(self.build_preapproval_data()).raise_for_error()
        data = result.data or {}
        if not data.get("id"):
            raise ValueError("Mercado Pago 未返回订阅 ID")

        self.order.set_details("mercadopago.preapproval_id", data["id"])
        self.order.set_details("mercadopago.subscription_status", data.get("status") or "pending")
        self.order.set_details("pricing.total", str(item.total))
        self.save()

        url = data.get("init_point") or data.get("sandbox_init_point")
        if not url:
            raise ValueError("Mercado Pago 未返回订阅地址")
        return {"success": True, "redirect_url": url}

    def build_preapproval_data(self) -> dict:
        item = self.get_subscription_item()
        unit, count = self.get_interval()
        frequency, frequency_type = preapproval_frequency(unit, count)
        brand = self.settings.brand_name or "PayBridge"
        return {
            "reason": f"{item.label} - {brand}"[:256],
            "external_reference": f"{SUBSCRIPTION_REF_PREFIX}{self.order.id}",
            "payer_email": self.get_customer_email() or "",
            "auto_recurring": {
                "frequency": frequency,
                "frequency_type": frequency_type,
                "transaction_amount": MercadoPagoClient.to_mercadopago_amount(item.amount),
                "currency_id": self.order.currency,
            },
            "back_url": self.return_url("subscription"),
            "notification_url": self.webhook_url(),
        }

    # ── 完成处理 ──────────────────────────────────────────

    def subscription_updated(self, preapproval: dict) -> None:
        self.order.set_details("mercadopago.preapproval", preapproval)
        self.order.set_details("mercadopago.subscription_status", preapproval.get("status") or "unknown")
        if preapproval.get("id") and not self.order.get_details("mercadopago.preapproval_id"):
            self.order.set_details("mercadopago.preapproval_id", preapproval["id"])
        self.store_transaction_id(preapproval.get("id"))
        if preapproval.get("status") == "paused":
            self.order.set_details("mercadopago.paused_at", utc_now())
        self.apply_subscription_status(preapproval.get("status"))
        self.mark_synced()
        self.save()

    def handle_subscription_payment(self, payment: dict) -> None:
        """订阅扣款通知：记录最近一次扣款，首次扣款成功时激活订阅。"""
        status = payment.get("status") or "unknown"
        self.order.set_details("mercadopago.last_payment_id", payment.get("id"))
        self.order.set_details("mercadopago.last_payment_status", status)
        self.order.set_details("mercadopago.last_payment_at", utc_now())
        if status == "approved":
            if self.order.status == OrderStatus.PENDING_PAYMENT.value:
                self.order.set_status(OrderStatus.SUB_ACTIVE)
        elif status in ("rejected", "cancelled"):
            self.order.set_details("mercadopago.payment_failed_at", utc_now())
        self.save()

    def handle_return(self, kind: str, params: dict) -> str:
        stored_id = self.get_subscription_id()
        preapproval_id = stored_id or params.get("preapproval_id")
        if not preapproval_id:
            return self.failure_url()
        result = self.client.get_preapproval(preapproval_id)
        if not result.success or not result.data:
            logger.error("Mercado Pago 订阅查询失败: order_id=%d, %s", self.order.id, result.error)
            return self.failure_url()
        if not stored_id and result.data.get("external_reference") != f"{SUBSCRIPTION_REF_PREFIX}{self.order.id}":
            return self.reject_foreign_payment("preapproval_id", preapproval_id)
        self.subscription_updated(result.data)
        return self.order_page_url()

    def sync(self) -> None:
        preapproval_id = self.get_subscription_id()
        if not preapproval_id:
            return
        result = self.client.get_preapproval(preapproval_id)
        if result.success and result.data:
            self.subscription_updated(result.data)

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

    def get_vendor_actions(self) -> list[OrderAction]:
        if self.order.status not in (OrderStatus.SUB_ACTIVE.value, OrderStatus.SUB_PAUSED.value):
            return []
        return [OrderAction("vendor.cancel_subscription", "Cancel subscription", self._vendor_cancel)]

    def _cancel(self) -> dict:
        self.order.set_details("mercadopago.canceled_at", utc_now())
        return self._subscription_call(
            self.client.cancel_preapproval, OrderStatus.SUB_CANCELED, "Failed to cancel subscription",
            events.ORDER_CUSTOMER_CANCELED,
        )

    def _vendor_cancel(self) -> dict:
        self.order.set_details("mercadopago.canceled_at", utc_now())
        return self._subscription_call(
            self.client.cancel_preapproval, OrderStatus.SUB_CANCELED, "Failed to cancel subscription",
            events.ORDER_VENDOR_DECLINED,
        )

    def _pause(self) -> dict:
        return self._subscription_call(
            self.client.pause_preapproval, OrderStatus.SUB_PAUSED, "Failed to pause subscription",
        )

    def _resume(self) -> dict:
        return self._subscription_call(
            self.client.reactivate_preapproval, OrderStatus.SUB_ACTIVE, "Failed to resume subscription",
        )
