"""
PayPal 支付方式：一次性支付（Orders v2）与订阅（Billing v1）。

- 自动扣款：intent=CAPTURE，回跳时 capture
- 手动扣款：intent=AUTHORIZE，回跳时 authorize，商家审批后 capture authorization
- 订单完成后按市场配置触发商家付款（payout_queue 保证同一订单只付款一次）
"""

import logging

from app.models.schemas import OrderStatus
from app.services import events
from app.services.money import to_money
from app.services.payment_methods.base import OrderAction, PaymentMethod, SubscriptionMethod, utc_now
from app.services.paypal_client import PayPalClient
from app.services.platform_config import load_paypal_settings

logger = logging.getLogger(__name__)

ORDER_REF_PREFIX = "voxel_order_"
PAYPAL_INTERVALS = ("DAY", "WEEK", "MONTH", "YEAR")

# capture 状态 → 订单状态
CAPTURE_STATUS = {
    "COMPLETED": OrderStatus.COMPLETED,
    "PENDING": OrderStatus.PENDING_PAYMENT,
    "DECLINED": OrderStatus.CANCELED,
    "FAILED": OrderStatus.CANCELED,
    "REFUNDED": OrderStatus.REFUNDED,
}


class PayPalMixin:
    provider = "paypal"

    def load_settings(self):
        return load_paypal_settings()

    def create_client(self):
        return PayPalClient(self.settings)


class PayPalPayment(PayPalMixin, PaymentMethod):
    key = "paypal_payment"
    label = "PayPal"

    def _process_payment(self) -> dict:
        items = self.get_line_items()
        if not items:
            raise ValueError("订单没有订单项")

        result = self.client.create_order(
            self.build_order_data(), request_id=f"order-{self.order.id}",
        ).raise_for_error()
        paypal_order = result.data or {}

        self.order.set_details("paypal.order_id", paypal_order.get("id"))
        self.order.set_details("paypal.status", paypal_order.get("status"))
        self.order.set_details("paypal.capture_method", self.get_capture_method())
        self.order.set_details("pricing.total", str(self.get_total()))
        self.save()

        approval_url = PayPalClient.find_link(paypal_order.get("links"), "approve") \
            or PayPalClient.find_link(paypal_order.get("links"), "payer-action")
        if not approval_url:
            raise ValueError("PayPal 未返回支付确认地址")

        logger.info("PayPal 订单已创建: order_id=%d, paypal_order_id=%s", self.order.id, paypal_order.get("id"))
        return {"success": True, "redirect_url": approval_url}

    def build_order_data(self) -> dict:
        currency = self.order.currency
        total = PayPalClient.to_paypal_amount(self.get_total())
        items = []
        for item in self.get_line_items():
            entry = {
                "name": item.label[:127],
                "unit_amount": {"currency_code": currency, "value": PayPalClient.to_paypal_amount(item.amount)},
                "quantity": str(item.quantity),
            }
            if item.description:
                entry["description"] = item.description[:127]
            items.append(entry)

        return {
            "intent": "AUTHORIZE" if self.get_capture_method() == "manual" else "CAPTURE",
            "purchase_units": [{
                "reference_id": f"{ORDER_REF_PREFIX}{self.order.id}",
                "custom_id": f"{ORDER_REF_PREFIX}{self.order.id}",
                "description": f"Order #{self.order.id}",
                "amount": {
                    "currency_code": currency,
                    "value": total,
                    "breakdown": {"item_total": {"currency_code": currency, "value": total}},
                },
                "items": items,
            }],
            "application_context": {
                "brand_name": self.settings.brand_name or "PayBridge",
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "return_url": self.return_url("success"),
                "cancel_url": self.return_url("cancel"),
            },
        }

    # ── 完成处理 ──────────────────────────────────────────

    def handle_order_completed(self, paypal_order: dict) -> None:
        """
        根据 PayPal 订单（capture / authorize / GET 的响应）更新本地订单。

        重复调用同一份数据结果不变；商家付款由 payout_queue 去重。
        """
        self.order.set_details("paypal.order", paypal_order)
        self.order.set_details("paypal.status", paypal_order.get("status"))

        units = paypal_order.get("purchase_units") or [{}]
        payments = units[0].get("payments") or {}
        captures = payments.get("captures") or []
        authorizations = payments.get("authorizations") or []

        if captures:
            capture = captures[0]
            self.store_transaction_id(capture.get("id"))
            self.order.set_details("paypal.capture_id", capture.get("id"))
            if capture.get("amount", {}).get("value") is not None:
                self.order.set_details("pricing.total", str(to_money(capture["amount"]["value"])))
            mapped = CAPTURE_STATUS.get(capture.get("status"))
            if mapped:
                self.order.set_status(mapped)
        elif authorizations:
            authorization = authorizations[0]
            self.store_transaction_id(authorization.get("id"))
            self.order.set_details("paypal.authorization_id", authorization.get("id"))
            if authorization.get("amount", {}).get("value") is not None:
                self.order.set_details("pricing.total", str(to_money(authorization["amount"]["value"])))
            if authorization.get("status") == "VOIDED":
                self.order.set_status(OrderStatus.CANCELED)
            else:
                self.order.set_status(OrderStatus.PENDING_APPROVAL)
        elif paypal_order.get("status") == "VOIDED":
            self.order.set_status(OrderStatus.CANCELED)

        self.mark_synced()
        self.save()

        if self.order.status == OrderStatus.COMPLETED.value:
            self.trigger_payout()
            self.after_completed()

    def trigger_payout(self) -> None:
        """市场订单付款；失败只记录，不影响订单。"""
        from app.services.payout_queue import trigger_marketplace_payout

        try:
            trigger_marketplace_payout(self.order, self.settings)
        except Exception as e:
            logger.error("商家付款触发失败: order_id=%d, %s", self.order.id, e)
            self.order.set_details("marketplace.payout_error", str(e))
            self.save()

    def handle_capture_refunded(self, capture: dict) -> None:
        self.order.set_details("paypal.refund", capture)
        self.order.set_status(OrderStatus.REFUNDED)
        self.mark_synced()
        self.save()

    # ── 回跳 / 同步 ───────────────────────────────────────

    def handle_return(self, kind: str, params: dict) -> str:
        if kind == "cancel":
            self._cancel_unpaid()
            return self.order_page_url()

        stored_id = self.order.get_details("paypal.order_id")
        paypal_order_id = stored_id or params.get("token")
        if not paypal_order_id:
            logger.error("回跳缺少 PayPal 订单号: order_id=%d", self.order.id)
            return self.failure_url()

        if self.order.status != OrderStatus.PENDING_PAYMENT.value:
            return self.order_page_url()

        if not stored_id:
            # 订单未保存 PayPal 订单号时，capture 前先确认 token 属于本订单
            found = self.client.get_order(paypal_order_id)
            units = (found.data or {}).get("purchase_units") or [{}]
            if not found.success or units[0].get("custom_id") != f"{ORDER_REF_PREFIX}{self.order.id}":
                return self.reject_foreign_payment("token", paypal_order_id)

        capture_method = self.order.get_details("paypal.capture_method") or self.get_capture_method()
        if capture_method == "manual":
            result = self.client.authorize_order(paypal_order_id)
        else:
            result = self.client.capture_order(paypal_order_id)
        if not result.success:
            # 并发的回跳 / Webhook 可能已经完成 capture，以 GET 结果为准
            logger.warning("PayPal capture/authorize 失败，改为查询订单: order_id=%d, %s", self.order.id, result.error)
            result = self.client.get_order(paypal_order_id)
        if not result.success or not result.data:
            logger.error("PayPal 回跳处理失败: order_id=%d, %s", self.order.id, result.error)
            return self.failure_url()

        self.handle_order_completed(result.data)
        return self.order_page_url()

    def sync(self) -> None:
        paypal_order_id = self.order.get_details("paypal.order_id")
        if not paypal_order_id:
            return
        result = self.client.get_order(paypal_order_id)
        if result.success and result.data:
            self.handle_order_completed(result.data)

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
        authorization_id = self.order.get_details("paypal.authorization_id")
        if not authorization_id:
            return {"success": False, "message": "Authorization ID not found"}

        result = self.client.capture_authorization(authorization_id)
        if not result.success:
            logger.error("PayPal 授权扣款失败: order_id=%d, %s", self.order.id, result.error)
            return {"success": False, "message": result.error or "Failed to capture payment"}

        capture = result.data or {}
        self.order.set_details("paypal.capture_id", capture.get("id"))
        self.order.set_details("paypal.capture", capture)
        self.store_transaction_id(capture.get("id"))
        response = self._mark_completed_by_vendor()
        self.trigger_payout()
        return response

    def _decline(self) -> dict:
        authorization_id = self.order.get_details("paypal.authorization_id")
        if authorization_id:
            result = self.client.void_authorization(authorization_id)
            if not result.success:
                logger.error("PayPal 撤销授权失败: order_id=%d, %s", self.order.id, result.error)
        return self._finish(OrderStatus.CANCELED, events.ORDER_VENDOR_DECLINED)

    def _customer_cancel(self) -> dict:
        authorization_id = self.order.get_details("paypal.authorization_id")
        if authorization_id:
            result = self.client.void_authorization(authorization_id)
            if not result.success:
                logger.error("PayPal 撤销授权失败: order_id=%d, %s", self.order.id, result.error)
        return self._finish(OrderStatus.CANCELED, events.ORDER_CUSTOMER_CANCELED)


class PayPalSubscription(PayPalMixin, SubscriptionMethod):
    key = "paypal_subscription"
    label = "PayPal subscription"
    subscription_ref_key = "paypal.subscription_id"

    STATUS_MAP = {
        "ACTIVE": OrderStatus.SUB_ACTIVE,
        "SUSPENDED": OrderStatus.SUB_PAUSED,
        "CANCELLED": OrderStatus.SUB_CANCELED,
        "EXPIRED": OrderStatus.SUB_CANCELED,
        "APPROVAL_PENDING": OrderStatus.PENDING_PAYMENT,
    }

    def _process_payment(self) -> dict:
        item = self.get_subscription_item()
        if not item:
            raise ValueError("订单没有订阅项")

        plan_id = self.get_or_create_plan()
        customer = self.order.customer
        data = {
            "plan_id": plan_id,
            "custom_id": f"{ORDER_REF_PREFIX}{self.order.id}",
            "application_context": {
                "brand_name": self.settings.brand_name or "PayBridge",
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "payment_method": {
                    "payer_selected": "PAYPAL",
                    "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
                },
                "return_url": self.return_url("subscription_success"),
                "cancel_url": self.return_url("subscription_cancel"),
            },
        }
        if customer:
            data["subscriber"] = {
                "name": {"given_name": customer.display_name or customer.email},
                "email_address": customer.email,
            }

        subscription = self.client.create_subscription(data).raise_for_error().data or {}
        self.order.set_details("paypal.subscription_id", subscription.get("id"))
        self.order.set_details("paypal.plan_id", plan_id)
        self.order.set_details("paypal.status", subscription.get("status"))
        self.order.set_details("pricing.total", str(self.get_total()))
        self.save()

        approval_url = PayPalClient.find_link(subscription.get("links"), "approve")
        if not approval_url:
            raise ValueError("PayPal 未返回订阅确认地址")
        return {"success": True, "redirect_url": approval_url}

    def get_or_create_plan(self) -> str:
        """为订阅项创建商品与计费计划，计划 ID 缓存在订单 details 中。"""
        cached = self.order.get_details("paypal.cached_plan_id")
        if cached:
            return cached

        item = self.get_subscription_item()
        product = self.client.create_product(item.label, item.description or "").raise_for_error().data or {}

        unit, frequency = self.get_interval()
        interval = unit.upper()
        if interval not in PAYPAL_INTERVALS:
            interval = "MONTH"

        billing_cycles = []
        if item.trial_days and int(item.trial_days) > 0:
            billing_cycles.append({
                "frequency": {"interval_unit": "DAY", "interval_count": int(item.trial_days)},
                "tenure_type": "TRIAL",
                "sequence": 1,
                "total_cycles": 1,
            })
        billing_cycles.append({
            "frequency": {"interval_unit": interval, "interval_count": frequency},
            "tenure_type": "REGULAR",
            "sequence": len(billing_cycles) + 1,
            "total_cycles": 0,
            "pricing_scheme": {
                "fixed_price": {
                    "value": PayPalClient.to_paypal_amount(item.amount),
                    "currency_code": self.order.currency,
                },
            },
        })

        plan = self.client.create_plan({
            "product_id": product.get("id"),
            "name": f"{item.label} - Subscription"[:127],
            "status": "ACTIVE",
            "billing_cycles": billing_cycles,
            "payment_preferences": {
                "auto_bill_outstanding": True,
                "setup_fee_failure_action": "CONTINUE",
                "payment_failure_threshold": 3,
            },
        }).raise_for_error().data or {}

        plan_id = plan.get("id")
        self.order.set_details("paypal.cached_plan_id", plan_id)
        self.save()
        return plan_id

    # ── 完成处理 ──────────────────────────────────────────

    def subscription_updated(self, subscription: dict) -> None:
        self.order.set_details("paypal.subscription", subscription)
        self.order.set_details("paypal.status", subscription.get("status"))
        self.store_transaction_id(subscription.get("id"))
        self.apply_subscription_status((subscription.get("status") or "").upper())
        self.mark_synced()
        self.save()

    def handle_payment_completed(self, sale: dict) -> None:
        """续费成功（PAYMENT.SALE.COMPLETED）：记录最近一次扣款。"""
        self.order.set_details("paypal.last_payment", {
            "id": sale.get("id"),
            "amount": (sale.get("amount") or {}).get("total"),
            "time": sale.get("create_time") or utc_now(),
        })
        self.save()

    def handle_return(self, kind: str, params: dict) -> str:
        if kind == "subscription_cancel":
            self._cancel_unpaid()
            return self.order_page_url()

        stored_id = self.order.get_details("paypal.subscription_id")
        subscription_id = stored_id or params.get("subscription_id")
        if not subscription_id:
            return self.failure_url()
        result = self.client.get_subscription(subscription_id)
        if not result.success or not result.data:
            logger.error("PayPal 订阅查询失败: order_id=%d, %s", self.order.id, result.error)
            return self.failure_url()
        if not stored_id and result.data.get("custom_id") != f"{ORDER_REF_PREFIX}{self.order.id}":
            return self.reject_foreign_payment("subscription_id", subscription_id)
        self.subscription_updated(result.data)
        return self.order_page_url()

    def sync(self) -> None:
        subscription_id = self.order.get_details("paypal.subscription_id")
        if not subscription_id:
            return
        result = self.client.get_subscription(subscription_id)
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

    def _cancel(self) -> dict:
        return self._subscription_call(
            self.client.cancel_subscription, OrderStatus.SUB_CANCELED, "Failed to cancel subscription",
            events.ORDER_CUSTOMER_CANCELED,
        )

    def _pause(self) -> dict:
        return self._subscription_call(
            self.client.suspend_subscription, OrderStatus.SUB_PAUSED, "Failed to pause subscription",
        )

    def _resume(self) -> dict:
        return self._subscription_call(
            self.client.activate_subscription, OrderStatus.SUB_ACTIVE, "Failed to resume subscription",
        )
