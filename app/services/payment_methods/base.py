"""
支付方式基类。

每个支付方式绑定一个订单，负责：
- process_payment()：构造渠道结账请求，保存渠道交易号，返回跳转地址
- 完成处理（handle_*）：把渠道状态映射为订单状态，幂等
- handle_return()：处理渠道回跳，重新向渠道拉取权威状态
- should_sync() / sync()：主动同步
- 商家 / 买家订单操作（approve / decline / cancel 等）
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable
from urllib.parse import urlencode

from app.models.schemas import LineItem, Order, OrderStatus
from app.services import events
from app.services.errors import PermissionDeniedError, ValidationError
from app.services.money import to_money
from app.services.order_service import OrderService
from app.services.platform_config import get_public_base_url

logger = logging.getLogger(__name__)

PAYMENT_FAILED_MESSAGE = "支付失败，请稍后重试"

# 渠道回跳地址 /v1/return/{provider}/{kind} 可用的 kind
RETURN_KINDS = frozenset({
    "success", "cancel", "failure", "pending", "callback",
    "subscription", "subscription_success", "subscription_cancel",
})


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class OrderAction:
    """订单操作：action 形如 vendor.approve / customer.cancel。"""
    action: str
    label: str
    handler: Callable[[], dict]
    type: str = "secondary"

    def to_dict(self) -> dict:
        return {"action": self.action, "label": self.label, "type": self.type}


class PaymentMethod:
    """支付方式基类，子类设置 key / provider 并实现渠道逻辑。"""

    key = ""
    provider = ""
    label = ""
    is_subscription = False

    def __init__(self, order: Order, settings=None, client=None):
        self.order = order
        self.settings = settings if settings is not None else self.load_settings()
        self._client = client
        self.orders = OrderService()

    def load_settings(self):
        return None

    def create_client(self):
        return None

    @property
    def client(self):
        if self._client is None:
            self._client = self.create_client()
        return self._client

    # ── 结账 ──────────────────────────────────────────────

    def process_payment(self) -> dict:
        """
        发起支付。

        Returns:
            {"success": True, "redirect_url": ...} 或
            {"success": False, "message": ..., "debug": {"type": ..., "message": ...}}
        """
        try:
            return self._process_payment()
        except Exception as e:
            logger.error("%s 发起支付失败: order_id=%s, %s", self.key, self.order.id, e)
            return {
                "success": False,
                "message": PAYMENT_FAILED_MESSAGE,
                "debug": {"type": f"{self.provider}_error", "message": str(e)},
            }

    def _process_payment(self) -> dict:
        raise NotImplementedError

    def get_capture_method(self) -> str:
        approval = getattr(self.settings, "order_approval", "automatic")
        return "manual" if approval == "manual" else "automatic"

    def get_line_items(self) -> list[LineItem]:
        return self.order.items

    def get_total(self) -> Decimal:
        return to_money(self.order.get_total())

    def get_customer_email(self) -> str | None:
        return self.order.customer.email if self.order.customer else None

    def get_item_summary(self) -> str:
        """订单项摘要，如 "Logo design (+2 more)"。"""
        items = self.get_line_items()
        if not items:
            return f"Order #{self.order.id}"
        summary = items[0].label
        if len(items) > 1:
            summary += f" (+{len(items) - 1} more)"
        return summary

    # ── URL ───────────────────────────────────────────────

    def return_url(self, kind: str, **extra) -> str:
        if kind not in RETURN_KINDS:
            raise ValueError(f"未知的回跳类型: {kind}")
        query = urlencode({"order_id": self.order.id, **extra})
        return f"{get_public_base_url()}/v1/return/{self.provider}/{kind}?{query}"

    def order_page_url(self) -> str:
        return f"{get_public_base_url()}/orders/{self.order.id}"

    def webhook_url(self) -> str:
        return f"{get_public_base_url()}/v1/webhooks/{self.provider}"

    def failure_url(self, error: str = "payment_failed") -> str:
        return f"{self.order_page_url()}?{urlencode({'error': error})}"

    def handle_return(self, kind: str, params: dict) -> str:
        """处理渠道回跳，返回跳转地址。默认只回到订单页。"""
        return self.order_page_url()

    def reject_foreign_payment(self, ref_name: str, ref_value) -> str:
        """回跳带来的渠道交易不属于本订单：不改订单，跳到失败页。"""
        logger.warning(
            "%s 回跳交易不属于该订单: order_id=%d, %s=%s", self.provider, self.order.id, ref_name, ref_value,
        )
        return self.failure_url("payment_mismatch")

    def _cancel_unpaid(self) -> None:
        """买家在渠道页面取消：只取消尚未付款的订单。"""
        if self.order.status == OrderStatus.PENDING_PAYMENT.value:
            self.order.set_status(OrderStatus.CANCELED)
            self.save()

    # ── 同步 ──────────────────────────────────────────────

    def should_sync(self) -> bool:
        return not self.order.get_details(f"{self.provider}.last_synced_at")

    def sync(self) -> None:
        pass

    def mark_synced(self) -> None:
        self.order.set_details(f"{self.provider}.last_synced_at", utc_now())

    def save(self) -> Order:
        return self.orders.save(self.order)

    def store_transaction_id(self, transaction_id) -> None:
        if transaction_id and self.order.transaction_id != str(transaction_id):
            self.order.set_transaction_id(str(transaction_id))

    def after_completed(self) -> None:
        """订单变为 completed 后的通用处理：钱包充值订单入账。"""
        from app.services.deposit_service import maybe_credit_wallet_deposit

        maybe_credit_wallet_deposit(self.order)

    # ── 订单操作 ──────────────────────────────────────────

    def get_vendor_actions(self) -> list[OrderAction]:
        return []

    def get_customer_actions(self) -> list[OrderAction]:
        return []

    def is_customer(self, actor_id: int | None) -> bool:
        return bool(actor_id) and self.order.customer_id is not None and int(actor_id) == int(self.order.customer_id)

    def is_vendor(self, actor_id: int | None) -> bool:
        vendor_id = self.order.get_vendor_id()
        return bool(actor_id) and vendor_id is not None and int(actor_id) == int(vendor_id)

    def get_actions_for(self, actor_id: int) -> list[OrderAction]:
        actions: list[OrderAction] = []
        if self.is_customer(actor_id):
            actions.extend(self.get_customer_actions())
        if self.is_vendor(actor_id):
            actions.extend(self.get_vendor_actions())
        return actions

    def run_action(self, name: str, actor_id: int) -> dict:
        """
        执行订单操作。

        Raises:
            PermissionDeniedError: 操作者不是订单买家 / 商家。
            ValidationError: 当前状态下没有该操作。
        """
        if name.startswith("customer."):
            if not self.is_customer(actor_id):
                raise PermissionDeniedError("只有下单用户可以执行该操作")
            actions = self.get_customer_actions()
        elif name.startswith("vendor."):
            if not self.is_vendor(actor_id):
                raise PermissionDeniedError("只有订单商家可以执行该操作")
            actions = self.get_vendor_actions()
        else:
            raise ValidationError(f"未知的订单操作: {name}")

        for action in actions:
            if action.action == name:
                logger.info("执行订单操作: order_id=%d, action=%s, actor=%s", self.order.id, name, actor_id)
                return action.handler()
        raise ValidationError(f"当前订单不可执行操作: {name}")

    def _finish(self, status: OrderStatus, event: str | None = None) -> dict:
        """变更状态、保存并触发事件。"""
        self.order.set_status(status)
        self.save()
        if event:
            events.dispatch(event, order_id=self.order.id)
        return {"success": True}

    def _mark_completed_by_vendor(self) -> dict:
        self.order.set_status(OrderStatus.COMPLETED)
        self.save()
        events.dispatch(events.ORDER_VENDOR_APPROVED, order_id=self.order.id)
        self.after_completed()
        return {"success": True}


class SubscriptionMethod(PaymentMethod):
    """订阅类支付方式基类。"""

    is_subscription = True
    # 渠道订阅状态 → 订单状态，子类覆盖
    STATUS_MAP: dict[str, OrderStatus] = {}
    # 订阅 ID 在 details 中的路径
    subscription_ref_key = ""

    def get_subscription_id(self) -> str | None:
        return self.order.get_details(self.subscription_ref_key) if self.subscription_ref_key else None

    def should_sync(self) -> bool:
        if self.order.status == OrderStatus.SUB_CANCELED.value:
            return False
        return super().should_sync()

    def _subscription_call(
        self, call: Callable, status: OrderStatus, failure: str, event: str | None = None,
    ) -> dict:
        """调用渠道变更订阅，成功后再改本地状态。"""
        subscription_id = self.get_subscription_id()
        if not subscription_id:
            return {"success": False, "message": "Subscription not found"}
        result = call(subscription_id)
        if not result.success:
            logger.error("%s 订阅操作失败: order_id=%d, %s", self.provider, self.order.id, result.error)
            return {"success": False, "message": result.error or failure}
        self.order.set_status(status)
        self.save()
        if event:
            events.dispatch(event, order_id=self.order.id)
        return {"success": True}

    def get_subscription_item(self) -> LineItem | None:
        for item in self.get_line_items():
            if item.item_type == "subscription" or item.subscription_unit:
                return item
        return self.order.get_first_item()

    def get_interval(self) -> tuple[str, int]:
        """订阅周期 (unit, frequency)，默认按月。"""
        item = self.get_subscription_item()
        unit = (item.subscription_unit if item else None) or "month"
        frequency = int((item.subscription_frequency if item else None) or 1)
        return unit.lower(), max(frequency, 1)

    def map_subscription_status(self, provider_status: str | None) -> OrderStatus | None:
        return self.STATUS_MAP.get(provider_status or "")

    def apply_subscription_status(self, provider_status: str | None) -> None:
        mapped = self.map_subscription_status(provider_status)
        if mapped is None:
            logger.info(
                "%s 订阅状态无需映射: order_id=%d, status=%s", self.provider, self.order.id, provider_status,
            )
            return
        self.order.set_status(mapped)
