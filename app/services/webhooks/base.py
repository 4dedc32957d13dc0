"""
Webhook 处理基类。

流程：验签 → 解析 JSON → 按事件类型分发 → 按关联键查找订单 → 调用支付方式的完成处理。
- 验签失败 / 非 JSON 抛出异常，路由层返回 400，渠道会重发
- 找不到订单、未知事件等业务空操作正常返回，路由层返回 200
"""

import json
import logging
import re
from typing import Callable

from app.models.schemas import Order
from app.services.errors import NotFoundError, SignatureVerificationError, ValidationError
from app.services.order_service import OrderService
from app.services.payment_methods.base import PaymentMethod
from app.services.payment_methods.registry import get_payment_method

logger = logging.getLogger(__name__)

ORDER_REF_PATTERN = re.compile(r"voxel_(?:order|subscription)_(\d+)")


class WebhookProcessor:
    """子类设置 provider、实现 verify() 并在 handlers() 中注册事件处理函数。"""

    provider = ""

    def __init__(self, settings=None, client=None):
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

    # ── 入口 ──────────────────────────────────────────────

    def verify(self, headers, body: bytes, query: dict) -> bool:
        raise NotImplementedError

    def parse(self, body: bytes) -> dict:
        try:
            event = json.loads(body or b"")
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Invalid JSON payload") from e
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON payload")
        return event

    def event_type(self, event: dict) -> str:
        return str(event.get("type") or "")

    def handlers(self) -> dict[str, Callable[[dict], None]]:
        return {}

    def process(self, headers, body: bytes, query: dict | None = None) -> str:
        """
        处理一条通知，返回事件类型。

        Raises:
            SignatureVerificationError: 验签失败。
            ValidationError: 请求体不是合法 JSON。
        """
        if not self.verify(headers, body, query or {}):
            logger.warning("%s webhook 验签失败", self.provider)
            raise SignatureVerificationError("Invalid signature")

        event = self.parse(body)
        event_type = self.event_type(event)
        logger.info("%s webhook: %s", self.provider, event_type or "unknown")

        handler = self.handlers().get(event_type)
        if handler is None:
            logger.info("%s webhook 事件未处理: %s", self.provider, event_type)
            return event_type
        handler(event)
        return event_type

    # ── 订单查找 ──────────────────────────────────────────

    def find_order(self, ref_key: str, ref_value) -> Order | None:
        return self.orders.find_by_ref(ref_key, ref_value)

    def find_order_by_pattern(self, text: str | None, pattern: re.Pattern = ORDER_REF_PATTERN) -> Order | None:
        """从 external_reference / custom_id / note 中解析订单 ID。"""
        match = pattern.search(text or "")
        if not match:
            return None
        return self.orders.get_order(int(match.group(1)))

    def method_for(self, order: Order | None) -> PaymentMethod | None:
        """订单对应的支付方式；订单不存在或不属于本渠道时返回 None。"""
        if order is None:
            return None
        if not order.payment_method.startswith(f"{self.provider}_"):
            logger.warning(
                "%s webhook 订单支付方式不匹配: order_id=%d, method=%s",
                self.provider, order.id, order.payment_method,
            )
            return None
        return get_payment_method(order, settings=self.settings, client=self.client)

    def credit_deposit(self, deposit_id: str | None, params: dict) -> bool:
        """通知对应待处理充值时核验入账，返回是否为充值通知。"""
        from app.services.deposit_service import DepositService, get_pending_deposit

        if not deposit_id:
            return False
        if get_pending_deposit(deposit_id) is None:
            # 已入账的充值只剩审计订单，重复通知直接忽略
            return self.orders.find_by_ref("wallet.deposit_id", deposit_id) is not None
        try:
            result = DepositService(clients={self.provider: self.client}).complete(deposit_id, params)
        except NotFoundError:
            return True
        logger.info("%s webhook 充值处理: deposit_id=%s, success=%s", self.provider, deposit_id, result["success"])
        return True

