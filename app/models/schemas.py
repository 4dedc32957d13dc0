"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


# ── 订单状态机 ────────────────────────────────────────────


class OrderStatus(str, Enum):
    """订单状态（与支付渠道无关）。"""
    PENDING_PAYMENT = "pending_payment"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    SUB_ACTIVE = "sub_active"
    SUB_PAUSED = "sub_paused"
    SUB_CANCELED = "sub_canceled"


# 单次支付的终态：completed 之后只允许退款/撤销，canceled/refunded 不可再变
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING_PAYMENT.value: {
        OrderStatus.PENDING_APPROVAL.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.CANCELED.value,
        OrderStatus.REFUNDED.value,
        OrderStatus.SUB_ACTIVE.value,
        OrderStatus.SUB_PAUSED.value,
        OrderStatus.SUB_CANCELED.value,
    },
    OrderStatus.PENDING_APPROVAL.value: {
        OrderStatus.COMPLETED.value,
        OrderStatus.CANCELED.value,
        OrderStatus.REFUNDED.value,
    },
    OrderStatus.COMPLETED.value: {
        OrderStatus.REFUNDED.value,
        OrderStatus.CANCELED.value,
    },
    OrderStatus.CANCELED.value: set(),
    OrderStatus.REFUNDED.value: set(),
    OrderStatus.SUB_ACTIVE.value: {
        OrderStatus.SUB_PAUSED.value,
        OrderStatus.SUB_CANCELED.value,
    },
    OrderStatus.SUB_PAUSED.value: {
        OrderStatus.SUB_ACTIVE.value,
        OrderStatus.SUB_CANCELED.value,
    },
    OrderStatus.SUB_CANCELED.value: set(),
}


def can_transition(current: str, new: str) -> bool:
    """判断订单状态能否从 current 变为 new（相同状态视为幂等，允许）。"""
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(current, set())


# ── 用户 / 订单 ───────────────────────────────────────────


@dataclass
class User:
    id: int
    email: str
    display_name: Optional[str] = None
    vendor_tier: Optional[str] = None
    wallet_balance: int = 0  # 单位：分
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class HasVendor(Protocol):
    """能解析出所属商家的订单项。"""

    def get_vendor_id(self) -> Optional[int]:
        ...


@dataclass
class LineItem:
    id: int
    order_id: int
    label: str
    amount: Decimal
    quantity: int = 1
    currency: str = "USD"
    item_type: str = "regular"  # regular / subscription / deposit
    description: Optional[str] = None
    vendor_id: Optional[int] = None
    post_author_id: Optional[int] = None
    subscription_unit: Optional[str] = None
    subscription_frequency: Optional[int] = None
    trial_days: Optional[int] = None

    def get_vendor_id(self) -> Optional[int]:
        """显式商家 ID 优先，其次是商品发布者；充值项没有商家。"""
        if self.item_type == "deposit":
            return None
        return self.vendor_id or self.post_author_id or None

    @property
    def total(self) -> Decimal:
        return self.amount * self.quantity


@dataclass
class Order:
    id: int
    payment_method: str
    status: str = OrderStatus.PENDING_PAYMENT.value
    currency: str = "USD"
    customer_id: Optional[int] = None
    customer: Optional[User] = None
    transaction_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    items: list[LineItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_details(self, path: str, default: Any = None) -> Any:
        """按点分路径读取 details，如 get_details("paypal.capture_id")。"""
        node: Any = self.details
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set_details(self, path: str, value: Any) -> None:
        """按点分路径写入 details，中间节点不存在时自动创建。"""
        parts = path.split(".")
        node = self.details
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def set_status(self, status: str | OrderStatus) -> bool:
        """
        变更订单状态，非法迁移（如 canceled → completed）被忽略并记录日志。

        Returns:
            True 表示状态已是/已变为目标状态。
        """
        new = status.value if isinstance(status, OrderStatus) else status
        if not can_transition(self.status, new):
            logger.warning(
                "忽略非法状态迁移: order_id=%s, %s -> %s", self.id, self.status, new,
            )
            return False
        self.status = new
        return True

    def set_transaction_id(self, transaction_id: str) -> None:
        self.transaction_id = str(transaction_id)

    def get_first_item(self) -> Optional[LineItem]:
        return self.items[0] if self.items else None

    def get_vendor_id(self) -> Optional[int]:
        first = self.get_first_item()
        return first.get_vendor_id() if first else None

    def get_total(self) -> Decimal:
        return sum((item.total for item in self.items), Decimal("0"))


# ── 钱包 ──────────────────────────────────────────────────


@dataclass
class WalletTransaction:
    id: int
    user_id: int
    transaction_type: str  # deposit / purchase / refund / adjustment
    amount: int  # 有符号，单位：分
    balance_after: int
    currency: str = "USD"
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    gateway: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    description: Optional[str] = None
    status: str = "completed"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PendingDeposit:
    deposit_id: str
    user_id: int
    amount: Decimal
    currency: str
    gateway: str
    return_url: str
    gateway_ref: Optional[str] = None  # session_id / order_id / reference / preference_id
    processed: bool = False
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "deposit_id": self.deposit_id,
            "user_id": self.user_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "gateway": self.gateway,
            "gateway_ref": self.gateway_ref,
            "return_url": self.return_url,
            "processed": self.processed,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingDeposit":
        return cls(
            deposit_id=data["deposit_id"],
            user_id=int(data["user_id"]),
            amount=Decimal(str(data["amount"])),
            currency=data["currency"],
            gateway=data["gateway"],
            gateway_ref=data.get("gateway_ref"),
            return_url=data.get("return_url") or "",
            processed=bool(data.get("processed")),
            created_at=data.get("created_at"),
        )


# ── 商家分账 ──────────────────────────────────────────────


@dataclass
class FeeSplit:
    platform_fee: Decimal
    vendor_earnings: Decimal
    fee_type: str  # none / fixed / percentage / conditional


@dataclass
class VendorSubOrder:
    id: int
    parent_order_id: int
    vendor_id: int
    vendor_amount: Decimal
    payout_status: str = "pending"
    payout_item_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── 渠道配置 ──────────────────────────────────────────────


@dataclass
class FeeCondition:
    type: str  # fixed / percentage
    value: Decimal
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    vendor_tier: Optional[str] = None


@dataclass
class MarketplaceSettings:
    enabled: bool = False
    fee_type: str = "percentage"
    fee_value: Decimal = Decimal("0")
    fee_conditions: list[FeeCondition] = field(default_factory=list)
    auto_payout: bool = True
    payout_delay_days: int = 0
    fee_bearer: str = "account"  # Paystack: account / subaccount / all / all_proportional


@dataclass
class PayPalSettings:
    enabled: bool = False
    mode: str = "sandbox"
    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""
    order_approval: str = "automatic"
    brand_name: str = ""
    currency: str = "USD"
    marketplace: MarketplaceSettings = field(default_factory=MarketplaceSettings)


@dataclass
class MercadoPagoSettings:
    enabled: bool = False
    mode: str = "sandbox"
    access_token: str = ""
    public_key: str = ""
    client_id: str = ""
    client_secret: str = ""
    webhook_secret: str = ""
    order_approval: str = "automatic"
    brand_name: str = ""
    currency: str = "BRL"
    marketplace: MarketplaceSettings = field(default_factory=MarketplaceSettings)


@dataclass
class PaystackSettings:
    enabled: bool = False
    mode: str = "sandbox"
    secret_key: str = ""
    public_key: str = ""
    webhook_secret: str = ""
    order_approval: str = "automatic"
    currency: str = "NGN"
    channels: list[str] = field(default_factory=list)
    marketplace: MarketplaceSettings = field(default_factory=MarketplaceSettings)


@dataclass
class SquareSettings:
    enabled: bool = False
    mode: str = "sandbox"
    access_token: str = ""
    location_id: str = ""
    webhook_signature_key: str = ""
    webhook_url: str = ""
    order_approval: str = "automatic"
    brand_name: str = ""
    support_email: str = ""
    currency: str = "USD"


@dataclass
class StripeSettings:
    enabled: bool = False
    api_key: str = ""
    currency: str = "USD"


@dataclass
class OfflineSettings:
    enabled: bool = False
    order_status: str = "pending_payment"  # pending_payment / pending_approval
    instructions: str = ""


@dataclass
class WalletSettings:
    enabled: bool = True
    min_deposit: Decimal = Decimal("1")
    max_deposit: Decimal = Decimal("10000")
    preset_amounts: list[int] = field(default_factory=lambda: [10, 25, 50, 100])
