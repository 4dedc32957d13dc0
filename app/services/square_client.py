"""
Square API 客户端。

- 请求头携带 Square-Version
- 创建类请求在请求体中携带 idempotency_key（uuid4）
- 金额使用最小货币单位（cent）
"""

import logging
import uuid
from decimal import Decimal

from app.models.schemas import SquareSettings
from app.services.errors import AuthenticationError
from app.services.gateway_http import GatewayHttpClient, GatewayResult
from app.services.money import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://connect.squareupsandbox.com"
LIVE_URL = "https://connect.squareup.com"
API_VERSION = "2024-01-17"


def generate_idempotency_key() -> str:
    return str(uuid.uuid4())


class SquareClient(GatewayHttpClient):
    """Square 客户端，Bearer 访问令牌鉴权。"""

    provider = "square"

    def __init__(self, settings: SquareSettings):
        self.settings = settings

    def base_url(self) -> str:
        return LIVE_URL if self.settings.mode == "live" else SANDBOX_URL

    def _auth_headers(self, auth_token: str | None = None) -> dict:
        token = auth_token or self.settings.access_token
        if not token:
            raise AuthenticationError("Square 访问令牌未配置")
        return {"Authorization": f"Bearer {token}", "Square-Version": API_VERSION}

    def _extract_error(self, body, status_code: int) -> str:
        if isinstance(body, dict):
            errors = body.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                first = errors[0]
                if first.get("detail"):
                    return str(first["detail"])
                if first.get("code"):
                    return str(first["code"])
        return f"HTTP {status_code}"

    def get_location_id(self) -> str:
        return self.settings.location_id

    # ── 支付 ──────────────────────────────────────────────

    def create_payment_link(self, data: dict) -> GatewayResult:
        data = dict(data)
        data.setdefault("idempotency_key", generate_idempotency_key())
        return self.request("/v2/online-checkout/payment-links", "POST", data)

    def get_payment(self, payment_id: str) -> GatewayResult:
        return self.request(f"/v2/payments/{payment_id}")

    def get_order(self, order_id: str) -> GatewayResult:
        return self.request(f"/v2/orders/{order_id}")

    def refund_payment(self, payment_id: str, amount, currency: str, reason: str = "") -> GatewayResult:
        body = {
            "idempotency_key": generate_idempotency_key(),
            "payment_id": payment_id,
            "amount_money": {"amount": self.to_square_amount(amount), "currency": currency},
        }
        if reason:
            body["reason"] = reason[:192]
        return self.request("/v2/refunds", "POST", body)

    def create_catalog_object(self, catalog_object: dict) -> GatewayResult:
        return self.request("/v2/catalog/object", "POST", {
            "idempotency_key": generate_idempotency_key(),
            "object": catalog_object,
        })

    # ── 订阅 ──────────────────────────────────────────────

    def get_subscription(self, subscription_id: str) -> GatewayResult:
        return self.request(f"/v2/subscriptions/{subscription_id}")

    def cancel_subscription(self, subscription_id: str) -> GatewayResult:
        return self.request(f"/v2/subscriptions/{subscription_id}/cancel", "POST", {})

    def pause_subscription(self, subscription_id: str) -> GatewayResult:
        return self.request(f"/v2/subscriptions/{subscription_id}/pause", "POST", {})

    def resume_subscription(self, subscription_id: str) -> GatewayResult:
        return self.request(f"/v2/subscriptions/{subscription_id}/resume", "POST", {})

    # ── 金额 ──────────────────────────────────────────────

    @staticmethod
    def to_square_amount(amount) -> int:
        return to_minor_units(amount)

    @staticmethod
    def from_square_amount(value) -> Decimal:
        return from_minor_units(value)
