"""
PayPal REST API 客户端。

主要功能：
- OAuth client_credentials 令牌获取，按 mode 缓存到 transient（过期前 60 秒刷新）
- Orders v2：创建 / 捕获 / 查询，授权捕获 / 作废，捕获退款
- Billing：商品、计划、订阅的创建与状态管理
- Payouts：批量付款、查询批次 / 单项
"""

import logging
from decimal import Decimal

import httpx

from app.models.schemas import PayPalSettings
from app.services.errors import AuthenticationError
from app.services.gateway_http import GatewayHttpClient, GatewayResult
from app.services.money import format_money, to_money
from app.services.transients import get_transient, set_transient

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

TOKEN_CACHE_PREFIX = "paypal_token_"
DEFAULT_TOKEN_TTL = 3600


class PayPalClient(GatewayHttpClient):
    """PayPal REST 客户端，Bearer 令牌鉴权。"""

    provider = "paypal"
    IDEMPOTENCY_HEADER = "PayPal-Request-Id"

    def __init__(self, settings: PayPalSettings):
        self.settings = settings

    def base_url(self) -> str:
        return LIVE_URL if self.settings.mode == "live" else SANDBOX_URL

    # ── 鉴权 ──────────────────────────────────────────────

    def get_access_token(self) -> str:
        """
        获取 OAuth 访问令牌，优先使用缓存。

        Raises:
            AuthenticationError: 凭证未配置或 PayPal 拒绝。
        """
        cache_key = TOKEN_CACHE_PREFIX + self.settings.mode
        cached = get_transient(cache_key)
        if cached:
            return cached

        if not self.settings.client_id or not self.settings.client_secret:
            raise AuthenticationError("PayPal 凭证未配置")

        try:
            with httpx.Client(timeout=self.TIMEOUT) as client:
                resp = client.post(
                    self.base_url() + "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.settings.client_id, self.settings.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"PayPal 令牌请求失败: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        token = body.get("access_token") if isinstance(body, dict) else None
        if resp.status_code != 200 or not token:
            message = body.get("error_description") or body.get("message") or f"HTTP {resp.status_code}"
            logger.error("PayPal 令牌获取失败: %s", message)
            raise AuthenticationError(f"PayPal 令牌获取失败: {message}")

        ttl = int(body.get("expires_in") or DEFAULT_TOKEN_TTL) - 60
        set_transient(cache_key, token, max(ttl, 60))
        return token

    def _auth_headers(self, auth_token: str | None = None) -> dict:
        token = auth_token or self.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    def _extract_error(self, body, status_code: int) -> str:
        if isinstance(body, dict):
            for key in ("message", "error_description", "name"):
                if body.get(key):
                    return str(body[key])
        return f"HTTP {status_code}"

    # ── Orders ────────────────────────────────────────────

    def create_order(self, order_data: dict, request_id: str | None = None) -> GatewayResult:
        return self.request("/v2/checkout/orders", "POST", order_data, idempotency_key=request_id)

    def get_order(self, paypal_order_id: str) -> GatewayResult:
        return self.request(f"/v2/checkout/orders/{paypal_order_id}")

    def capture_order(self, paypal_order_id: str, request_id: str | None = None) -> GatewayResult:
        return self.request(
            f"/v2/checkout/orders/{paypal_order_id}/capture", "POST", {},
            idempotency_key=request_id or f"capture-{paypal_order_id}",
        )

    def authorize_order(self, paypal_order_id: str) -> GatewayResult:
        return self.request(
            f"/v2/checkout/orders/{paypal_order_id}/authorize", "POST", {},
            idempotency_key=f"authorize-{paypal_order_id}",
        )

    def capture_authorization(self, authorization_id: str, final_capture: bool = True) -> GatewayResult:
        return self.request(
            f"/v2/payments/authorizations/{authorization_id}/capture", "POST",
            {"final_capture": final_capture},
            idempotency_key=f"auth-capture-{authorization_id}",
        )

    def void_authorization(self, authorization_id: str) -> GatewayResult:
        return self.request(f"/v2/payments/authorizations/{authorization_id}/void", "POST", {})

    def refund_capture(self, capture_id: str, amount: Decimal | None = None,
                       currency: str | None = None, note: str | None = None) -> GatewayResult:
        """退款；amount 为空时全额退款。"""
        body: dict = {}
        if amount is not None:
            body["amount"] = {"value": self.to_paypal_amount(amount), "currency_code": currency}
        if note:
            body["note_to_payer"] = note[:255]
        return self.request(
            f"/v2/payments/captures/{capture_id}/refund", "POST", body,
            idempotency_key=f"refund-{capture_id}",
        )

    # ── Billing ───────────────────────────────────────────

    def create_product(self, name: str, description: str = "") -> GatewayResult:
        body = {
            "name": name[:127],
            "type": "SERVICE",
            "category": "SOFTWARE",
        }
        if description:
            body["description"] = description[:256]
        return self.request("/v1/catalogs/products", "POST", body)

    def create_plan(self, plan_data: dict) -> GatewayResult:
        return self.request("/v1/billing/plans", "POST", plan_data)

    def get_plan(self, plan_id: str) -> GatewayResult:
        return self.request(f"/v1/billing/plans/{plan_id}")

    def create_subscription(self, subscription_data: dict) -> GatewayResult:
        return self.request("/v1/billing/subscriptions", "POST", subscription_data)

    def get_subscription(self, subscription_id: str) -> GatewayResult:
        return self.request(f"/v1/billing/subscriptions/{subscription_id}")

    def cancel_subscription(self, subscription_id: str, reason: str = "Canceled by customer") -> GatewayResult:
        return self.request(f"/v1/billing/subscriptions/{subscription_id}/cancel", "POST", {"reason": reason})

    def suspend_subscription(self, subscription_id: str, reason: str = "Paused by customer") -> GatewayResult:
        return self.request(f"/v1/billing/subscriptions/{subscription_id}/suspend", "POST", {"reason": reason})

    def activate_subscription(self, subscription_id: str, reason: str = "Resumed by customer") -> GatewayResult:
        return self.request(f"/v1/billing/subscriptions/{subscription_id}/activate", "POST", {"reason": reason})

    # ── Payouts ───────────────────────────────────────────

    def create_payout(self, payout_data: dict) -> GatewayResult:
        batch_id = payout_data.get("sender_batch_header", {}).get("sender_batch_id")
        return self.request("/v1/payments/payouts", "POST", payout_data, idempotency_key=batch_id)

    def get_payout(self, payout_batch_id: str) -> GatewayResult:
        return self.request(f"/v1/payments/payouts/{payout_batch_id}")

    def get_payout_item(self, payout_item_id: str) -> GatewayResult:
        return self.request(f"/v1/payments/payouts-item/{payout_item_id}")

    # ── 金额 ──────────────────────────────────────────────

    @staticmethod
    def to_paypal_amount(amount) -> str:
        """PayPal 金额：两位小数字符串。"""
        return format_money(amount)

    @staticmethod
    def from_paypal_amount(value) -> Decimal:
        return to_money(value)

    @staticmethod
    def find_link(links: list | None, rel: str) -> str | None:
        for link in links or []:
            if link.get("rel") == rel:
                return link.get("href")
        return None
