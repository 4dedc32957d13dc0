"""
Mercado Pago API 客户端。

覆盖收款所需的接口子集：Checkout Pro 偏好、支付查询 / 退款、
Preapproval 订阅、商户订单，以及商家 OAuth 授权令牌的换取与刷新。
"""

import logging
import uuid
from decimal import Decimal
from urllib.parse import urlencode

from app.models.schemas import MercadoPagoSettings
from app.services.errors import AuthenticationError
from app.services.gateway_http import GatewayHttpClient, GatewayResult
from app.services.money import to_money

logger = logging.getLogger(__name__)

API_URL = "https://api.mercadopago.com"
AUTH_URL = "https://auth.mercadopago.com"


class MercadoPagoClient(GatewayHttpClient):
    """Mercado Pago 客户端，Bearer 访问令牌鉴权；商家订单可用商家 OAuth 令牌覆盖。"""

    provider = "mercadopago"
    IDEMPOTENCY_HEADER = "X-Idempotency-Key"

    def __init__(self, settings: MercadoPagoSettings):
        self.settings = settings

    def base_url(self) -> str:
        return API_URL

    def _auth_headers(self, auth_token: str | None = None) -> dict:
        token = auth_token or self.settings.access_token
        if not token:
            raise AuthenticationError("Mercado Pago 访问令牌未配置")
        return {"Authorization": f"Bearer {token}"}

    def _extract_error(self, body, status_code: int) -> str:
        """错误信息优先级：message → error → cause[0].description → cause[0].code。"""
        if isinstance(body, dict):
            if body.get("message"):
                return str(body["message"])
            if body.get("error"):
                return str(body["error"])
            cause = body.get("cause")
            if isinstance(cause, list) and cause and isinstance(cause[0], dict):
                first = cause[0]
                if first.get("description"):
                    return str(first["description"])
                if first.get("code"):
                    return str(first["code"])
        return f"HTTP {status_code}"

    # ── 支付 ──────────────────────────────────────────────

    def create_preference(self, preference: dict, auth_token: str | None = None) -> GatewayResult:
        return self.request(
            "/checkout/preferences", "POST", preference,
            auth_token=auth_token, idempotency_key=uuid.uuid4().hex,
        )

    def get_payment(self, payment_id, auth_token: str | None = None) -> GatewayResult:
        return self.request(f"/v1/payments/{payment_id}", auth_token=auth_token)

    def search_payments(self, params: dict, auth_token: str | None = None) -> GatewayResult:
        return self.request("/v1/payments/search", params=params, auth_token=auth_token)

    def refund_payment(self, payment_id, amount: Decimal | None = None,
                       auth_token: str | None = None) -> GatewayResult:
        """退款；amount 为空时全额退款。"""
        body = {"amount": self.to_mercadopago_amount(amount)} if amount is not None else {}
        return self.request(
            f"/v1/payments/{payment_id}/refunds", "POST", body,
            auth_token=auth_token, idempotency_key=f"refund-{payment_id}-{amount or 'full'}",
        )

    def get_merchant_order(self, merchant_order_id, auth_token: str | None = None) -> GatewayResult:
        return self.request(f"/merchant_orders/{merchant_order_id}", auth_token=auth_token)

    # ── 订阅（Preapproval） ──────────────────────────────

    def create_preapproval(self, data: dict, auth_token: str | None = None) -> GatewayResult:
        return self.request(
            "/preapproval", "POST", data,
            auth_token=auth_token, idempotency_key=uuid.uuid4().hex,
        )

    def get_preapproval(self, preapproval_id: str, auth_token: str | None = None) -> GatewayResult:
        return self.request(f"/preapproval/{preapproval_id}", auth_token=auth_token)

    def update_preapproval(self, preapproval_id: str, data: dict,
                           auth_token: str | None = None) -> GatewayResult:
        return self.request(f"/preapproval/{preapproval_id}", "PUT", data, auth_token=auth_token)

    def cancel_preapproval(self, preapproval_id: str) -> GatewayResult:
        return self.update_preapproval(preapproval_id, {"status": "cancelled"})

    def pause_preapproval(self, preapproval_id: str) -> GatewayResult:
        return self.update_preapproval(preapproval_id, {"status": "paused"})

    def reactivate_preapproval(self, preapproval_id: str) -> GatewayResult:
        return self.update_preapproval(preapproval_id, {"status": "authorized"})

    def get_authorized_payment(self, authorized_payment_id) -> GatewayResult:
        """订阅扣款记录（subscription_authorized_payment 通知）。"""
        return self.request(f"/authorized_payments/{authorized_payment_id}")

    # ── OAuth ─────────────────────────────────────────────

    def get_user_info(self, auth_token: str | None = None) -> GatewayResult:
        return self.request("/users/me", auth_token=auth_token)

    def get_oauth_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode({
            "client_id": self.settings.client_id,
            "response_type": "code",
            "platform_id": "mp",
            "state": state,
            "redirect_uri": redirect_uri,
        })
        return f"{AUTH_URL}/authorization?{query}"

    def exchange_code(self, code: str, redirect_uri: str) -> GatewayResult:
        """用授权码换取商家访问令牌（表单编码）。"""
        return self.request(
            "/oauth/token", "POST",
            {
                "grant_type": "authorization_code",
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
            form=True, authenticated=False,
        )

    def refresh_token(self, refresh_token: str) -> GatewayResult:
        return self.request(
            "/oauth/token", "POST",
            {
                "grant_type": "refresh_token",
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "refresh_token": refresh_token,
            },
            form=True, authenticated=False,
        )

    # ── 金额 ──────────────────────────────────────────────

    @staticmethod
    def to_mercadopago_amount(amount) -> float:
        return float(to_money(amount))

    @staticmethod
    def from_mercadopago_amount(value) -> Decimal:
        return to_money(value)
