"""
Mercado Pago 商家授权（OAuth）。

商家授权后平台用商家的访问令牌创建偏好，平台费通过 marketplace_fee 在收款时直接扣除。
令牌默认有效期 180 天，剩余不足 1 小时时在读取时尝试刷新。
"""

import hmac
import logging
import secrets
import time

from app.models.schemas import MercadoPagoSettings
from app.services.errors import AuthenticationError, ValidationError
from app.services.mercadopago_client import MercadoPagoClient
from app.services.transients import delete_transient, get_transient, set_transient
from app.services.vendor_connections import delete_connection, get_connection, save_connection

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 15552000  # 180 天
REFRESH_MARGIN = 3600
STATE_TTL = 3600


def _state_key(vendor_id: int) -> str:
    return f"mp_oauth_state_{vendor_id}"


class MercadoPagoConnect:
    """商家 OAuth 连接管理。"""

    def __init__(self, settings: MercadoPagoSettings, client: MercadoPagoClient | None = None):
        self.settings = settings
        self.client = client or MercadoPagoClient(settings)

    def get_authorization_url(self, vendor_id: int, redirect_uri: str) -> str:
        """
        生成授权地址，并把 state 存入 transient（1 小时）。

        Raises:
            AuthenticationError: 平台未配置应用 ID。
        """
        if not self.settings.client_id:
            raise AuthenticationError("Mercado Pago 应用 ID 未配置")
        state = secrets.token_urlsafe(24)
        set_transient(_state_key(vendor_id), state, STATE_TTL)
        return self.client.get_oauth_url(state, redirect_uri)

    def verify_state(self, vendor_id: int, state: str | None) -> bool:
        """校验并消费 state。"""
        stored = get_transient(_state_key(vendor_id))
        if not stored or not state:
            return False
        if not hmac.compare_digest(str(stored).encode("utf-8"), state.encode("utf-8")):
            return False
        delete_transient(_state_key(vendor_id))
        return True

    def handle_callback(self, vendor_id: int, code: str, state: str, redirect_uri: str) -> dict:
        """
        OAuth 回调：校验 state → 用授权码换令牌 → 保存商家凭证。

        Raises:
            ValidationError: state 不匹配或缺少授权码。
            AuthenticationError: 换取令牌失败。
        """
        if not code:
            raise ValidationError("缺少授权码")
        if not self.verify_state(vendor_id, state):
            raise ValidationError("OAuth state 校验失败")
        if not self.settings.client_id or not self.settings.client_secret:
            raise AuthenticationError("Mercado Pago OAuth 凭证未配置")

        result = self.client.exchange_code(code, redirect_uri)
        if not result.success or not (result.data or {}).get("access_token"):
            logger.error("Mercado Pago 授权码换取令牌失败: vendor_id=%d, %s", vendor_id, result.error)
            raise AuthenticationError(result.error or "授权码换取令牌失败")

        creds = self.store_tokens(vendor_id, result.data)
        logger.info("Mercado Pago 商家已连接: vendor_id=%d, mp_user_id=%s", vendor_id, creds.get("mp_user_id"))
        return creds

    def store_tokens(self, vendor_id: int, token_data: dict) -> dict:
        existing = get_connection(vendor_id, "mercadopago") or {}
        expires_in = int(token_data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        creds = {
            "access_token": token_data["access_token"],
            "refresh_token": token_data.get("refresh_token") or existing.get("refresh_token"),
            "expires_at": int(time.time()) + expires_in,
            "mp_user_id": str(token_data["user_id"]) if token_data.get("user_id") else existing.get("mp_user_id"),
            "public_key": token_data.get("public_key") or existing.get("public_key"),
        }
        save_connection(vendor_id, "mercadopago", creds)
        return creds

    def get_vendor_access_token(self, vendor_id: int) -> str | None:
        """
        读取商家访问令牌；临近过期时尝试刷新。

        刷新失败时仍返回旧令牌，由后续 API 调用暴露错误。
        """
        creds = get_connection(vendor_id, "mercadopago")
        if not creds or not creds.get("access_token"):
            return None

        expires_at = int(creds.get("expires_at") or 0)
        if expires_at and expires_at < int(time.time()) + REFRESH_MARGIN and creds.get("refresh_token"):
            result = self.client.refresh_token(creds["refresh_token"])
            if result.success and (result.data or {}).get("access_token"):
                logger.info("Mercado Pago 商家令牌已刷新: vendor_id=%d", vendor_id)
                return self.store_tokens(vendor_id, result.data)["access_token"]
            logger.warning("Mercado Pago 商家令牌刷新失败: vendor_id=%d, %s", vendor_id, result.error)

        return creds["access_token"]

    def disconnect(self, vendor_id: int) -> bool:
        return delete_connection(vendor_id, "mercadopago")
