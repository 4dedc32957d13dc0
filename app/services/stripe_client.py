"""
Stripe 客户端：仅用于钱包充值的 Checkout Session 创建与核验。
"""

import logging

import stripe

from app.models.schemas import StripeSettings
from app.services.gateway_http import GatewayResult
from app.services.money import to_minor_units

logger = logging.getLogger(__name__)


class StripeClient:
    """基于官方 stripe 库的 Checkout Session 封装，API key 按调用传入。"""

    provider = "stripe"

    def __init__(self, settings: StripeSettings):
        self.settings = settings

    def create_deposit_session(
        self,
        deposit_id: str,
        amount,
        currency: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> GatewayResult:
        """
        创建充值用 Checkout Session。

        client_reference_id 与 metadata.deposit_id 均为充值 ID，
        回跳时据此匹配待处理充值记录。
        """
        params = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(amount),
                    "product_data": {"name": "Wallet deposit"},
                },
                "quantity": 1,
            }],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": deposit_id,
            "metadata": {"deposit_id": deposit_id, "type": "wallet_deposit"},
            "idempotency_key": f"deposit_{deposit_id}",
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(api_key=self.settings.api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe 创建充值会话失败: deposit_id=%s, %s", deposit_id, e)
            return GatewayResult(success=False, error=str(e))

        return GatewayResult(success=True, data={"id": session.id, "url": session.url})

    def retrieve_session(self, session_id: str) -> GatewayResult:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.settings.api_key)
        except stripe.StripeError as e:
            logger.error("Stripe 查询会话失败: session_id=%s, %s", session_id, e)
            return GatewayResult(success=False, error=str(e))

        return GatewayResult(success=True, data={
            "id": session.id,
            "payment_status": session.payment_status,
            "payment_intent": session.payment_intent,
            "client_reference_id": session.client_reference_id,
            "amount_total": session.amount_total,
        })
