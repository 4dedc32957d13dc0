"""
渠道回跳路由：GET /v1/return/{provider}/{kind}?order_id=...

kind 取自支付方式生成回跳地址时使用的 RETURN_KINDS，由支付方式重新拉取
渠道状态后给出跳转地址。
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse

from app.services.order_service import OrderService
from app.services.payment_methods.base import RETURN_KINDS
from app.services.payment_methods.registry import get_payment_method
from app.services.platform_config import get_public_base_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/return")


def _error_redirect(error: str) -> RedirectResponse:
    return RedirectResponse(f"{get_public_base_url()}/orders?{urlencode({'error': error})}", status_code=302)


@router.get("/{provider}/{kind}")
async def provider_return(provider: str, kind: str, request: Request):
    params = dict(request.query_params)
    if kind not in RETURN_KINDS:
        return _error_redirect("invalid_return")

    try:
        order_id = int(params.get("order_id") or 0)
    except ValueError:
        order_id = 0
    order = OrderService().get_order(order_id) if order_id else None
    if order is None or not order.payment_method.startswith(f"{provider}_"):
        logger.warning("回跳订单不存在: provider=%s, order_id=%s", provider, params.get("order_id"))
        return _error_redirect("order_not_found")

    method = get_payment_method(order)
    try:
        target = method.handle_return(kind, params)
    except Exception as e:
        logger.error("回跳处理失败: order_id=%d, kind=%s, %s", order.id, kind, e)
        target = method.failure_url()
    return RedirectResponse(target, status_code=302)
