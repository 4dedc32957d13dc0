"""
渠道 Webhook 路由：POST /v1/webhooks/{provider}

读取原始请求体交给对应渠道的处理器验签与分发。
验签失败 / 请求体非法返回 400 让渠道重发；找不到订单等业务空操作返回 200。
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.services.errors import SignatureVerificationError, ValidationError
from app.services.webhooks.mercadopago import MercadoPagoWebhookProcessor
from app.services.webhooks.paypal import PayPalWebhookProcessor
from app.services.webhooks.paystack import PaystackWebhookProcessor
from app.services.webhooks.square import SquareWebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks")

PROCESSORS = {
    "paypal": PayPalWebhookProcessor,
    "mercadopago": MercadoPagoWebhookProcessor,
    "paystack": PaystackWebhookProcessor,
    "square": SquareWebhookProcessor,
}


def _fail(error: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@router.post("/{provider}")
async def receive_webhook(provider: str, request: Request):
    processor_class = PROCESSORS.get(provider)
    if processor_class is None:
        return _fail("Unknown provider", status_code=404)

    body = await request.body()
    try:
        processor = processor_class()
        processor.process(request.headers, body, dict(request.query_params))
    except SignatureVerificationError:
        return _fail("Invalid signature")
    except ValidationError as e:
        return _fail(str(e))
    except Exception as e:
        # 处理异常也返回 4xx，渠道会按自身策略重发
        logger.exception("%s webhook 处理异常: %s", provider, e)
        return _fail("Webhook processing failed")

    return JSONResponse(content={"success": True})
