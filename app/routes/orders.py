"""
结账与订单路由：创建订单并发起支付、查询订单、买家 / 商家订单操作。
"""

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.models.schemas import Order
from app.services.auth import get_current_user
from app.services.errors import PermissionDeniedError, ValidationError
from app.services.money import format_money, to_decimal
from app.services.order_service import OrderService
from app.services.payment_methods.registry import PaymentMethodRegistry, get_payment_method
from app.services.payment_methods.wallet import WalletPayment
from app.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class CheckoutItem(BaseModel):
    label: str
    amount: str
    quantity: int = 1
    description: str | None = None
    vendor_id: int | None = None
    post_author_id: int | None = None
    subscription_unit: str | None = None
    subscription_frequency: int | None = None
    trial_days: int | None = None


class CheckoutRequest(BaseModel):
    payment_method: str
    items: list[CheckoutItem]
    currency: str = "USD"
    wallet_deposit: bool = False


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "payment_method": order.payment_method,
        "status": order.status,
        "currency": order.currency,
        "customer_id": order.customer_id,
        "vendor_id": order.get_vendor_id(),
        "transaction_id": order.transaction_id,
        "total": format_money(order.get_total()),
        "items": [
            {
                "label": item.label,
                "amount": format_money(item.amount),
                "quantity": item.quantity,
                "item_type": item.item_type,
            }
            for item in order.items
        ],
        "created_at": str(order.created_at) if order.created_at else None,
    }


def _load_order(order_id: int) -> Order | None:
    return OrderService().get_order(order_id)


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "message": "订单不存在"})


def _can_view(order: Order, user_id: int) -> bool:
    return user_id in (order.customer_id, order.get_vendor_id())


def _validate_wallet_deposit(body: CheckoutRequest) -> str | None:
    """充值订单：钱包必须可用，金额必须在充值上下限内。返回错误信息。"""
    wallet = WalletService()
    if not wallet.is_enabled():
        return "Wallet feature is not available"
    if body.payment_method == WalletPayment.key:
        return "Wallet deposits cannot be paid with the wallet"
    try:
        total = sum((to_decimal(item.amount) * item.quantity for item in body.items), Decimal("0"))
    except ValueError:
        return "Invalid amount"
    check = wallet.validate_deposit_amount(total)
    return None if check["valid"] else check["error"]


# ── 结账 ──────────────────────────────────────────────────


@router.post("/checkout")
async def checkout(body: CheckoutRequest, user_id: int = Depends(get_current_user)):
    """创建订单并发起支付，成功返回渠道收银台地址。"""
    if body.payment_method not in PaymentMethodRegistry.available():
        return JSONResponse(status_code=400, content={"success": False, "message": "未知的支付方式"})

    items = [item.model_dump() for item in body.items]
    details = None
    if body.wallet_deposit:
        error = _validate_wallet_deposit(body)
        if error:
            return JSONResponse(status_code=400, content={"success": False, "message": error})
        for item in items:
            item["item_type"] = "deposit"
        details = {"wallet": {"is_deposit": True}}

    try:
        order = OrderService().create_order(
            user_id, body.payment_method, items, currency=body.currency, details=details,
        )
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})

    result = get_payment_method(order).process_payment()
    result["order_id"] = order.id
    if not result.get("success"):
        # debug 只写日志，不返回给买家
        logger.warning("结账失败: order_id=%d, debug=%s", order.id, result.get("debug"))
        result.pop("debug", None)
        return JSONResponse(status_code=400, content=result)
    return JSONResponse(content=result)


# ── 订单 ──────────────────────────────────────────────────


@router.get("/orders/{order_id}")
async def get_order(order_id: int, user_id: int = Depends(get_current_user)):
    """查询订单；尚未同步过渠道状态时先同步一次。"""
    order = _load_order(order_id)
    if order is None or not _can_view(order, user_id):
        return _not_found()

    method = get_payment_method(order)
    if method.should_sync():
        try:
            method.sync()
        except Exception as e:
            logger.error("订单同步失败: order_id=%d, %s", order_id, e)
    return JSONResponse(content={"success": True, "order": order_to_dict(method.order)})


@router.get("/orders/{order_id}/actions")
async def list_actions(order_id: int, user_id: int = Depends(get_current_user)):
    order = _load_order(order_id)
    if order is None or not _can_view(order, user_id):
        return _not_found()
    actions = get_payment_method(order).get_actions_for(user_id)
    return JSONResponse(content={"success": True, "actions": [a.to_dict() for a in actions]})


@router.post("/orders/{order_id}/actions/{action}")
async def run_action(order_id: int, action: str, user_id: int = Depends(get_current_user)):
    order = _load_order(order_id)
    if order is None or not _can_view(order, user_id):
        return _not_found()

    method = get_payment_method(order)
    try:
        result = method.run_action(action, user_id)
    except PermissionDeniedError as e:
        return JSONResponse(status_code=403, content={"success": False, "message": str(e)})
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})

    result.pop("debug", None)
    result["order"] = order_to_dict(method.order)
    return JSONResponse(status_code=200 if result.get("success") else 400, content=result)
