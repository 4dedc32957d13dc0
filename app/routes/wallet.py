"""
钱包路由：余额、流水、充值发起与充值回跳、钱包支付。
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from app.services.auth import get_current_user
from app.services.deposit_service import DepositService
from app.services.errors import NotFoundError, PermissionDeniedError, ValidationError
from app.services.money import format_money
from app.services.payment_methods.wallet import pay_order_with_wallet
from app.services.platform_config import load_wallet_settings
from app.services.wallet_service import (
    WalletService,
    format_amount,
    get_site_currency,
    transaction_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/wallet")


class DepositRequest(BaseModel):
    amount: str
    return_url: str = ""


@router.get("")
async def wallet_summary(user_id: int = Depends(get_current_user)):
    """余额与充值设置。"""
    wallet = WalletService()
    try:
        balance_cents = wallet.get_balance_cents(user_id)
    except NotFoundError:
        return JSONResponse(status_code=404, content={"success": False, "message": "用户不存在"})

    settings = load_wallet_settings()
    currency = get_site_currency()
    return JSONResponse(content={
        "success": True,
        "enabled": wallet.is_enabled(),
        "balance": format_money(wallet.get_balance(user_id)),
        "balance_formatted": format_amount(balance_cents, currency),
        "currency": currency,
        "min_deposit": format_money(settings.min_deposit),
        "max_deposit": format_money(settings.max_deposit),
        "preset_amounts": settings.preset_amounts,
    })


@router.get("/transactions")
async def wallet_transactions(
    user_id: int = Depends(get_current_user),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    type: str | None = Query(None),
):
    wallet = WalletService()
    transactions = wallet.get_transactions(
        user_id, limit=page_size, offset=(page - 1) * page_size, transaction_type=type,
    )
    return JSONResponse(content={
        "success": True,
        "total": wallet.get_transaction_count(user_id, transaction_type=type),
        "page": page,
        "page_size": page_size,
        "transactions": [transaction_to_dict(tx) for tx in transactions],
    })


# ── 充值 ──────────────────────────────────────────────────


@router.post("/deposit")
async def create_deposit(body: DepositRequest, user_id: int = Depends(get_current_user)):
    """发起充值，返回渠道收银台地址。"""
    try:
        result = DepositService().initiate(user_id, body.amount, body.return_url)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})
    except NotFoundError as e:
        return JSONResponse(status_code=404, content={"success": False, "message": str(e)})

    if not result["success"]:
        return JSONResponse(status_code=400, content={"success": False, "message": "支付失败，请稍后重试"})
    return JSONResponse(content=result)


@router.get("/deposit/success")
async def deposit_success(request: Request):
    """渠道支付成功回跳：核验后入账，跳回钱包页。"""
    params = dict(request.query_params)
    deposit_id = params.get("deposit_id", "")
    service = DepositService()
    try:
        result = service.complete(deposit_id, params)
    except NotFoundError:
        return RedirectResponse(service.result_redirect(False, "Deposit not found or expired"), status_code=302)
    return RedirectResponse(
        service.result_redirect(result["success"], result["message"], result["return_url"]),
        status_code=302,
    )


@router.get("/deposit/cancel")
async def deposit_cancel(deposit_id: str = ""):
    service = DepositService()
    result = service.cancel(deposit_id)
    return RedirectResponse(
        service.result_redirect(False, result["message"], result["return_url"]),
        status_code=302,
    )


# ── 钱包支付 ──────────────────────────────────────────────


class WalletPayRequest(BaseModel):
    order_id: int


@router.post("/pay")
async def pay_with_wallet(body: WalletPayRequest, user_id: int = Depends(get_current_user)):
    """用钱包余额支付已有的待付款订单。"""
    try:
        result = pay_order_with_wallet(body.order_id, user_id)
    except NotFoundError as e:
        return JSONResponse(status_code=404, content={"success": False, "message": str(e)})
    except PermissionDeniedError as e:
        return JSONResponse(status_code=403, content={"success": False, "message": str(e)})
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})
    return JSONResponse(status_code=200 if result["success"] else 400, content=result)
