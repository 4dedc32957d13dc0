"""
商家收款连接路由：PayPal 收款邮箱、Mercado Pago OAuth、Paystack 子账户。
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from app.services.auth import get_current_user
from app.services.errors import AuthenticationError, NotFoundError, PaymentError, ValidationError
from app.services.mercadopago_connect import MercadoPagoConnect
from app.services.paypal_connect import get_vendor_email, set_vendor_email
from app.services.paystack_connect import PaystackConnect
from app.services.platform_config import (
    get_public_base_url,
    load_mercadopago_settings,
    load_paystack_settings,
)
from app.services.vendor_connections import get_connection

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/connect")


class PayPalEmailRequest(BaseModel):
    email: str


class ResolveAccountRequest(BaseModel):
    account_number: str
    bank_code: str


class SubaccountRequest(BaseModel):
    account_number: str
    bank_code: str
    business_name: str | None = None


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


# ── PayPal ────────────────────────────────────────────────


@router.get("/paypal")
async def paypal_status(user_id: int = Depends(get_current_user)):
    saved = (get_connection(user_id, "paypal") or {}).get("email")
    return JSONResponse(content={
        "success": True,
        "connected": bool(saved),
        "email": saved or get_vendor_email(user_id),
    })


@router.put("/paypal")
async def paypal_save_email(body: PayPalEmailRequest, user_id: int = Depends(get_current_user)):
    try:
        set_vendor_email(user_id, body.email)
    except ValidationError as e:
        return _error(str(e))
    return JSONResponse(content={"success": True, "email": body.email.strip()})


# ── Mercado Pago ──────────────────────────────────────────


def _mercadopago_redirect_uri() -> str:
    return f"{get_public_base_url()}/v1/connect/mercadopago/callback"


def _vendor_settings_redirect(result: str, message: str = "") -> RedirectResponse:
    query = {"mp_connect": result}
    if message:
        query["message"] = message
    return RedirectResponse(f"{get_public_base_url()}/vendor/settings?{urlencode(query)}", status_code=302)


@router.get("/mercadopago/start")
async def mercadopago_start(user_id: int = Depends(get_current_user)):
    """返回 Mercado Pago 授权地址。"""
    try:
        url = MercadoPagoConnect(load_mercadopago_settings()).get_authorization_url(
            user_id, _mercadopago_redirect_uri(),
        )
    except AuthenticationError as e:
        return _error(str(e))
    return JSONResponse(content={"success": True, "authorization_url": url})


@router.get("/mercadopago/callback")
async def mercadopago_callback(
    code: str = Query(""),
    state: str = Query(""),
    user_id: int = Depends(get_current_user),
):
    try:
        MercadoPagoConnect(load_mercadopago_settings()).handle_callback(
            user_id, code, state, _mercadopago_redirect_uri(),
        )
    except (ValidationError, AuthenticationError) as e:
        logger.warning("Mercado Pago 授权回调失败: vendor_id=%d, %s", user_id, e)
        return _vendor_settings_redirect("failed", str(e))
    return _vendor_settings_redirect("success")


@router.get("/mercadopago")
async def mercadopago_status(user_id: int = Depends(get_current_user)):
    creds = get_connection(user_id, "mercadopago") or {}
    return JSONResponse(content={
        "success": True,
        "connected": bool(creds.get("access_token")),
        "mp_user_id": creds.get("mp_user_id"),
    })


@router.delete("/mercadopago")
async def mercadopago_disconnect(user_id: int = Depends(get_current_user)):
    removed = MercadoPagoConnect(load_mercadopago_settings()).disconnect(user_id)
    return JSONResponse(content={"success": True, "disconnected": removed})


# ── Paystack ──────────────────────────────────────────────


@router.get("/paystack/banks")
async def paystack_banks(country: str = Query("nigeria"), user_id: int = Depends(get_current_user)):
    try:
        banks = PaystackConnect(load_paystack_settings()).list_banks(country)
    except PaymentError as e:
        logger.error("Paystack 银行列表获取失败: %s", e)
        return _error("获取银行列表失败")
    return JSONResponse(content={"success": True, "banks": banks})


@router.post("/paystack/resolve")
async def paystack_resolve(body: ResolveAccountRequest, user_id: int = Depends(get_current_user)):
    try:
        resolved = PaystackConnect(load_paystack_settings()).resolve_account(body.account_number, body.bank_code)
    except ValidationError as e:
        return _error(str(e))
    except PaymentError as e:
        logger.warning("Paystack 账户核验失败: vendor_id=%d, %s", user_id, e)
        return _error("银行账户核验失败")
    return JSONResponse(content={"success": True, "account_name": resolved.get("account_name")})


@router.get("/paystack")
async def paystack_status(user_id: int = Depends(get_current_user)):
    info = PaystackConnect(load_paystack_settings()).get_bank_info(user_id)
    return JSONResponse(content={"success": True, **info})


@router.post("/paystack/subaccount")
async def paystack_subaccount(body: SubaccountRequest, user_id: int = Depends(get_current_user)):
    connect = PaystackConnect(load_paystack_settings())
    try:
        connect.create_subaccount(user_id, body.bank_code, body.account_number, body.business_name)
    except ValidationError as e:
        return _error(str(e))
    except NotFoundError as e:
        return _error(str(e), status_code=404)
    except PaymentError as e:
        logger.error("Paystack 子账户创建失败: vendor_id=%d, %s", user_id, e)
        return _error("子账户创建失败")
    return JSONResponse(content={"success": True, **connect.get_bank_info(user_id)})


@router.delete("/paystack")
async def paystack_disconnect(user_id: int = Depends(get_current_user)):
    removed = PaystackConnect(load_paystack_settings()).disconnect(user_id)
    return JSONResponse(content={"success": True, "disconnected": removed})
