"""
管理后台路由：认证（登录 / 修改密码）、渠道与钱包配置、商家付款、钱包调账。
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.database import get_db
from app.services.auth import authenticate, get_current_admin, hash_password, verify_password
from app.services.errors import InsufficientBalanceError, NotFoundError, ValidationError
from app.services.money import format_money
from app.services.paypal_connect import get_payout_logs
from app.services.payout_queue import run_due_jobs
from app.services.platform_config import (
    SECTION_KEYS,
    PlatformConfigError,
    get_section_status,
    save_section,
)
from app.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin")


class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class WalletAdjustRequest(BaseModel):
    amount: str
    description: str = ""


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。

    接收 JSON {username, password}，
    成功返回 {code: 1, token: "..."}，
    失败返回 {code: -1, msg: "..."}。
    """
    try:
        result = authenticate(body.username, body.password)
        return JSONResponse(content=result)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


@router.post("/settings/change-password")
async def change_password_route(
    body: ChangePasswordRequest,
    admin: dict = Depends(get_current_admin),
):
    """修改管理员密码。"""
    username = admin.get("sub")
    if not username:
        return JSONResponse(content={"code": -1, "msg": "无法识别当前用户"})

    db = get_db()
    try:
        row = db.execute(
            "SELECT id, password_hash FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not row:
            return JSONResponse(content={"code": -1, "msg": "用户不存在"})

        if not verify_password(body.old_password, row["password_hash"]):
            return JSONResponse(content={"code": -1, "msg": "原密码错误"})

        if len(body.new_password) < 6:
            return JSONResponse(content={"code": -1, "msg": "新密码长度不能少于6位"})

        db.execute(
            "UPDATE admin SET password_hash = ? WHERE id = ?",
            (hash_password(body.new_password), row["id"]),
        )
        db.commit()
        return JSONResponse(content={"code": 1, "msg": "密码修改成功"})
    finally:
        db.close()


# ── 配置 ──────────────────────────────────────────────────


@router.get("/settings")
async def list_settings(admin: dict = Depends(get_current_admin)):
    """全部配置分区（敏感字段打码）。"""
    return JSONResponse(content={
        "code": 1,
        "data": {section: get_section_status(section) for section in SECTION_KEYS},
    })


@router.get("/settings/{section}")
async def get_settings(section: str, admin: dict = Depends(get_current_admin)):
    if section not in SECTION_KEYS:
        return JSONResponse(status_code=404, content={"code": -1, "msg": f"未知的配置分区: {section}"})
    return JSONResponse(content={"code": 1, "data": get_section_status(section)})


@router.put("/settings/{section}")
async def update_settings(section: str, body: dict, admin: dict = Depends(get_current_admin)):
    """
    更新配置分区。

    敏感字段提交 null 或不提交时保留原值。
    """
    if section not in SECTION_KEYS:
        return JSONResponse(status_code=404, content={"code": -1, "msg": f"未知的配置分区: {section}"})
    try:
        data = save_section(section, body)
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    logger.info("管理员更新配置: admin=%s, section=%s", admin.get("sub"), section)
    return JSONResponse(content={"code": 1, "msg": "保存成功", "data": data})


# ── 商家付款 ──────────────────────────────────────────────


@router.get("/payouts/logs")
async def payout_logs(
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(get_current_admin),
):
    return JSONResponse(content={"code": 1, "data": get_payout_logs(limit)})


@router.post("/payouts/run")
async def run_payouts(admin: dict = Depends(get_current_admin)):
    """立即执行到期的付款任务。"""
    processed = run_due_jobs()
    logger.info("管理员手动执行付款任务: admin=%s, processed=%d", admin.get("sub"), processed)
    return JSONResponse(content={"code": 1, "processed": processed})


# ── 钱包调账 ──────────────────────────────────────────────


@router.post("/wallet/{user_id}/adjust")
async def adjust_wallet(
    user_id: int,
    body: WalletAdjustRequest,
    admin: dict = Depends(get_current_admin),
):
    """按有符号金额调整用户余额并记录流水。"""
    try:
        result = WalletService().adjust(user_id, body.amount, body.description, admin=admin.get("sub"))
    except NotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    except (ValidationError, InsufficientBalanceError, ValueError) as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})

    return JSONResponse(content={
        "code": 1,
        "msg": "调账成功",
        "transaction_id": result["transaction_id"],
        "balance": format_money(result["new_balance"]),
    })
