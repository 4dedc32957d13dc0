"""
商家收款连接存储：每个 (商家, 渠道) 一条记录，凭证以 Fernet 加密 JSON 保存。

各渠道的主凭证字段非空即视为已连接：
PayPal → email，Mercado Pago → access_token，Paystack → subaccount_code。
"""

import logging
from datetime import datetime

from cryptography.fernet import InvalidToken

from app.database import get_db
from app.services.platform_config import decrypt_json, encrypt_json

logger = logging.getLogger(__name__)

PRIMARY_FIELDS = {
    "paypal": "email",
    "mercadopago": "access_token",
    "paystack": "subaccount_code",
}


def get_connection(vendor_id: int, provider: str) -> dict | None:
    """读取并解密商家凭证，不存在返回 None。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT credentials FROM vendor_connections WHERE vendor_id = ? AND provider = ?",
            (vendor_id, provider),
        ).fetchone()
    finally:
        db.close()
    if not row:
        return None
    try:
        return decrypt_json(row["credentials"])
    except InvalidToken:
        logger.error("商家凭证解密失败: vendor_id=%s, provider=%s", vendor_id, provider)
        return None


def save_connection(vendor_id: int, provider: str, credentials: dict) -> None:
    """写入（或覆盖）商家凭证。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO vendor_connections (vendor_id, provider, credentials, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(vendor_id, provider) DO UPDATE SET
                   credentials = excluded.credentials,
                   updated_at = excluded.updated_at""",
            (vendor_id, provider, encrypt_json(credentials), now, now),
        )
        db.commit()
    finally:
        db.close()
    logger.info("商家连接已保存: vendor_id=%s, provider=%s", vendor_id, provider)


def delete_connection(vendor_id: int, provider: str) -> bool:
    db = get_db()
    try:
        cursor = db.execute(
            "DELETE FROM vendor_connections WHERE vendor_id = ? AND provider = ?",
            (vendor_id, provider),
        )
        db.commit()
    finally:
        db.close()
    if cursor.rowcount:
        logger.info("商家连接已断开: vendor_id=%s, provider=%s", vendor_id, provider)
    return cursor.rowcount > 0


def is_connected(vendor_id: int | None, provider: str) -> bool:
    if not vendor_id:
        return False
    creds = get_connection(vendor_id, provider)
    return bool(creds and creds.get(PRIMARY_FIELDS[provider]))
