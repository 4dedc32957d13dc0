"""
Transient 存储：带过期时间的键值记录（SQLite transients 表）。

用于短期跨请求状态：PayPal OAuth 令牌缓存、待处理充值记录、OAuth state。
过期记录在读取时视为不存在，并由后台任务定期清理。
"""

import json
import logging
import time

from app.database import get_db

logger = logging.getLogger(__name__)


def set_transient(key: str, value, ttl: int) -> None:
    """写入（或覆盖）一条 transient，ttl 单位为秒。"""
    expires_at = int(time.time()) + int(ttl)
    db = get_db()
    try:
        db.execute(
            """INSERT INTO transients (transient_key, value, expires_at)
               VALUES (?, ?, ?)
               ON CONFLICT(transient_key) DO UPDATE SET
                   value = excluded.value,
                   expires_at = excluded.expires_at""",
            (key, json.dumps(value, ensure_ascii=False, default=str), expires_at),
        )
        db.commit()
    finally:
        db.close()


def get_transient(key: str):
    """读取 transient，不存在或已过期返回 None。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT value, expires_at FROM transients WHERE transient_key = ?",
            (key,),
        ).fetchone()
    finally:
        db.close()

    if not row:
        return None
    if row["expires_at"] <= int(time.time()):
        delete_transient(key)
        return None
    return json.loads(row["value"])


def delete_transient(key: str) -> bool:
    db = get_db()
    try:
        cursor = db.execute("DELETE FROM transients WHERE transient_key = ?", (key,))
        db.commit()
        return cursor.rowcount > 0
    finally:
        db.close()


def update_transient(key: str, value) -> bool:
    """更新值但保留原过期时间；记录不存在或已过期返回 False。"""
    db = get_db()
    try:
        cursor = db.execute(
            "UPDATE transients SET value = ? WHERE transient_key = ? AND expires_at > ?",
            (json.dumps(value, ensure_ascii=False, default=str), key, int(time.time())),
        )
        db.commit()
        return cursor.rowcount > 0
    finally:
        db.close()


def purge_expired() -> int:
    """删除所有已过期的 transient，返回删除条数。"""
    db = get_db()
    try:
        cursor = db.execute(
            "DELETE FROM transients WHERE expires_at <= ?", (int(time.time()),)
        )
        db.commit()
        if cursor.rowcount:
            logger.info("已清理过期 transient %d 条", cursor.rowcount)
        return cursor.rowcount
    finally:
        db.close()


def claim_flag(key: str, flag: str) -> bool:
    """
    原子地把 JSON 值中的布尔字段 flag 由假置为真。

    Returns:
        True 表示本次调用完成占位；记录不存在、已过期或已被占位返回 False。
    """
    path = f"$.{flag}"
    db = get_db()
    try:
        cursor = db.execute(
            """UPDATE transients
               SET value = json_set(value, ?, json('true'))
               WHERE transient_key = ? AND expires_at > ?
                 AND COALESCE(json_extract(value, ?), 0) = 0""",
            (path, key, int(time.time()), path),
        )
        db.commit()
        return cursor.rowcount == 1
    finally:
        db.close()


def release_flag(key: str, flag: str) -> None:
    db = get_db()
    try:
        db.execute(
            "UPDATE transients SET value = json_set(value, ?, json('false')) WHERE transient_key = ?",
            (f"$.{flag}", key),
        )
        db.commit()
    finally:
        db.close()
