"""
商家付款队列：订单完成后立即付款，或按 payout_delay_days 延迟执行。

- 延迟任务写入 payout_jobs 表，(order_id, provider) 唯一，重复排队无副作用
- 后台任务 / 管理接口调用 run_due_jobs() 执行到期任务
- 立即付款与延迟付款都经过 dispatch_order_payout()，以 marketplace.payout_dispatched
  标记做原子占位，同一订单最多付款一次
"""

import logging
import time
from datetime import datetime

from app.database import get_db
from app.models.schemas import Order, OrderStatus, PayPalSettings
from app.services.errors import ProviderApiError
from app.services.marketplace import is_marketplace_order
from app.services.order_service import OrderService
from app.services.paypal_connect import process_order_payout
from app.services.platform_config import load_paypal_settings

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400

PAYOUT_FLAG = "marketplace.payout_dispatched"


def dispatch_order_payout(order_id: int, settings: PayPalSettings | None = None) -> bool:
    """
    幂等付款入口。

    付款前以 marketplace.payout_dispatched 原子占位；PayPal 拒绝或请求异常时
    记录 marketplace.payout_error、释放占位并抛出异常，之后可以重新付款。
    sender_batch_id 按订单固定，重试不会重复付款。

    Returns:
        True 表示本次调用发起了付款且 PayPal 接受；重复调用或非市场订单返回 False。

    Raises:
        ProviderApiError: 占位后付款失败。
    """
    order_service = OrderService()
    order = order_service.get_order(order_id)
    if not order:
        logger.warning("付款任务对应订单不存在: order_id=%d", order_id)
        return False
    if order.status != OrderStatus.COMPLETED.value:
        logger.info("订单未完成，跳过付款: order_id=%d, status=%s", order_id, order.status)
        return False

    settings = settings or load_paypal_settings()
    if not is_marketplace_order(order, settings.marketplace, "paypal"):
        return False

    if not order_service.claim_flag(order_id, PAYOUT_FLAG):
        logger.info("订单已付款，忽略重复触发: order_id=%d", order_id)
        return False

    try:
        result = process_order_payout(order_service.get_order(order_id), settings)
    except Exception as e:
        _record_failure(order_id, str(e))
        raise
    if not result.success:
        _record_failure(order_id, result.error)
        raise ProviderApiError(result.error or "商家付款失败", status_code=result.status_code)
    return True


def _record_failure(order_id: int, error: str | None) -> None:
    """写入付款错误后再释放占位，顺序不能反。"""
    order_service = OrderService()
    order = order_service.get_order(order_id)
    order.set_details("marketplace.payout_error", error)
    order_service.save(order)
    order_service.release_flag(order_id, PAYOUT_FLAG)
    logger.error("商家付款失败，已释放占位: order_id=%d, %s", order_id, error)


def schedule_payout(order_id: int, run_at: int, provider: str = "paypal") -> bool:
    """排队延迟付款，同一订单重复排队返回 False。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        cursor = db.execute(
            """INSERT OR IGNORE INTO payout_jobs
               (order_id, provider, run_at, status, attempts, created_at, updated_at)
               VALUES (?, ?, ?, 'queued', 0, ?, ?)""",
            (order_id, provider, int(run_at), now, now),
        )
        db.commit()
        return cursor.rowcount == 1
    finally:
        db.close()


def trigger_marketplace_payout(order: Order, settings: PayPalSettings) -> str:
    """
    订单完成时调用：根据配置立即付款或排队。

    Returns:
        "dispatched" / "scheduled" / "skipped"。
    """
    marketplace = settings.marketplace
    if not marketplace.auto_payout:
        return "skipped"
    if not is_marketplace_order(order, marketplace, "paypal"):
        return "skipped"

    if marketplace.payout_delay_days > 0:
        run_at = int(time.time()) + marketplace.payout_delay_days * DAY_SECONDS
        if schedule_payout(order.id, run_at):
            order.set_details(
                "marketplace.payout_scheduled_at",
                datetime.fromtimestamp(run_at).strftime("%Y-%m-%d %H:%M:%S"),
            )
            OrderService().save(order)
            logger.info("商家付款已排队: order_id=%d, run_at=%d", order.id, run_at)
        return "scheduled"

    return "dispatched" if dispatch_order_payout(order.id, settings) else "skipped"


def run_due_jobs(now: int | None = None, limit: int = 50) -> int:
    """执行到期的付款任务，返回处理的任务数。"""
    now = int(now if now is not None else time.time())
    db = get_db()
    try:
        jobs = db.execute(
            """SELECT id, order_id, provider FROM payout_jobs
               WHERE status = 'queued' AND run_at <= ?
               ORDER BY run_at LIMIT ?""",
            (now, limit),
        ).fetchall()
    finally:
        db.close()

    processed = 0
    for job in jobs:
        if not _claim_job(job["id"]):
            continue
        try:
            dispatch_order_payout(job["order_id"])
        except Exception as e:
            logger.error("付款任务执行异常: job_id=%d, %s", job["id"], e)
            _finish_job(job["id"], "failed", str(e))
        else:
            _finish_job(job["id"], "done")
        processed += 1
    return processed


def _claim_job(job_id: int) -> bool:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        cursor = db.execute(
            """UPDATE payout_jobs SET status = 'running', attempts = attempts + 1, updated_at = ?
               WHERE id = ? AND status = 'queued'""",
            (now, job_id),
        )
        db.commit()
        return cursor.rowcount == 1
    finally:
        db.close()


def _finish_job(job_id: int, status: str, error: str | None = None) -> None:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            "UPDATE payout_jobs SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
            (status, error, now, job_id),
        )
        db.commit()
    finally:
        db.close()
