"""
进程内事件分发：钱包入账/扣款、订单审核等事件在数据库提交后触发。

监听器异常只记录日志，不影响已提交的业务操作。
"""

import logging
from collections import defaultdict
from typing import Callable

logger = logging.getLogger(__name__)

WALLET_CREDITED = "wallet.credited"
WALLET_DEBITED = "wallet.debited"
ORDER_VENDOR_APPROVED = "order.vendor_approved"
ORDER_VENDOR_DECLINED = "order.vendor_declined"
ORDER_CUSTOMER_CANCELED = "order.customer_canceled"
ORDER_CUSTOMER_COMPLETED = "order.customer_completed"

_listeners: dict[str, list[Callable[..., None]]] = defaultdict(list)


def subscribe(event: str, listener: Callable[..., None]) -> None:
    _listeners[event].append(listener)


def unsubscribe(event: str, listener: Callable[..., None]) -> None:
    if listener in _listeners.get(event, []):
        _listeners[event].remove(listener)


def dispatch(event: str, **payload) -> None:
    """依次调用事件监听器。"""
    logger.info("事件触发: %s %s", event, payload)
    for listener in list(_listeners.get(event, [])):
        try:
            listener(**payload)
        except Exception as e:
            logger.error("事件监听器异常 (event=%s): %s", event, e)
