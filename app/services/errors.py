"""
支付相关异常定义。

- AuthenticationError: 凭证缺失或无效，不重试
- ProviderApiError: 渠道返回非 2xx，详细信息仅写日志
- SignatureVerificationError: Webhook 验签失败，由渠道自行重发
- ValidationError: 金额/邮箱/必填字段不合法，在发起网络请求前拒绝
- InsufficientBalanceError: 钱包余额不足
- NotFoundError: 订单/商家/充值记录不存在
- PermissionDeniedError: 非订单买家 / 商家执行订单操作
"""


class PaymentError(Exception):
    """支付模块异常基类。"""
    pass


class AuthenticationError(PaymentError):
    """渠道凭证缺失或无效。"""
    pass


class ProviderApiError(PaymentError):
    """渠道 API 返回错误。"""

    def __init__(self, message: str, status_code: int | None = None, details=None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class SignatureVerificationError(PaymentError):
    """Webhook 签名校验失败。"""
    pass


class ValidationError(PaymentError):
    """参数校验失败。"""
    pass


class InsufficientBalanceError(PaymentError):
    """钱包余额不足。"""
    pass


class NotFoundError(PaymentError):
    """查找的资源不存在。"""
    pass


class PermissionDeniedError(PaymentError):
    """操作者无权执行该订单操作。"""
    pass
