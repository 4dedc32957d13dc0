"""
Paystack API 客户端。

Paystack 响应统一为 {"status": bool, "message": str, "data": ...}，
HTTP 2xx 且 status 为真才算成功；成功时 GatewayResult.data 为内层 data。
金额使用最小货币单位（kobo / pesewa / cent）。
"""

import logging
import secrets
from decimal import Decimal

from app.models.schemas import PaystackSettings
from app.services.errors import AuthenticationError
from app.services.gateway_http import GatewayHttpClient, GatewayResult
from app.services.money import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)

API_URL = "https://api.paystack.co"

SUPPORTED_CURRENCIES = ("NGN", "GHS", "ZAR", "USD", "KES")

# 订阅周期 → Paystack 计划 interval
_MONTH_INTERVALS = {1: "monthly", 3: "quarterly", 6: "biannually", 12: "annually"}


def map_interval(unit: str | None, frequency: int | None = 1) -> str | None:
    """
    把订阅周期映射为 Paystack 的 interval。

    hour → hourly, day → daily, week → weekly,
    month × 1/3/6/12 → monthly/quarterly/biannually/annually（其他月数按 monthly），
    year → annually；无法映射返回 None。
    """
    unit = (unit or "").lower()
    frequency = int(frequency or 1)
    if unit == "hour":
        return "hourly"
    if unit == "day":
        return "daily"
    if unit == "week":
        return "weekly"
    if unit == "month":
        return _MONTH_INTERVALS.get(frequency, "monthly")
    if unit == "year":
        return "annually"
    return None


def generate_reference(prefix: str = "vxl") -> str:
    """生成交易参考号：{prefix}_{24 位十六进制}。"""
    return f"{prefix}_{secrets.token_hex(12)}"


class PaystackClient(GatewayHttpClient):
    """Paystack 客户端，Bearer secret key 鉴权。"""

    provider = "paystack"

    def __init__(self, settings: PaystackSettings):
        self.settings = settings

    def base_url(self) -> str:
        return API_URL

    def _auth_headers(self, auth_token: str | None = None) -> dict:
        key = auth_token or self.settings.secret_key
        if not key:
            raise AuthenticationError("Paystack secret key 未配置")
        return {"Authorization": f"Bearer {key}"}

    def _is_success(self, status_code: int, body) -> bool:
        return 200 <= status_code < 300 and isinstance(body, dict) and bool(body.get("status"))

    def _unwrap(self, body):
        return body.get("data")

    def _extract_error(self, body, status_code: int) -> str:
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {status_code}"

    # ── 交易 ──────────────────────────────────────────────

    def initialize_transaction(self, data: dict) -> GatewayResult:
        return self.request("/transaction/initialize", "POST", data)

    def verify_transaction(self, reference: str) -> GatewayResult:
        return self.request(f"/transaction/verify/{reference}")

    def charge_authorization(self, data: dict) -> GatewayResult:
        return self.request("/transaction/charge_authorization", "POST", data)

    def create_refund(self, transaction_reference: str, amount: Decimal | None = None) -> GatewayResult:
        """退款；amount 为空时全额退款。"""
        body: dict = {"transaction": transaction_reference}
        if amount is not None:
            body["amount"] = self.to_paystack_amount(amount)
        return self.request("/refund", "POST", body)

    # ── 计划 / 订阅 ───────────────────────────────────────

    def create_plan(self, name: str, amount, interval: str, currency: str | None = None) -> GatewayResult:
        return self.request("/plan", "POST", {
            "name": name,
            "amount": self.to_paystack_amount(amount),
            "interval": interval,
            "currency": currency or self.settings.currency,
        })

    def get_plan(self, plan_code: str) -> GatewayResult:
        return self.request(f"/plan/{plan_code}")

    def create_subscription(self, customer: str, plan_code: str, start_date: str | None = None) -> GatewayResult:
        body = {"customer": customer, "plan": plan_code}
        if start_date:
            body["start_date"] = start_date
        return self.request("/subscription", "POST", body)

    def get_subscription(self, subscription_code: str) -> GatewayResult:
        return self.request(f"/subscription/{subscription_code}")

    def enable_subscription(self, subscription_code: str, email_token: str) -> GatewayResult:
        return self.request("/subscription/enable", "POST", {"code": subscription_code, "token": email_token})

    def disable_subscription(self, subscription_code: str, email_token: str) -> GatewayResult:
        return self.request("/subscription/disable", "POST", {"code": subscription_code, "token": email_token})

    # ── 子账户 / 银行 ─────────────────────────────────────

    def create_subaccount(self, data: dict) -> GatewayResult:
        return self.request("/subaccount", "POST", data)

    def update_subaccount(self, subaccount_code: str, data: dict) -> GatewayResult:
        return self.request(f"/subaccount/{subaccount_code}", "PUT", data)

    def list_banks(self, country: str = "nigeria") -> GatewayResult:
        return self.request("/bank", params={"country": country, "perPage": 100})

    def resolve_account(self, account_number: str, bank_code: str) -> GatewayResult:
        return self.request(
            "/bank/resolve", params={"account_number": account_number, "bank_code": bank_code},
        )

    # ── 金额 ──────────────────────────────────────────────

    @staticmethod
    def to_paystack_amount(amount) -> int:
        return to_minor_units(amount)

    @staticmethod
    def from_paystack_amount(value) -> Decimal:
        return from_minor_units(value)
