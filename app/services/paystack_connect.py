"""
Paystack 商家子账户：银行列表、账户核验、创建子账户并保存 subaccount_code。

收款时通过 subaccount + transaction_charge + bearer 在 Paystack 侧直接分账。
"""

import logging

from app.models.schemas import PaystackSettings
from app.services.errors import NotFoundError, ProviderApiError, ValidationError
from app.services.marketplace import percentage_fee_value
from app.services.paystack_client import PaystackClient
from app.services.user_service import UserService
from app.services.vendor_connections import delete_connection, get_connection, save_connection

logger = logging.getLogger(__name__)

SUPPORTED_COUNTRIES = {
    "NG": {"name": "Nigeria", "code": "nigeria", "currency": "NGN"},
    "GH": {"name": "Ghana", "code": "ghana", "currency": "GHS"},
    "ZA": {"name": "South Africa", "code": "south-africa", "currency": "ZAR"},
    "KE": {"name": "Kenya", "code": "kenya", "currency": "KES"},
}


class PaystackConnect:
    """商家 Paystack 子账户管理。"""

    def __init__(self, settings: PaystackSettings, client: PaystackClient | None = None):
        self.settings = settings
        self.client = client or PaystackClient(settings)

    def list_banks(self, country: str = "nigeria") -> list[dict]:
        """
        Raises:
            ProviderApiError: Paystack 请求失败。
        """
        result = self.client.list_banks(country).raise_for_error()
        return [
            {"name": bank.get("name"), "code": bank.get("code")}
            for bank in result.data or []
        ]

    def resolve_account(self, account_number: str, bank_code: str) -> dict:
        if not account_number or not bank_code:
            raise ValidationError("账号和银行代码不能为空")
        result = self.client.resolve_account(account_number, bank_code).raise_for_error()
        return result.data or {}

    def create_subaccount(
        self, vendor_id: int, bank_code: str, account_number: str, business_name: str | None = None,
    ) -> dict:
        """
        核验银行账户后创建子账户并保存连接。

        Raises:
            NotFoundError: 商家不存在。
            ValidationError: 银行信息缺失。
            ProviderApiError: 核验或创建失败。
        """
        vendor = UserService().get_user(vendor_id)
        if not vendor:
            raise NotFoundError(f"商家 id={vendor_id} 不存在")

        resolved = self.resolve_account(account_number, bank_code)
        name = business_name or vendor.display_name or vendor.email

        result = self.client.create_subaccount({
            "business_name": name,
            "bank_code": bank_code,
            "account_number": account_number,
            "percentage_charge": float(percentage_fee_value(self.settings.marketplace)),
            "primary_contact_email": vendor.email,
            "primary_contact_name": vendor.display_name or vendor.email,
            "metadata": {"vendor_id": vendor_id},
        }).raise_for_error()

        subaccount_code = (result.data or {}).get("subaccount_code")
        if not subaccount_code:
            raise ProviderApiError("Paystack 未返回子账户代码", details=result.data)

        creds = {
            "subaccount_code": subaccount_code,
            "bank_code": bank_code,
            "account_number": account_number,
            "account_name": resolved.get("account_name", ""),
            "business_name": name,
        }
        save_connection(vendor_id, "paystack", creds)
        logger.info("Paystack 子账户已创建: vendor_id=%d, subaccount=%s", vendor_id, subaccount_code)
        return creds

    def get_subaccount_code(self, vendor_id: int) -> str | None:
        creds = get_connection(vendor_id, "paystack") or {}
        return creds.get("subaccount_code") or None

    def get_bank_info(self, vendor_id: int) -> dict:
        """商家银行信息（账号打码）。"""
        creds = get_connection(vendor_id, "paystack") or {}
        account_number = creds.get("account_number") or ""
        return {
            "connected": bool(creds.get("subaccount_code")),
            "business_name": creds.get("business_name"),
            "account_name": creds.get("account_name"),
            "account_number": ("****" + account_number[-4:]) if account_number else None,
            "bank_code": creds.get("bank_code"),
        }

    def disconnect(self, vendor_id: int) -> bool:
        return delete_connection(vendor_id, "paystack")
