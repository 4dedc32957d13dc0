"""商家收款连接单元测试：Mercado Pago OAuth、Paystack 子账户、凭证存储。"""

import time
from decimal import Decimal
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from app.database import get_db
from app.models.schemas import MarketplaceSettings, MercadoPagoSettings, PaystackSettings
from app.services.errors import AuthenticationError, NotFoundError, ProviderApiError, ValidationError
from app.services.gateway_http import GatewayResult
from app.services.mercadopago_connect import MercadoPagoConnect
from app.services.paystack_connect import PaystackConnect
from app.services.vendor_connections import (
    delete_connection,
    get_connection,
    is_connected,
    save_connection,
)


# ── 凭证存储 ──


class TestVendorConnections:
    def test_credentials_encrypted(self, make_user):
        vendor = make_user()
        save_connection(vendor.id, "mercadopago", {"access_token": "APP_USR-secret"})
        db = get_db()
        try:
            raw = db.execute("SELECT credentials FROM vendor_connections").fetchone()["credentials"]
        finally:
            db.close()
        assert "APP_USR-secret" not in raw
        assert get_connection(vendor.id, "mercadopago") == {"access_token": "APP_USR-secret"}

    def test_overwrite_and_delete(self, make_user):
        vendor = make_user()
        save_connection(vendor.id, "paystack", {"subaccount_code": "ACCT_1"})
        save_connection(vendor.id, "paystack", {"subaccount_code": "ACCT_2"})
        assert get_connection(vendor.id, "paystack")["subaccount_code"] == "ACCT_2"
        assert is_connected(vendor.id, "paystack")
        assert delete_connection(vendor.id, "paystack")
        assert not delete_connection(vendor.id, "paystack")
        assert get_connection(vendor.id, "paystack") is None

    def test_is_connected_needs_primary_field(self, make_user):
        vendor = make_user()
        save_connection(vendor.id, "mercadopago", {"refresh_token": "r"})
        assert not is_connected(vendor.id, "mercadopago")
        assert not is_connected(None, "paypal")


# ── Mercado Pago OAuth ──


def _mp_settings(**kwargs) -> MercadoPagoSettings:
    return MercadoPagoSettings(enabled=True, access_token="platform", client_id="APP-1",
                               client_secret="shh", **kwargs)


class TestMercadoPagoConnect:
    REDIRECT = "https://shop.example.com/v1/connect/mercadopago/callback"

    def test_authorization_url(self, make_user):
        vendor = make_user()
        url = MercadoPagoConnect(_mp_settings()).get_authorization_url(vendor.id, self.REDIRECT)
        assert url.startswith("https://auth.mercadopago.com/authorization?")
        query = parse_qs(urlparse(url).query)
        assert query["client_id"] == ["APP-1"]
        assert query["redirect_uri"] == [self.REDIRECT]
        assert query["state"][0]

    def test_authorization_requires_client_id(self, make_user):
        settings = MercadoPagoSettings(enabled=True, access_token="platform")
        with pytest.raises(AuthenticationError):
            MercadoPagoConnect(settings).get_authorization_url(make_user().id, self.REDIRECT)

    def test_callback_stores_tokens(self, make_user):
        vendor = make_user()
        client = MagicMock()
        client.get_oauth_url.side_effect = lambda state, uri: f"https://auth/?state={state}"
        client.exchange_code.return_value = GatewayResult(success=True, data={
            "access_token": "APP_USR-vendor", "refresh_token": "TG-1", "expires_in": 7200,
            "user_id": 123456, "public_key": "APP_USR-pk",
        })
        connect = MercadoPagoConnect(_mp_settings(), client=client)
        state = connect.get_authorization_url(vendor.id, self.REDIRECT).split("state=")[1]

        creds = connect.handle_callback(vendor.id, "CODE", state, self.REDIRECT)
        assert creds["mp_user_id"] == "123456"
        client.exchange_code.assert_called_once_with("CODE", self.REDIRECT)
        stored = get_connection(vendor.id, "mercadopago")
        assert stored["access_token"] == "APP_USR-vendor"
        assert stored["expires_at"] > int(time.time())

        # state 只能使用一次
        with pytest.raises(ValidationError):
            connect.handle_callback(vendor.id, "CODE", state, self.REDIRECT)

    def test_callback_bad_state(self, make_user):
        vendor = make_user()
        connect = MercadoPagoConnect(_mp_settings(), client=MagicMock())
        connect.get_authorization_url(vendor.id, self.REDIRECT)
        with pytest.raises(ValidationError):
            connect.handle_callback(vendor.id, "CODE", "forged", self.REDIRECT)
        with pytest.raises(ValidationError):
            connect.handle_callback(vendor.id, "", "forged", self.REDIRECT)

    def test_exchange_failure(self, make_user):
        vendor = make_user()
        client = MagicMock()
        client.get_oauth_url.side_effect = lambda state, uri: f"https://auth/?state={state}"
        client.exchange_code.return_value = GatewayResult(success=False, error="invalid_grant")
        connect = MercadoPagoConnect(_mp_settings(), client=client)
        state = connect.get_authorization_url(vendor.id, self.REDIRECT).split("state=")[1]
        with pytest.raises(AuthenticationError):
            connect.handle_callback(vendor.id, "CODE", state, self.REDIRECT)
        assert get_connection(vendor.id, "mercadopago") is None

    def test_token_refreshed_near_expiry(self, make_user):
        vendor = make_user()
        save_connection(vendor.id, "mercadopago", {
            "access_token": "old", "refresh_token": "TG-1", "expires_at": int(time.time()) + 60,
            "mp_user_id": "42",
        })
        client = MagicMock()
        client.refresh_token.return_value = GatewayResult(success=True, data={"access_token": "new"})
        assert MercadoPagoConnect(_mp_settings(), client=client).get_vendor_access_token(vendor.id) == "new"
        stored = get_connection(vendor.id, "mercadopago")
        assert stored["refresh_token"] == "TG-1"
        assert stored["mp_user_id"] == "42"

    def test_refresh_failure_keeps_old_token(self, make_user):
        vendor = make_user()
        save_connection(vendor.id, "mercadopago", {
            "access_token": "old", "refresh_token": "TG-1", "expires_at": int(time.time()) + 60,
        })
        client = MagicMock()
        client.refresh_token.return_value = GatewayResult(success=False, error="expired")
        assert MercadoPagoConnect(_mp_settings(), client=client).get_vendor_access_token(vendor.id) == "old"

    def test_fresh_token_not_refreshed(self, make_user):
        vendor = make_user()
        save_connection(vendor.id, "mercadopago", {
            "access_token": "tok", "refresh_token": "TG-1", "expires_at": int(time.time()) + 86400,
        })
        client = MagicMock()
        connect = MercadoPagoConnect(_mp_settings(), client=client)
        assert connect.get_vendor_access_token(vendor.id) == "tok"
        client.refresh_token.assert_not_called()
        assert connect.disconnect(vendor.id)
        assert connect.get_vendor_access_token(vendor.id) is None


# ── Paystack 子账户 ──


def _ps_settings() -> PaystackSettings:
    return PaystackSettings(enabled=True, secret_key="sk_test", marketplace=MarketplaceSettings(
        enabled=True, fee_type="percentage", fee_value=Decimal("7.5"),
    ))


class TestPaystackConnect:
    def test_list_banks(self):
        client = MagicMock()
        client.list_banks.return_value = GatewayResult(success=True, data=[
            {"name": "Access Bank", "code": "044", "id": 1},
        ])
        assert PaystackConnect(_ps_settings(), client=client).list_banks("ghana") == [
            {"name": "Access Bank", "code": "044"},
        ]
        client.list_banks.assert_called_once_with("ghana")

    def test_list_banks_error(self):
        client = MagicMock()
        client.list_banks.return_value = GatewayResult(success=False, error="down", status_code=500)
        with pytest.raises(ProviderApiError):
            PaystackConnect(_ps_settings(), client=client).list_banks()

    def test_create_subaccount(self, make_user):
        vendor = make_user(email="shop@example.com", display_name="Ada's Shop")
        client = MagicMock()
        client.resolve_account.return_value = GatewayResult(success=True, data={"account_name": "ADA LOVELACE"})
        client.create_subaccount.return_value = GatewayResult(success=True, data={"subaccount_code": "ACCT_x"})
        connect = PaystackConnect(_ps_settings(), client=client)

        creds = connect.create_subaccount(vendor.id, "044", "0123456789")
        assert creds["subaccount_code"] == "ACCT_x"
        sent = client.create_subaccount.call_args.args[0]
        assert sent["business_name"] == "Ada's Shop"
        assert sent["percentage_charge"] == 7.5
        assert sent["primary_contact_email"] == "shop@example.com"

        assert connect.get_subaccount_code(vendor.id) == "ACCT_x"
        assert connect.get_bank_info(vendor.id) == {
            "connected": True,
            "business_name": "Ada's Shop",
            "account_name": "ADA LOVELACE",
            "account_number": "****6789",
            "bank_code": "044",
        }

    def test_unresolvable_account(self, make_user):
        vendor = make_user()
        client = MagicMock()
        client.resolve_account.return_value = GatewayResult(success=False, error="Could not resolve", status_code=422)
        with pytest.raises(ProviderApiError):
            PaystackConnect(_ps_settings(), client=client).create_subaccount(vendor.id, "044", "000")
        client.create_subaccount.assert_not_called()

    def test_unknown_vendor(self):
        with pytest.raises(NotFoundError):
            PaystackConnect(_ps_settings(), client=MagicMock()).create_subaccount(999, "044", "0123456789")

    def test_missing_bank_details(self, make_user):
        with pytest.raises(ValidationError):
            PaystackConnect(_ps_settings(), client=MagicMock()).resolve_account("", "044")

    def test_disconnect(self, make_user):
        vendor = make_user()
        save_connection(vendor.id, "paystack", {"subaccount_code": "ACCT_1"})
        connect = PaystackConnect(_ps_settings(), client=MagicMock())
        assert connect.disconnect(vendor.id)
        assert connect.get_bank_info(vendor.id)["connected"] is False
