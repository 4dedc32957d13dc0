"""Mercado Pago 支付方式单元测试。"""

import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from app.models.schemas import MarketplaceSettings, MercadoPagoSettings
from app.services.gateway_http import GatewayResult
from app.services.order_service import OrderService
from app.services.payment_methods.mercadopago import (
    MercadoPagoPayment,
    MercadoPagoSubscription,
    preapproval_frequency,
)
from app.services.vendor_connections import save_connection


def _settings(**kwargs) -> MercadoPagoSettings:
    return MercadoPagoSettings(enabled=True, access_token="platform-token", currency="BRL", **kwargs)


@pytest.fixture
def client():
    client = MagicMock()
    client.create_preference.return_value = GatewayResult(success=True, data={
        "id": "PREF-1",
        "init_point": "https://www.mercadopago.com/checkout?pref=PREF-1",
        "sandbox_init_point": "https://sandbox.mercadopago.com/checkout?pref=PREF-1",
    })
    return client


def _reload(order):
    return OrderService().get_order(order.id)


class TestProcessPayment:
    def test_sandbox_init_point(self, make_order, client):
        order = make_order("mercadopago_payment", currency="BRL")
        result = MercadoPagoPayment(order, settings=_settings(), client=client).process_payment()
        assert result["redirect_url"] == "https://sandbox.mercadopago.com/checkout?pref=PREF-1"

        saved = _reload(order)
        assert saved.get_details("mercadopago.preference_id") == "PREF-1"
        assert not saved.get_details("mercadopago.is_marketplace")
        assert client.create_preference.call_args.kwargs["auth_token"] is None

    def test_live_init_point(self, make_order, client):
        order = make_order("mercadopago_payment")
        result = MercadoPagoPayment(order, settings=_settings(mode="live"), client=client).process_payment()
        assert result["redirect_url"] == "https://www.mercadopago.com/checkout?pref=PREF-1"

    def test_preference_data(self, make_order, client):
        order = make_order("mercadopago_payment", [{"label": "Logo design", "amount": "19.90", "quantity": 3}])
        data = MercadoPagoPayment(order, settings=_settings(), client=client).build_preference_data()
        assert data["external_reference"] == f"voxel_order_{order.id}"
        assert data["items"][0]["unit_price"] == 19.9
        assert data["items"][0]["quantity"] == 3
        assert data["notification_url"] == "https://shop.example.com/v1/webhooks/mercadopago"
        assert data["back_urls"]["failure"].startswith("https://shop.example.com/v1/return/mercadopago/failure")
        assert "marketplace_fee" not in data

    def test_marketplace_uses_vendor_token(self, make_user, make_order, client):
        vendor = make_user()
        save_connection(vendor.id, "mercadopago", {
            "access_token": "vendor-token", "expires_at": int(time.time()) + 86400,
        })
        order = make_order("mercadopago_payment", [{"label": "Gig", "amount": "100", "vendor_id": vendor.id}])
        settings = _settings(marketplace=MarketplaceSettings(
            enabled=True, fee_type="percentage", fee_value=Decimal("10"),
        ))
        MercadoPagoPayment(order, settings=settings, client=client).process_payment()

        call = client.create_preference.call_args
        assert call.kwargs["auth_token"] == "vendor-token"
        assert call.args[0]["marketplace_fee"] == 10.0
        saved = _reload(order)
        assert saved.get_details("mercadopago.is_marketplace") is True
        assert saved.get_details("marketplace.platform_fee") == "10.00"
        assert saved.get_details("marketplace.vendor_earnings") == "90.00"

    def test_missing_preference_id(self, make_order):
        order = make_order("mercadopago_payment")
        client = MagicMock()
        client.create_preference.return_value = GatewayResult(success=True, data={})
        result = MercadoPagoPayment(order, settings=_settings(), client=client).process_payment()
        assert not result["success"]
        assert result["debug"]["type"] == "mercadopago_error"


class TestPaymentCompleted:
    @pytest.mark.parametrize("mp_status,expected", [
        ("approved", "completed"),
        ("pending", "pending_payment"),
        ("in_process", "pending_payment"),
        ("rejected", "canceled"),
        ("refunded", "refunded"),
        ("something_new", "pending_payment"),
    ])
    def test_status_mapping(self, make_order, client, mp_status, expected):
        order = make_order("mercadopago_payment")
        MercadoPagoPayment(order, settings=_settings(), client=client).handle_payment_completed(
            {"id": 555, "status": mp_status, "transaction_amount": 25}
        )
        saved = _reload(order)
        assert saved.status == expected
        assert saved.get_details("mercadopago.payment_id") == "555"

    def test_manual_capture_waits_for_vendor(self, make_order, client):
        order = make_order("mercadopago_payment")
        MercadoPagoPayment(order, settings=_settings(order_approval="manual"), client=client) \
            .handle_payment_completed({"id": 1, "status": "approved"})
        assert _reload(order).status == "pending_approval"

    def test_duplicate_notification_idempotent(self, make_order, client):
        order = make_order("mercadopago_payment")
        payment = {"id": 555, "status": "approved", "transaction_amount": 25}
        MercadoPagoPayment(order, settings=_settings(), client=client).handle_payment_completed(payment)
        first = _reload(order)
        MercadoPagoPayment(first, settings=_settings(), client=client).handle_payment_completed(payment)
        second = _reload(order)
        assert second.status == first.status == "completed"
        assert second.transaction_id == first.transaction_id == "555"


class TestReturn:
    def test_success_refetches_payment(self, make_order, client):
        order = make_order("mercadopago_payment")
        client.get_payment.return_value = GatewayResult(success=True, data={
            "id": 77, "status": "approved", "external_reference": f"voxel_order_{order.id}",
        })
        url = MercadoPagoPayment(order, settings=_settings(), client=client).handle_return(
            "success", {"collection_id": "77", "status": "approved"},
        )
        assert url == f"https://shop.example.com/orders/{order.id}"
        client.get_payment.assert_called_once_with("77", auth_token=None)
        assert _reload(order).status == "completed"

    def test_query_status_not_trusted(self, make_order, client):
        """回跳参数里的 status 不作为依据，以渠道查询结果为准。"""
        order = make_order("mercadopago_payment")
        client.get_payment.return_value = GatewayResult(success=True, data={
            "id": 77, "status": "pending", "external_reference": f"voxel_order_{order.id}",
        })
        MercadoPagoPayment(order, settings=_settings(), client=client).handle_return(
            "success", {"payment_id": "77", "status": "approved"},
        )
        assert _reload(order).status == "pending_payment"

    def test_failure_without_payment_cancels(self, make_order, client):
        order = make_order("mercadopago_payment")
        url = MercadoPagoPayment(order, settings=_settings(), client=client).handle_return("failure", {})
        assert url.endswith("?error=payment_failed")
        assert _reload(order).status == "canceled"

    def test_lookup_failure(self, make_order, client):
        order = make_order("mercadopago_payment")
        client.get_payment.return_value = GatewayResult(success=False, error="not found", status_code=404)
        url = MercadoPagoPayment(order, settings=_settings(), client=client).handle_return(
            "success", {"payment_id": "77"},
        )
        assert url.endswith("?error=payment_failed")
        assert _reload(order).status == "pending_payment"

    def test_payment_of_another_order_rejected(self, make_order, client):
        cheap = make_order("mercadopago_payment", [{"label": "Sticker", "amount": "1.00"}])
        pricey = make_order("mercadopago_payment", [{"label": "Laptop", "amount": "500.00"}])
        client.get_payment.return_value = GatewayResult(success=True, data={
            "id": 88, "status": "approved", "external_reference": f"voxel_order_{cheap.id}",
            "transaction_amount": 1.0,
        })
        url = MercadoPagoPayment(pricey, settings=_settings(), client=client).handle_return(
            "success", {"payment_id": "88"},
        )
        assert url.endswith("?error=payment_mismatch")
        assert _reload(pricey).status == "pending_payment"
        assert _reload(pricey).get_details("mercadopago.payment_id") is None


class TestVendorActions:
    def test_decline_refunds(self, make_user, make_order, client):
        vendor = make_user()
        order = make_order("mercadopago_payment", [{"label": "Gig", "amount": "25", "vendor_id": vendor.id}])
        method = MercadoPagoPayment(order, settings=_settings(order_approval="manual"), client=client)
        method.handle_payment_completed({"id": 9, "status": "approved"})
        client.refund_payment.return_value = GatewayResult(success=True, data={"id": "RF-1"})

        assert method.run_action("vendor.decline", vendor.id) == {"success": True}
        client.refund_payment.assert_called_once_with("9", auth_token=None)
        saved = _reload(order)
        assert saved.status == "canceled"
        assert saved.get_details("mercadopago.refund_id") == "RF-1"

    def test_approve(self, make_user, make_order, client):
        vendor = make_user()
        order = make_order("mercadopago_payment", [{"label": "Gig", "amount": "25", "vendor_id": vendor.id}])
        method = MercadoPagoPayment(order, settings=_settings(order_approval="manual"), client=client)
        method.handle_payment_completed({"id": 9, "status": "approved"})
        assert method.run_action("vendor.approve", vendor.id)["success"]
        assert _reload(order).status == "completed"


class TestSubscription:
    ITEM = {
        "label": "Weekly box", "amount": "30", "item_type": "subscription",
        "subscription_unit": "week", "subscription_frequency": 2,
    }

    def test_frequency_conversion(self):
        assert preapproval_frequency("day", 3) == (3, "days")
        assert preapproval_frequency("week", 2) == (14, "days")
        assert preapproval_frequency("month", 1) == (1, "months")
        assert preapproval_frequency("year", 1) == (12, "months")

    def test_preapproval_created(self, make_order):
        order = make_order("mercadopago_subscription", [self.ITEM], currency="BRL")
        client = MagicMock()
        client.create_preapproval.return_value = GatewayResult(success=True, data={
            "id": "PRE-1", "status": "pending", "init_point": "https://mp.example/sub",
        })
        method = MercadoPagoSubscription(order, settings=_settings(), client=client)
        assert method.process_payment() == {"success": True, "redirect_url": "https://mp.example/sub"}

        sent = client.create_preapproval.call_args.args[0]
        assert sent["auto_recurring"]["frequency"] == 14
        assert sent["auto_recurring"]["frequency_type"] == "days"
        assert sent["external_reference"] == f"voxel_subscription_{order.id}"
        assert _reload(order).get_details("mercadopago.preapproval_id") == "PRE-1"

    def test_updates_and_payments(self, make_order):
        order = make_order("mercadopago_subscription", [self.ITEM])
        method = MercadoPagoSubscription(order, settings=_settings(), client=MagicMock())
        method.handle_subscription_payment({"id": 1, "status": "approved"})
        assert _reload(order).status == "sub_active"

        method.subscription_updated({"id": "PRE-1", "status": "paused"})
        saved = _reload(order)
        assert saved.status == "sub_paused"
        assert saved.get_details("mercadopago.paused_at")

        method.subscription_updated({"id": "PRE-1", "status": "cancelled"})
        assert _reload(order).status == "sub_canceled"
        assert not method.should_sync()
