"""Paystack 支付方式单元测试。"""

import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from app.models.schemas import MarketplaceSettings, PaystackSettings
from app.services.gateway_http import GatewayResult
from app.services.order_service import OrderService
from app.services.payment_methods.paystack import PaystackPayment, PaystackSubscription
from app.services.platform_config import get_json_config
from app.services.vendor_connections import save_connection


def _settings(**kwargs) -> PaystackSettings:
    return PaystackSettings(enabled=True, secret_key="sk_test", currency="NGN", **kwargs)


@pytest.fixture
def client():
    client = MagicMock()
    client.initialize_transaction.side_effect = lambda data: GatewayResult(success=True, data={
        "reference": data["reference"],
        "access_code": "AC-1",
        "authorization_url": "https://checkout.paystack.com/AC-1",
    })
    return client


def _reload(order):
    return OrderService().get_order(order.id)


class TestProcessPayment:
    def test_initializes_in_kobo(self, make_order, client):
        order = make_order("paystack_payment", [{"label": "Logo design", "amount": "1500.50"}], currency="NGN")
        result = PaystackPayment(order, settings=_settings(channels=["card"]), client=client).process_payment()
        assert result == {"success": True, "redirect_url": "https://checkout.paystack.com/AC-1"}

        sent = client.initialize_transaction.call_args.args[0]
        assert sent["amount"] == 150050
        assert sent["currency"] == "NGN"
        assert sent["email"] == order.customer.email
        assert sent["channels"] == ["card"]
        assert sent["reference"].startswith(f"vxl_{order.id}_")
        assert sent["metadata"]["order_id"] == order.id
        assert "subaccount" not in sent

        saved = _reload(order)
        assert saved.get_details("paystack.reference") == sent["reference"]
        assert OrderService().find_by_ref("paystack.reference", sent["reference"]).id == order.id

    def test_marketplace_split(self, make_user, make_order, client):
        vendor = make_user()
        save_connection(vendor.id, "paystack", {"subaccount_code": "ACCT_vendor"})
        order = make_order("paystack_payment", [{"label": "Gig", "amount": "200", "vendor_id": vendor.id}])
        settings = _settings(marketplace=MarketplaceSettings(
            enabled=True, fee_type="percentage", fee_value=Decimal("5"), fee_bearer="subaccount",
        ))
        PaystackPayment(order, settings=settings, client=client).process_payment()

        sent = client.initialize_transaction.call_args.args[0]
        assert sent["subaccount"] == "ACCT_vendor"
        assert sent["transaction_charge"] == 1000
        assert sent["bearer"] == "subaccount"
        saved = _reload(order)
        assert saved.get_details("paystack.is_marketplace") is True
        assert saved.get_details("marketplace.vendor_earnings") == "190.00"

    def test_requires_customer_email(self, make_order, client):
        order = make_order("paystack_payment")
        order.customer = None
        result = PaystackPayment(order, settings=_settings(), client=client).process_payment()
        assert not result["success"]
        assert result["debug"]["type"] == "paystack_error"


class TestCompletion:
    def test_verify_on_return(self, make_order, client):
        order = make_order("paystack_payment")
        client.verify_transaction.return_value = GatewayResult(success=True, data={
            "id": 4099, "status": "success", "reference": "vxl_ref", "amount": 2500,
            "customer": {"customer_code": "CUS_1", "email": order.customer.email},
            "metadata": {"order_id": order.id},
        })
        url = PaystackPayment(order, settings=_settings(), client=client).handle_return(
            "callback", {"reference": "vxl_ref"},
        )
        assert url == f"https://shop.example.com/orders/{order.id}"
        client.verify_transaction.assert_called_once_with("vxl_ref")
        saved = _reload(order)
        assert saved.status == "completed"
        assert saved.transaction_id == "4099"
        assert saved.get_details("paystack.customer_code") == "CUS_1"

    def test_abandoned_goes_to_failure_page(self, make_order, client):
        order = make_order("paystack_payment", details={"paystack": {"reference": "vxl_ref"}})
        client.verify_transaction.return_value = GatewayResult(success=True, data={
            "status": "abandoned", "reference": "vxl_ref",
        })
        url = PaystackPayment(order, settings=_settings(), client=client).handle_return("callback", {"trxref": "vxl_ref"})
        assert url.endswith("?error=payment_failed")
        assert _reload(order).status == "canceled"

    def test_stored_reference_wins_over_query(self, make_order, client):
        """回跳参数里的 reference 不能替换订单保存的 reference。"""
        order = make_order("paystack_payment", details={"paystack": {"reference": "vxl_pricey"}})
        client.verify_transaction.return_value = GatewayResult(success=True, data={
            "id": 1, "status": "success", "reference": "vxl_pricey", "amount": 50000,
        })
        PaystackPayment(order, settings=_settings(), client=client).handle_return("callback", {"reference": "vxl_cheap"})
        client.verify_transaction.assert_called_once_with("vxl_pricey")
        assert _reload(order).status == "completed"

    def test_transaction_of_another_order_rejected(self, make_order, client):
        cheap = make_order("paystack_payment", [{"label": "Sticker", "amount": "1.00"}])
        pricey = make_order("paystack_payment", [{"label": "Laptop", "amount": "500.00"}])
        client.verify_transaction.return_value = GatewayResult(success=True, data={
            "id": 7, "status": "success", "reference": "vxl_cheap", "amount": 100,
            "metadata": {"order_id": cheap.id},
        })
        url = PaystackPayment(pricey, settings=_settings(), client=client).handle_return(
            "callback", {"reference": "vxl_cheap"},
        )
        assert url.endswith("?error=payment_mismatch")
        saved = _reload(pricey)
        assert saved.status == "pending_payment"
        assert saved.transaction_id is None

    def test_metadata_as_json_string(self, make_order, client):
        order = make_order("paystack_payment")
        client.verify_transaction.return_value = GatewayResult(success=True, data={
            "id": 8, "status": "success", "reference": "vxl_s", "metadata": json.dumps({"order_id": order.id}),
        })
        PaystackPayment(order, settings=_settings(), client=client).handle_return("callback", {"trxref": "vxl_s"})
        assert _reload(order).status == "completed"

    def test_manual_capture_waits(self, make_order, client):
        order = make_order("paystack_payment")
        method = PaystackPayment(order, settings=_settings(order_approval="manual"), client=client)
        method.handle_payment_completed({"status": "success", "reference": "r1"})
        assert _reload(order).status == "pending_approval"

    def test_refund_event(self, make_order, client):
        order = make_order("paystack_payment")
        method = PaystackPayment(order, settings=_settings(), client=client)
        method.handle_payment_completed({"status": "success", "reference": "r1"})
        method.handle_refunded({"status": "processed"})
        assert _reload(order).status == "refunded"

    def test_customer_cancel_refunds(self, make_order, client):
        order = make_order("paystack_payment")
        method = PaystackPayment(order, settings=_settings(order_approval="manual"), client=client)
        method.handle_payment_completed({"status": "success", "reference": "r1"})
        client.create_refund.return_value = GatewayResult(success=True, data={"id": 88})
        assert method.run_action("customer.cancel", order.customer_id) == {"success": True}
        client.create_refund.assert_called_once_with("r1")
        saved = _reload(order)
        assert saved.status == "canceled"
        assert saved.get_details("paystack.refund_id") == 88


class TestSubscription:
    ITEM = {
        "label": "Quarterly box", "amount": "5000", "item_type": "subscription",
        "subscription_unit": "month", "subscription_frequency": 3,
    }

    def _client(self):
        client = MagicMock()
        client.create_plan.return_value = GatewayResult(success=True, data={"plan_code": "PLN_1"})
        client.get_plan.return_value = GatewayResult(success=True, data={"plan_code": "PLN_1"})
        client.initialize_transaction.side_effect = lambda data: GatewayResult(success=True, data={
            "reference": data["reference"], "authorization_url": "https://checkout.paystack.com/sub",
        })
        return client

    def test_plan_created_once_and_cached(self, make_order):
        client = self._client()
        first = make_order("paystack_subscription", [self.ITEM])
        second = make_order("paystack_subscription", [self.ITEM])
        PaystackSubscription(first, settings=_settings(), client=client).process_payment()
        PaystackSubscription(second, settings=_settings(), client=client).process_payment()

        client.create_plan.assert_called_once()
        assert client.create_plan.call_args.args[2] == "quarterly"
        assert get_json_config("paystack_plan_codes") == {"quarterly-box-500000-quarterly": "PLN_1"}
        sent = client.initialize_transaction.call_args.args[0]
        assert sent["plan"] == "PLN_1"

    def test_stale_plan_recreated(self, make_order):
        client = self._client()
        PaystackSubscription(make_order("paystack_subscription", [self.ITEM]), settings=_settings(), client=client) \
            .process_payment()
        client.get_plan.return_value = GatewayResult(success=False, error="Plan not found", status_code=404)
        client.create_plan.return_value = GatewayResult(success=True, data={"plan_code": "PLN_2"})
        PaystackSubscription(make_order("paystack_subscription", [self.ITEM]), settings=_settings(), client=client) \
            .process_payment()
        assert client.create_plan.call_count == 2
        assert client.initialize_transaction.call_args.args[0]["plan"] == "PLN_2"

    def test_unsupported_interval(self, make_order):
        order = make_order("paystack_subscription", [{**self.ITEM, "subscription_unit": "decade"}])
        result = PaystackSubscription(order, settings=_settings(), client=self._client()).process_payment()
        assert not result["success"]

    def test_initial_payment_activates(self, make_order):
        order = make_order("paystack_subscription", [self.ITEM])
        method = PaystackSubscription(order, settings=_settings(), client=self._client())
        method.handle_initial_payment_completed({
            "id": 1, "status": "success", "reference": "vxl_sub",
            "authorization": {"subscription_code": "SUB_1"},
        })
        saved = _reload(order)
        assert saved.status == "sub_active"
        assert OrderService().find_by_ref("paystack.subscription_code", "SUB_1").id == order.id

    def test_disable_and_cancel(self, make_order):
        client = self._client()
        order = make_order("paystack_subscription", [self.ITEM])
        method = PaystackSubscription(order, settings=_settings(), client=client)
        method.subscription_updated({"subscription_code": "SUB_1", "email_token": "tok", "status": "active"})
        assert _reload(order).status == "sub_active"

        client.disable_subscription.return_value = GatewayResult(success=True, data={})
        assert method.run_action("customer.cancel_subscription", order.customer_id)["success"]
        client.disable_subscription.assert_called_once_with("SUB_1", "tok")
        assert _reload(order).status == "sub_canceled"

    def test_renewal_reactivates_paused(self, make_order):
        order = make_order("paystack_subscription", [self.ITEM])
        method = PaystackSubscription(order, settings=_settings(), client=self._client())
        method.subscription_updated({"subscription_code": "SUB_1", "status": "attention"})
        assert _reload(order).status == "sub_paused"
        method.handle_subscription_payment({"id": 2, "status": "success"})
        assert _reload(order).status == "sub_active"
