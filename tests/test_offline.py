"""线下支付与支付方式注册表单元测试。"""

from datetime import datetime, timezone

import pytest

from app.models.schemas import OfflineSettings, Order
from app.services.errors import PermissionDeniedError, ValidationError
from app.services.order_service import OrderService
from app.services.payment_methods.base import PaymentMethod
from app.services.payment_methods.offline import OfflinePayment, OfflineSubscription, add_interval
from app.services.payment_methods.paypal import PayPalPayment
from app.services.payment_methods.registry import PaymentMethodRegistry, get_payment_method


def _reload(order):
    return OrderService().get_order(order.id)


class TestAddInterval:
    def test_day_and_week(self):
        start = datetime(2026, 1, 10, tzinfo=timezone.utc)
        assert add_interval(start, "day", 3) == datetime(2026, 1, 13, tzinfo=timezone.utc)
        assert add_interval(start, "week", 2) == datetime(2026, 1, 24, tzinfo=timezone.utc)

    def test_month_end_clamped(self):
        start = datetime(2026, 1, 31, tzinfo=timezone.utc)
        assert add_interval(start, "month", 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
        assert add_interval(datetime(2028, 1, 31), "month", 1) == datetime(2028, 2, 29)

    def test_year_and_rollover(self):
        assert add_interval(datetime(2026, 11, 15), "month", 3) == datetime(2027, 2, 15)
        assert add_interval(datetime(2026, 5, 1), "year", 2) == datetime(2028, 5, 1)


class TestOfflinePayment:
    def test_pending_payment_with_instructions(self, make_order):
        order = make_order("offline_payment")
        settings = OfflineSettings(enabled=True, instructions="  Transfer to IBAN DE00 1234  ")
        result = OfflinePayment(order, settings=settings).process_payment()
        assert result == {"success": True, "redirect_url": f"https://shop.example.com/orders/{order.id}"}

        saved = _reload(order)
        assert saved.status == "pending_payment"
        assert saved.transaction_id.startswith(f"offline_{order.id}_")
        assert saved.get_details("offline.instructions") == "Transfer to IBAN DE00 1234"

    def test_pending_approval_initial_status(self, make_order):
        order = make_order("offline_payment")
        OfflinePayment(order, settings=OfflineSettings(order_status="pending_approval")).process_payment()
        assert _reload(order).status == "pending_approval"

    def test_never_syncs(self, make_order):
        assert not OfflinePayment(make_order("offline_payment"), settings=OfflineSettings()).should_sync()

    def test_vendor_mark_paid(self, make_user, make_order):
        vendor = make_user()
        order = make_order("offline_payment", [{"label": "Gig", "amount": "40", "vendor_id": vendor.id}])
        method = OfflinePayment(order, settings=OfflineSettings())
        method.process_payment()
        assert [a.to_dict() for a in method.get_actions_for(vendor.id)] == [
            {"action": "vendor.mark_paid", "label": "Mark as Paid", "type": "primary"},
            {"action": "vendor.cancel", "label": "Cancel Order", "type": "secondary"},
        ]

        assert method.run_action("vendor.mark_paid", vendor.id) == {"success": True}
        saved = _reload(order)
        assert saved.status == "completed"
        assert saved.get_details("offline.paid_at")
        assert method.get_actions_for(vendor.id) == []

    def test_customer_cancel(self, make_order):
        order = make_order("offline_payment")
        method = OfflinePayment(order, settings=OfflineSettings())
        method.run_action("customer.cancel", order.customer_id)
        saved = _reload(order)
        assert saved.status == "canceled"
        assert saved.get_details("offline.canceled_by") == "customer"

    def test_stranger_rejected(self, make_user, make_order):
        order = make_order("offline_payment")
        stranger = make_user()
        method = OfflinePayment(order, settings=OfflineSettings())
        with pytest.raises(PermissionDeniedError):
            method.run_action("customer.cancel", stranger.id)
        with pytest.raises(PermissionDeniedError):
            method.run_action("vendor.mark_paid", stranger.id)

    def test_unknown_action(self, make_order):
        order = make_order("offline_payment")
        method = OfflinePayment(order, settings=OfflineSettings())
        with pytest.raises(ValidationError):
            method.run_action("customer.teleport", order.customer_id)
        with pytest.raises(ValidationError):
            method.run_action("admin.cancel", order.customer_id)


class TestOfflineSubscription:
    ITEM = {
        "label": "Cleaning", "amount": "80", "item_type": "subscription",
        "subscription_unit": "week", "subscription_frequency": 2,
    }

    def test_activate_and_renew(self, make_user, make_order):
        vendor = make_user()
        order = make_order("offline_subscription", [{**self.ITEM, "vendor_id": vendor.id}])
        method = OfflineSubscription(order, settings=OfflineSettings())
        method.process_payment()
        saved = _reload(order)
        assert saved.get_details("offline.billing_interval") == {"unit": "week", "frequency": 2}
        assert saved.get_details("offline.subscription_status") == "pending"

        method.run_action("vendor.mark_paid", vendor.id)
        saved = _reload(order)
        assert saved.status == "sub_active"
        assert [p["type"] for p in saved.get_details("offline.payment_history")] == ["initial"]
        assert saved.get_details("offline.next_payment_date") > saved.get_details("offline.last_payment_date")

        result = method.run_action("vendor.mark_renewal_paid", vendor.id)
        assert result["success"]
        history = _reload(order).get_details("offline.payment_history")
        assert [p["type"] for p in history] == ["initial", "renewal"]
        assert history[1]["amount"] == "80.00"

    def test_next_payment_date(self, make_order):
        order = make_order("offline_subscription", [self.ITEM])
        method = OfflineSubscription(order, settings=OfflineSettings())
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert method.next_payment_date(now) == int(datetime(2026, 3, 15, tzinfo=timezone.utc).timestamp())

    def test_vendor_cancel_active_subscription(self, make_user, make_order):
        vendor = make_user()
        order = make_order("offline_subscription", [{**self.ITEM, "vendor_id": vendor.id}])
        method = OfflineSubscription(order, settings=OfflineSettings())
        method.process_payment()
        method.run_action("vendor.mark_paid", vendor.id)
        method.run_action("vendor.cancel_subscription", vendor.id)
        saved = _reload(order)
        assert saved.status == "sub_canceled"
        assert saved.get_details("offline.subscription_status") == "canceled"


class TestRegistry:
    def test_lookup(self):
        assert PaymentMethodRegistry.get_class("paypal_payment") is PayPalPayment
        assert PaymentMethodRegistry.for_provider("offline", subscription=True) is OfflineSubscription
        assert "square_subscription" in PaymentMethodRegistry.available()

    def test_unknown_key(self):
        with pytest.raises(ValidationError):
            PaymentMethodRegistry.get_class("bitcoin_payment")

    def test_register_custom_method(self):
        class DummyPayment(PaymentMethod):
            key = "dummy_payment"
            provider = "dummy"

        PaymentMethodRegistry.register("dummy_payment", DummyPayment)
        try:
            method = get_payment_method(Order(id=1, payment_method="dummy_payment"))
            assert isinstance(method, DummyPayment)
            assert method.settings is None
        finally:
            PaymentMethodRegistry._methods.pop("dummy_payment")

    def test_get_payment_method_uses_given_settings(self, make_order):
        order = make_order("offline_payment")
        settings = OfflineSettings(instructions="Pay cash")
        method = get_payment_method(order, settings=settings)
        assert isinstance(method, OfflinePayment)
        assert method.settings is settings
