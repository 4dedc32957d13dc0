"""订单服务与订单状态机单元测试。"""

from decimal import Decimal

import pytest

from app.models.schemas import LineItem, Order, OrderStatus, can_transition
from app.services.errors import ValidationError
from app.services.order_service import OrderService


# ── 状态机 ──


class TestStatusTransitions:
    """订单状态迁移规则。"""

    @pytest.mark.parametrize("current,new", [
        ("pending_payment", "completed"),
        ("pending_payment", "sub_active"),
        ("pending_approval", "completed"),
        ("completed", "refunded"),
        ("sub_active", "sub_paused"),
        ("sub_paused", "sub_active"),
        ("completed", "completed"),
    ])
    def test_allowed(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("canceled", "completed"),
        ("refunded", "completed"),
        ("completed", "pending_payment"),
        ("sub_canceled", "sub_active"),
        ("sub_active", "completed"),
    ])
    def test_rejected(self, current, new):
        assert not can_transition(current, new)

    def test_set_status_ignores_illegal(self):
        """终态订单不会被迟到的通知复活。"""
        order = Order(id=1, payment_method="paypal_payment", status="canceled")
        assert not order.set_status(OrderStatus.COMPLETED)
        assert order.status == "canceled"


class TestOrderModel:
    def test_details_paths(self):
        order = Order(id=1, payment_method="paypal_payment")
        order.set_details("paypal.capture_id", "CAP-1")
        order.set_details("paypal.links.approve", "https://x")
        assert order.get_details("paypal.capture_id") == "CAP-1"
        assert order.get_details("paypal.links") == {"approve": "https://x"}
        assert order.get_details("paypal.missing", "d") == "d"
        assert order.get_details("paypal.capture_id.deeper") is None

    def test_vendor_and_total(self):
        items = [
            LineItem(id=1, order_id=1, label="A", amount=Decimal("10.50"), quantity=2, post_author_id=9),
            LineItem(id=2, order_id=1, label="B", amount=Decimal("4"), vendor_id=3),
        ]
        order = Order(id=1, payment_method="offline_payment", items=items)
        assert order.get_total() == Decimal("25.00")
        assert order.get_vendor_id() == 9

    def test_deposit_item_has_no_vendor(self):
        item = LineItem(id=1, order_id=1, label="Top up", amount=Decimal("5"), vendor_id=3, item_type="deposit")
        assert item.get_vendor_id() is None


# ── 创建与查询 ──


class TestCreateOrder:
    def test_create_and_load(self, make_user, make_order):
        customer = make_user(email="buyer@example.com")
        order = make_order("paypal_payment", [
            {"label": "Logo", "amount": "12.50", "quantity": 2, "vendor_id": 5},
            {"label": "Rush", "amount": "5"},
        ], customer=customer, currency="EUR")

        loaded = OrderService().get_order(order.id)
        assert loaded.status == "pending_payment"
        assert loaded.currency == "EUR"
        assert loaded.customer.email == "buyer@example.com"
        assert [i.label for i in loaded.items] == ["Logo", "Rush"]
        assert loaded.get_total() == Decimal("30.00")
        assert loaded.get_vendor_id() == 5

    def test_subscription_item_type(self, make_order):
        order = make_order("paypal_subscription", [{
            "label": "Plan", "amount": "9", "subscription_unit": "month", "subscription_frequency": 1,
        }])
        assert order.items[0].item_type == "subscription"

    @pytest.mark.parametrize("items", [
        [],
        [{"label": "A", "amount": "0"}],
        [{"label": "A", "amount": "-1"}],
        [{"label": "A", "amount": "abc"}],
        [{"label": "", "amount": "1"}],
    ])
    def test_invalid_items(self, make_user, items):
        with pytest.raises(ValidationError):
            OrderService().create_order(make_user().id, "offline_payment", items)

    def test_missing_order(self):
        assert OrderService().get_order(404) is None


class TestSave:
    def test_save_registers_refs(self, make_order):
        service = OrderService()
        order = make_order("paypal_payment")
        order.set_details("paypal.order_id", "PP-1")
        order.set_details("paypal.note", "not a ref")
        service.save(order)
        assert service.find_by_ref("paypal.order_id", "PP-1").id == order.id
        assert service.find_by_ref("paypal.note", "not a ref") is None
        assert service.find_by_ref("paypal.order_id", "") is None

    def test_first_writer_wins(self, make_order):
        """同一渠道交易号只关联第一笔写入的订单。"""
        service = OrderService()
        first, second = make_order("paypal_payment"), make_order("paypal_payment")
        for order in (first, second):
            order.set_details("paypal.capture_id", "CAP-1")
            service.save(order)
        assert service.find_by_ref("paypal.capture_id", "CAP-1").id == first.id

    def test_concurrent_terminal_status_kept(self, make_order):
        """内存中的旧订单不能覆盖已写入的终态。"""
        service = OrderService()
        order = make_order("paypal_payment")
        stale = service.get_order(order.id)

        order.set_status(OrderStatus.CANCELED)
        service.save(order)

        stale.set_status(OrderStatus.COMPLETED)
        service.save(stale)
        assert stale.status == "canceled"
        assert service.get_order(order.id).status == "canceled"

    def test_details_deep_merged(self, make_order):
        service = OrderService()
        order = make_order("paypal_payment")
        stale = service.get_order(order.id)

        order.set_details("paypal.capture_id", "CAP-1")
        service.save(order)
        stale.set_details("paypal.refund_id", "R-1")
        service.save(stale)

        details = service.get_order(order.id).details["paypal"]
        assert details == {"capture_id": "CAP-1", "refund_id": "R-1"}

    def test_decimal_details(self, make_order):
        order = make_order("paypal_payment")
        order.set_details("pricing.fee", Decimal("1.25"))
        OrderService().save(order)
        assert OrderService().get_order(order.id).get_details("pricing.fee") == 1.25


class TestLookups:
    def test_find_recent_for_customer(self, make_user, make_order):
        customer = make_user(email="Sub@Example.com")
        older = make_order("paystack_subscription", customer=customer)
        newer = make_order("paystack_subscription", customer=customer)
        newer.set_details("paystack.subscription_code", "SUB_1")
        OrderService().save(newer)

        found = OrderService().find_recent_for_customer(
            "paystack_subscription", "sub@example.com", ("pending_payment",),
            missing_ref="paystack.subscription_code",
        )
        assert found.id == older.id
        assert OrderService().find_recent_for_customer("paystack_subscription", "", ("pending_payment",)) is None

    def test_list_for_user(self, make_user, make_order):
        customer, vendor = make_user(), make_user()
        bought = make_order("offline_payment", customer=customer)
        sold = make_order("offline_payment", [{"label": "Gig", "amount": "5", "vendor_id": vendor.id}])
        service = OrderService()
        assert [o.id for o in service.list_for_user(customer.id)] == [bought.id]
        assert [o.id for o in service.list_for_user(vendor.id)] == [sold.id]
