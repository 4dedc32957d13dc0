"""钱包支付单元测试。"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from app.services.errors import NotFoundError, PermissionDeniedError, ValidationError
from app.services.order_service import OrderService
from app.services.payment_methods.registry import get_payment_method
from app.services.payment_methods.wallet import WalletPayment, pay_order_with_wallet
from app.services.platform_config import save_section
from app.services.wallet_service import WalletService


@pytest.fixture
def wallet_enabled():
    save_section("paystack", {"enabled": True, "secret_key": "sk_test"})


def _funded_user(make_user, amount="50.00"):
    user = make_user()
    WalletService().credit(user.id, amount)
    return user


def _reload(order):
    return OrderService().get_order(order.id)


class TestCheckout:
    """结账时选择 wallet_payment。"""

    def test_registered(self, make_order):
        order = make_order("wallet_payment")
        assert isinstance(get_payment_method(order), WalletPayment)

    def test_success_completes_order(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user)
        order = make_order("wallet_payment", customer=user)

        result = get_payment_method(order).process_payment()
        assert result["success"]
        assert result["redirect_url"] == f"https://shop.example.com/orders/{order.id}"
        assert result["new_balance"] == "25.00"

        saved = _reload(order)
        assert saved.status == "completed"
        assert saved.transaction_id.startswith("wallet_")
        assert saved.get_details("wallet.paid") is True
        assert saved.get_details("wallet.paid_at")
        assert saved.transaction_id == f"wallet_{saved.get_details('wallet.transaction_id')}"

        tx = WalletService().get_transactions(user.id, order="ASC")[-1]
        assert tx.transaction_type == "purchase"
        assert tx.reference_type == "order"
        assert tx.reference_id == order.id
        assert tx.amount == -2500

    def test_insufficient_balance_cancels_order(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user, "10.00")
        order = make_order("wallet_payment", customer=user)

        result = get_payment_method(order).process_payment()
        assert not result["success"]
        assert result["message"].startswith("Insufficient wallet balance")

        saved = _reload(order)
        assert saved.status == "canceled"
        assert saved.get_details("wallet.paid") is None
        assert saved.get_details("wallet.failed_at")
        assert WalletService().get_balance(user.id) == Decimal("10.00")

    def test_wallet_disabled_cancels_order(self, make_user, make_order):
        user = _funded_user(make_user)
        order = make_order("wallet_payment", customer=user)
        result = get_payment_method(order).process_payment()
        assert result == {"success": False, "message": "Wallet feature is not available"}
        assert _reload(order).status == "canceled"
        assert WalletService().get_balance(user.id) == Decimal("50.00")

    def test_paid_only_once(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user)
        order = make_order("wallet_payment", customer=user)
        stale = OrderService().get_order(order.id)

        assert get_payment_method(order).process_payment()["success"]
        result = WalletPayment(stale).pay()
        assert not result["success"]
        assert WalletService().get_balance(user.id) == Decimal("25.00")
        assert _reload(order).status == "completed"

    def test_debit_error_releases_claim(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user)
        order = make_order("wallet_payment", customer=user)
        with patch.object(WalletService, "debit", side_effect=RuntimeError("db locked")):
            with pytest.raises(RuntimeError):
                WalletPayment(order).pay()
        assert _reload(order).get_details("wallet.paid") is None
        assert WalletPayment(_reload(order)).pay()["success"]


class TestPayExistingOrder:
    """已有的待付款订单改用钱包支付。"""

    def test_switches_payment_method(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user)
        order = make_order("offline_payment", customer=user)

        assert pay_order_with_wallet(order.id, user.id)["success"]
        saved = _reload(order)
        assert saved.payment_method == "wallet_payment"
        assert saved.get_details("wallet.previous_payment_method") == "offline_payment"
        assert saved.status == "completed"

    def test_insufficient_balance_keeps_order(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user, "5.00")
        order = make_order("offline_payment", customer=user)

        result = pay_order_with_wallet(order.id, user.id)
        assert not result["success"]
        saved = _reload(order)
        assert saved.status == "pending_payment"
        assert saved.get_details("wallet.paid") is None

    def test_stranger_cannot_pay(self, make_user, make_order, wallet_enabled):
        order = make_order("offline_payment")
        stranger = _funded_user(make_user)
        with pytest.raises(PermissionDeniedError):
            pay_order_with_wallet(order.id, stranger.id)

    def test_unknown_order(self, make_user):
        with pytest.raises(NotFoundError):
            pay_order_with_wallet(999, make_user().id)

    def test_subscription_rejected(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user)
        order = make_order("offline_subscription", [{
            "label": "Monthly plan", "amount": "9.99", "item_type": "subscription",
            "subscription_unit": "month", "subscription_frequency": 1,
        }], customer=user)
        with pytest.raises(ValidationError):
            pay_order_with_wallet(order.id, user.id)

    def test_completed_order_not_paid_again(self, make_user, make_order, wallet_enabled):
        user = _funded_user(make_user)
        order = make_order("offline_payment", customer=user)
        order.set_status("completed")
        OrderService().save(order)

        result = pay_order_with_wallet(order.id, user.id)
        assert result == {"success": False, "message": "This order cannot be paid with wallet"}
        assert WalletService().get_balance(user.id) == Decimal("50.00")
