"""钱包服务单元测试。"""

import threading
from decimal import Decimal

import pytest

from app.database import get_db
from app.services import events
from app.services.errors import InsufficientBalanceError, NotFoundError, ValidationError
from app.services.platform_config import save_section
from app.services.wallet_service import (
    WalletService,
    format_amount,
    get_site_currency,
    transaction_to_dict,
)


def _ledger_sum(user_id: int) -> int:
    db = get_db()
    try:
        row = db.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM wallet_transactions WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row["total"]
    finally:
        db.close()


class TestCreditDebit:
    """入账 / 扣款与流水。"""

    def test_credit_then_debit(self, make_user):
        user = make_user()
        wallet = WalletService()
        wallet.credit(user.id, "50.00")
        result = wallet.debit(user.id, "20.25", {"reference_type": "order", "reference_id": 7})
        assert result["new_balance"] == Decimal("29.75")
        assert wallet.get_balance(user.id) == Decimal("29.75")

        txs = wallet.get_transactions(user.id, order="ASC")
        assert [t.transaction_type for t in txs] == ["deposit", "purchase"]
        assert txs[1].amount == -2025
        assert txs[1].balance_after == 2975
        assert txs[1].gateway == "wallet"

    def test_insufficient_balance_leaves_state_unchanged(self, make_user):
        """余额 30.00 扣 50.00 失败，余额不变且不写流水。"""
        user = make_user()
        wallet = WalletService()
        wallet.credit(user.id, "30.00")
        with pytest.raises(InsufficientBalanceError):
            wallet.debit(user.id, "50.00")
        assert wallet.get_balance(user.id) == Decimal("30.00")
        assert wallet.get_transaction_count(user.id) == 1

    def test_balance_equals_ledger_sum(self, make_user):
        user = make_user()
        wallet = WalletService()
        for amount in ("10", "0.01", "99.99"):
            wallet.credit(user.id, amount)
        wallet.debit(user.id, "5.50")
        wallet.refund(user.id, "1.25", order_id=3)
        with pytest.raises(InsufficientBalanceError):
            wallet.debit(user.id, "1000")
        assert wallet.get_balance_cents(user.id) == _ledger_sum(user.id) == 10575

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_invalid_amount(self, make_user, amount):
        user = make_user()
        with pytest.raises(ValidationError):
            WalletService().credit(user.id, amount)

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            WalletService().credit(999, "1")

    def test_concurrent_credits_not_lost(self, make_user):
        """并发入账不丢失更新。"""
        user = make_user()
        wallet = WalletService()

        def worker():
            for _ in range(5):
                wallet.credit(user.id, "1.00")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wallet.get_balance_cents(user.id) == 2000
        assert _ledger_sum(user.id) == 2000


class TestAdjustAndRefund:
    def test_refund_type_and_reference(self, make_user):
        user = make_user()
        WalletService().refund(user.id, "3", order_id=11)
        tx = WalletService().get_transactions(user.id)[0]
        assert tx.transaction_type == "refund"
        assert tx.reference_type == "order"
        assert tx.reference_id == 11

    def test_adjust_signed(self, make_user):
        user = make_user()
        wallet = WalletService()
        wallet.adjust(user.id, "10", admin="admin")
        wallet.adjust(user.id, "-4", "correction")
        assert wallet.get_balance(user.id) == Decimal("6.00")
        assert wallet.get_transaction_count(user.id, "adjustment") == 2

    def test_adjust_zero_rejected(self, make_user):
        user = make_user()
        with pytest.raises(ValidationError):
            WalletService().adjust(user.id, "0")


class TestEvents:
    def test_credit_and_debit_dispatch(self, make_user):
        user = make_user()
        received = []

        def listener(**payload):
            received.append(payload)

        events.subscribe(events.WALLET_CREDITED, listener)
        events.subscribe(events.WALLET_DEBITED, listener)
        try:
            wallet = WalletService()
            wallet.credit(user.id, "2")
            wallet.debit(user.id, "1")
        finally:
            events.unsubscribe(events.WALLET_CREDITED, listener)
            events.unsubscribe(events.WALLET_DEBITED, listener)
        assert [p["amount"] for p in received] == [200, 100]

    def test_listener_error_does_not_break_credit(self, make_user):
        user = make_user()

        def broken(**payload):
            raise RuntimeError("listener failed")

        events.subscribe(events.WALLET_CREDITED, broken)
        try:
            WalletService().credit(user.id, "2")
        finally:
            events.unsubscribe(events.WALLET_CREDITED, broken)
        assert WalletService().get_balance(user.id) == Decimal("2.00")


class TestSettingsAndFormatting:
    def test_disabled_without_gateway(self):
        assert not WalletService().is_enabled()

    def test_enabled_with_gateway(self):
        save_section("paystack", {"enabled": True, "secret_key": "sk"})
        assert WalletService().is_enabled()

    def test_deposit_limits(self):
        save_section("wallet", {"min_deposit": 5, "max_deposit": 100})
        wallet = WalletService()
        assert not wallet.validate_deposit_amount("4.99")["valid"]
        assert "Maximum" in wallet.validate_deposit_amount("100.01")["error"]
        assert wallet.validate_deposit_amount("50")["valid"]

    def test_site_currency_priority(self):
        assert get_site_currency() == "USD"
        save_section("paystack", {"currency": "NGN"})
        assert get_site_currency() == "NGN"
        save_section("paypal", {"currency": "EUR"})
        assert get_site_currency() == "EUR"

    def test_format_amount(self):
        assert format_amount(1250, "NGN") == "₦12.50"
        assert format_amount(123456, "USD") == "$1,234.56"
        assert format_amount(-500, "GBP") == "-£5.00"
        assert format_amount(100, "XYZ") == "XYZ 1.00"

    def test_transaction_to_dict(self, make_user):
        user = make_user()
        WalletService().credit(user.id, "12.5", {"gateway": "paypal"})
        data = transaction_to_dict(WalletService().get_transactions(user.id)[0])
        assert data["amount"] == "12.50"
        assert data["amount_formatted"] == "$12.50"
        assert data["gateway"] == "paypal"
