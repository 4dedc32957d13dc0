"""市场分账单元测试。"""

from decimal import Decimal

import pytest

from app.models.schemas import FeeCondition, MarketplaceSettings
from app.services.marketplace import (
    calculate_order_split,
    calculate_vendor_earnings,
    is_marketplace_order,
    percentage_fee_value,
)
from app.services.vendor_connections import save_connection


def _settings(**kwargs) -> MarketplaceSettings:
    return MarketplaceSettings(enabled=True, **kwargs)


class TestCalculateVendorEarnings:
    """platform_fee + vendor_earnings == total，且平台费在 [0, total] 内。"""

    def test_percentage_fee(self):
        split = calculate_vendor_earnings("100.00", _settings(fee_type="percentage", fee_value=Decimal("10")))
        assert split.platform_fee == Decimal("10.00")
        assert split.vendor_earnings == Decimal("90.00")

    def test_fixed_fee(self):
        split = calculate_vendor_earnings("20", _settings(fee_type="fixed", fee_value=Decimal("2.5")))
        assert split.platform_fee == Decimal("2.50")
        assert split.vendor_earnings == Decimal("17.50")

    def test_fixed_fee_capped_at_total(self):
        split = calculate_vendor_earnings("5", _settings(fee_type="fixed", fee_value=Decimal("8")))
        assert split.platform_fee == Decimal("5.00")
        assert split.vendor_earnings == Decimal("0.00")

    def test_negative_fee_clamped_to_zero(self):
        split = calculate_vendor_earnings("5", _settings(fee_type="fixed", fee_value=Decimal("-3")))
        assert split.platform_fee == Decimal("0.00")
        assert split.vendor_earnings == Decimal("5.00")

    def test_disabled_marketplace_has_no_fee(self):
        split = calculate_vendor_earnings("42", MarketplaceSettings(enabled=False, fee_value=Decimal("10")))
        assert split.platform_fee == Decimal("0.00")
        assert split.fee_type == "none"

    @pytest.mark.parametrize("total", ["0.01", "0.99", "33.33", "1234.56"])
    def test_sum_invariant_with_rounding(self, total):
        split = calculate_vendor_earnings(total, _settings(fee_type="percentage", fee_value=Decimal("12.5")))
        assert split.platform_fee + split.vendor_earnings == Decimal(total)
        assert Decimal("0") <= split.platform_fee <= Decimal(total)


class TestConditionalFee:
    """条件费率：按顺序匹配第一条满足的条件。"""

    CONDITIONS = [
        FeeCondition(type="fixed", value=Decimal("1"), max_amount=Decimal("10")),
        FeeCondition(type="percentage", value=Decimal("5"), vendor_tier="gold"),
        FeeCondition(type="percentage", value=Decimal("15")),
    ]

    def test_first_matching_condition(self):
        settings = _settings(fee_type="conditional", fee_conditions=self.CONDITIONS)
        assert calculate_vendor_earnings("8", settings).platform_fee == Decimal("1.00")
        assert calculate_vendor_earnings("100", settings, "gold").platform_fee == Decimal("5.00")
        assert calculate_vendor_earnings("100", settings, "silver").platform_fee == Decimal("15.00")

    def test_no_match_means_no_fee(self):
        settings = _settings(fee_type="conditional", fee_conditions=[
            FeeCondition(type="percentage", value=Decimal("5"), min_amount=Decimal("500")),
        ])
        assert calculate_vendor_earnings("100", settings).platform_fee == Decimal("0.00")

    def test_order_split_uses_vendor_tier(self, make_user, make_order):
        vendor = make_user(vendor_tier="gold")
        order = make_order("paypal_payment", [{"label": "Gig", "amount": "100", "vendor_id": vendor.id}])
        settings = _settings(fee_type="conditional", fee_conditions=self.CONDITIONS)
        assert calculate_order_split(order, settings).platform_fee == Decimal("5.00")


class TestIsMarketplaceOrder:
    def test_connected_vendor(self, make_user, make_order):
        vendor = make_user()
        save_connection(vendor.id, "paypal", {"email": "vendor@example.com"})
        order = make_order("paypal_payment", [{"label": "Gig", "amount": "10", "vendor_id": vendor.id}])
        assert is_marketplace_order(order, _settings(), "paypal")

    def test_post_author_used_as_vendor(self, make_user, make_order):
        vendor = make_user()
        save_connection(vendor.id, "paypal", {"email": "vendor@example.com"})
        order = make_order("paypal_payment", [{"label": "Gig", "amount": "10", "post_author_id": vendor.id}])
        assert is_marketplace_order(order, _settings(), "paypal")

    def test_unconnected_vendor_falls_back(self, make_user, make_order):
        vendor = make_user()
        order = make_order("paypal_payment", [{"label": "Gig", "amount": "10", "vendor_id": vendor.id}])
        assert not is_marketplace_order(order, _settings(), "paypal")

    def test_vendor_buying_own_item(self, make_user, make_order):
        vendor = make_user()
        save_connection(vendor.id, "paypal", {"email": "vendor@example.com"})
        order = make_order(
            "paypal_payment", [{"label": "Gig", "amount": "10", "vendor_id": vendor.id}], customer=vendor,
        )
        assert not is_marketplace_order(order, _settings(), "paypal")

    def test_deposit_item_has_no_vendor(self, make_user, make_order):
        vendor = make_user()
        save_connection(vendor.id, "paypal", {"email": "vendor@example.com"})
        order = make_order("paypal_payment", [
            {"label": "Top up", "amount": "10", "vendor_id": vendor.id, "item_type": "deposit"},
        ])
        assert not is_marketplace_order(order, _settings(), "paypal")

    def test_disabled(self, make_user, make_order):
        vendor = make_user()
        save_connection(vendor.id, "paypal", {"email": "vendor@example.com"})
        order = make_order("paypal_payment", [{"label": "Gig", "amount": "10", "vendor_id": vendor.id}])
        assert not is_marketplace_order(order, MarketplaceSettings(enabled=False), "paypal")


def test_percentage_fee_value_only_for_percentage():
    assert percentage_fee_value(_settings(fee_type="percentage", fee_value=Decimal("7"))) == Decimal("7")
    assert percentage_fee_value(_settings(fee_type="fixed", fee_value=Decimal("7"))) == Decimal("0")
