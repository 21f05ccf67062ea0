"""
Unit tests for money helpers and their serialization.
"""

from decimal import Decimal

from billing_engine.domain.money import format_money, quantize_money, to_decimal
from billing_engine.domain.subscription import PlanPrice


class TestMoney:
    def test_half_up_rounding(self):
        assert quantize_money(Decimal("0.005")) == Decimal("0.01")
        assert quantize_money(Decimal("2.345")) == Decimal("2.35")

    def test_floats_go_through_repr(self):
        assert to_decimal(2.675) == Decimal("2.675")
        assert quantize_money(2.675) == Decimal("2.68")

    def test_format_is_fixed_two_places(self):
        assert format_money(5) == "5.00"
        assert format_money("12.3") == "12.30"
        assert format_money(Decimal("-1.005")) == "-1.01"

    def test_models_serialize_money_as_strings(self):
        plan = PlanPrice(
            tier="GOLD",
            billing_cycle="MONTHLY",
            currency="USD",
            region="GLOBAL",
            price=Decimal("29.9"),
            setup_fee=Decimal("0"),
        )
        dumped = plan.model_dump(mode="json")

        assert dumped["price"] == "29.90"
        assert dumped["setup_fee"] == "0.00"
        assert dumped["discount_percentage"] is None
