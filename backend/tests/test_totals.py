"""Totals calculator tests."""

from decimal import Decimal

import pytest

from invoicer.middleware.exceptions import InvalidDiscount, InvalidLineItem, InvalidTaxRate
from invoicer.services.totals import LineItem, calculate_totals, to_money


def _item(quantity, rate, description="Work"):
    return {"description": description, "quantity": Decimal(quantity), "rate": Decimal(rate)}


@pytest.mark.unit
class TestCalculateTotals:

    def test_reference_example(self):
        """[{2,100},{1,50}], no discount, 10% tax → 250.00 / 25.00 / 275.00."""
        totals = calculate_totals([_item("2", "100"), _item("1", "50")], Decimal("0"), Decimal("10"))

        assert totals.subtotal == Decimal("250.00")
        assert totals.tax_amount == Decimal("25.00")
        assert totals.total == Decimal("275.00")
        assert totals.line_amounts == [Decimal("200.00"), Decimal("50.00")]

    def test_total_identity_holds(self):
        totals = calculate_totals(
            [_item("3", "33.33"), _item("0.5", "19.99")], Decimal("12.50"), Decimal("7.25")
        )
        assert totals.total == totals.subtotal - Decimal("12.50") + totals.tax_amount

    def test_each_line_rounded_before_summing(self):
        # 0.005 per line rounds to 0.01; summing first would give 0.015 → 0.02
        totals = calculate_totals([_item("1", "0.005")] * 3)
        assert totals.line_amounts == [Decimal("0.01")] * 3
        assert totals.subtotal == Decimal("0.03")

    def test_half_up_rounding(self):
        # 1 * 0.125 = 0.125 → 0.13 (banker's rounding would give 0.12)
        totals = calculate_totals([_item("1", "0.125")])
        assert totals.subtotal == Decimal("0.13")

        # tax: 0.05 * 10% = 0.005 → 0.01
        totals = calculate_totals([_item("1", "0.05")], tax_rate=Decimal("10"))
        assert totals.tax_amount == Decimal("0.01")
        assert totals.total == Decimal("0.06")

    def test_discount_applied_before_tax(self):
        totals = calculate_totals([_item("1", "100")], Decimal("20"), Decimal("10"))
        assert totals.tax_amount == Decimal("8.00")
        assert totals.total == Decimal("88.00")

    def test_discount_equal_to_subtotal_is_allowed(self):
        totals = calculate_totals([_item("1", "100")], Decimal("100"), Decimal("10"))
        assert totals.total == Decimal("0.00")

    def test_recomputation_is_idempotent(self):
        items = [_item("2.5", "80.10"), _item("1", "9.99")]
        first = calculate_totals(items, Decimal("5"), Decimal("15"))
        second = calculate_totals(items, Decimal("5"), Decimal("15"))
        assert first == second

    def test_accepts_dataclass_items(self):
        totals = calculate_totals([LineItem("Work", Decimal("2"), Decimal("10"))])
        assert totals.total == Decimal("20.00")

    def test_zero_rate_line_allowed(self):
        totals = calculate_totals([_item("1", "0")])
        assert totals.total == Decimal("0.00")


@pytest.mark.unit
class TestCalculateTotalsRejects:

    def test_empty_items(self):
        with pytest.raises(InvalidLineItem):
            calculate_totals([])

    @pytest.mark.parametrize("quantity", ["0", "-1"])
    def test_non_positive_quantity(self, quantity):
        with pytest.raises(InvalidLineItem):
            calculate_totals([_item(quantity, "10")])

    def test_negative_rate(self):
        with pytest.raises(InvalidLineItem):
            calculate_totals([_item("1", "-0.01")])

    def test_discount_above_subtotal(self):
        with pytest.raises(InvalidDiscount):
            calculate_totals([_item("1", "100")], Decimal("100.01"))

    def test_negative_discount(self):
        with pytest.raises(InvalidDiscount):
            calculate_totals([_item("1", "100")], Decimal("-1"))

    @pytest.mark.parametrize("rate", ["-1", "100.01"])
    def test_tax_rate_out_of_range(self, rate):
        with pytest.raises(InvalidTaxRate):
            calculate_totals([_item("1", "100")], tax_rate=Decimal(rate))

    @pytest.mark.parametrize("rate", ["7.125", "0.001"])
    def test_tax_rate_finer_than_cents(self, rate):
        with pytest.raises(InvalidTaxRate) as exc:
            calculate_totals([_item("1", "1000")], tax_rate=Decimal(rate))
        assert "decimal places" in exc.value.message

    def test_trailing_zeros_do_not_count_as_places(self):
        totals = calculate_totals([_item("1.50000", "10.000000")], tax_rate=Decimal("7.1000"))
        assert totals.total == Decimal("16.07")

    @pytest.mark.parametrize("quantity, rate", [("1.00001", "10"), ("1", "0.00001")])
    def test_line_finer_than_stored_precision(self, quantity, rate):
        with pytest.raises(InvalidLineItem):
            calculate_totals([_item(quantity, rate)])

    def test_error_codes(self):
        with pytest.raises(InvalidLineItem) as exc:
            calculate_totals([])
        assert exc.value.error_code == "INVALID_LINE_ITEM"
        assert exc.value.status_code == 422


@pytest.mark.unit
def test_to_money_rounds_half_up():
    assert to_money("2.675") == Decimal("2.68")
    assert to_money(Decimal("1")) == Decimal("1.00")
