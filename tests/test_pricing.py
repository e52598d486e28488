import pytest

from tableside.core.exceptions import ValidationError
from tableside.services.pricing import (
    calculate_order_totals,
    compute_discount,
    compute_subtotal,
    compute_total,
)

LINES = [
    {"menu_item_id": 1, "name": "Burger", "price": 10.0, "quantity": 2},
    {"menu_item_id": 2, "name": "Fries", "price": 4.5, "quantity": 1},
]


class TestOrderTotals:

    def test_subtotal_is_price_times_quantity(self):
        assert compute_subtotal(LINES) == pytest.approx(24.5)

    def test_tax_and_tip(self):
        totals = calculate_order_totals(LINES, tax_rate=10.0, tip=3.0)

        assert totals.subtotal == pytest.approx(24.5)
        assert totals.tax == pytest.approx(2.45)
        assert totals.tip == pytest.approx(3.0)
        assert totals.discount == 0.0
        assert totals.total == pytest.approx(29.95)
        assert totals.promo_code is None

    def test_percent_promo_is_case_insensitive(self):
        totals = calculate_order_totals(LINES, tax_rate=10.0, promo_code=" welcome10 ")

        assert totals.promo_code == "WELCOME10"
        assert totals.discount == pytest.approx(2.45)
        assert totals.total == pytest.approx(24.5)

    def test_flat_promo_never_exceeds_subtotal(self):
        cheap = [{"price": 3.0, "quantity": 1}]
        totals = calculate_order_totals(cheap, tax_rate=0.0, promo_code="FLAT5")

        assert totals.discount == pytest.approx(3.0)
        assert totals.total == 0.0

    def test_unknown_promo_rejected(self):
        with pytest.raises(ValidationError):
            calculate_order_totals(LINES, tax_rate=10.0, promo_code="FREEFOOD")

    def test_negative_tip_rejected(self):
        with pytest.raises(ValidationError):
            calculate_order_totals(LINES, tax_rate=10.0, tip=-1.0)

    def test_total_clamped_at_zero(self):
        assert compute_total(5.0, 0.0, 0.0, 10.0) == 0.0

    def test_blank_promo_is_no_promo(self):
        assert compute_discount(20.0, "  ") == (0.0, None)
