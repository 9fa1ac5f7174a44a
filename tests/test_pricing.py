from decimal import Decimal

import pytest

from nurserybook.errors import InvalidPlantPrice, ValidationError
from nurserybook.model.pricing import compute_booking, to_minor_units


class TestComputeBooking:
    def test_floor_applied_to_plain_request(self) -> None:
        q = compute_booking(150, 10, 1, 10, 10)
        assert q.qty == 10
        assert q.advance_percent == 10
        assert q.amount_total == Decimal("1500")
        assert q.amount_advance == Decimal("150")
        assert q.amount_balance == Decimal("1350")

    @pytest.mark.parametrize("requested", [-5, 0, 3, "abc", None, "", 2.5])
    def test_request_below_floor_or_garbage_uses_floor(self, requested) -> None:
        q = compute_booking(150, 10, 1, requested, 10)
        assert q.advance_percent == 10

    def test_request_above_floor_is_kept(self) -> None:
        q = compute_booking(150, 10, 1, "25", 10)
        assert q.advance_percent == 25
        assert q.amount_advance == Decimal("375")
        assert q.amount_balance == Decimal("1125")

    def test_full_advance_leaves_no_balance(self) -> None:
        q = compute_booking(150, 4, 1, 100, 10)
        assert q.amount_advance == q.amount_total
        assert q.amount_balance == 0

    def test_above_hundred_rejected(self) -> None:
        with pytest.raises(ValidationError):
            compute_booking(150, 10, 1, 101, 10)

    @pytest.mark.parametrize("quantity,expected", [
        (2, 5), (0, 5), (-3, 5), (None, 5), ("x", 5), (9, 9), ("12", 12),
    ])
    def test_min_order_qty(self, quantity, expected) -> None:
        q = compute_booking(100, quantity, 5, 10, 10)
        assert q.qty == expected

    def test_missing_min_order_qty_defaults_to_one(self) -> None:
        assert compute_booking(100, None, None, 10, 10).qty == 1
        assert compute_booking(100, 0, 0, 10, 10).qty == 1

    @pytest.mark.parametrize("price", [0, -1, None, "free", "NaN"])
    def test_price_must_be_positive(self, price) -> None:
        with pytest.raises(InvalidPlantPrice):
            compute_booking(price, 1, 1, 10, 10)

    def test_invalid_price_is_a_validation_error(self) -> None:
        assert issubclass(InvalidPlantPrice, ValidationError)

    def test_rounding_half_up_and_exact_sum(self) -> None:
        # 37 * 3 = 111; 11% -> 12.21 -> 12
        q = compute_booking(37, 3, 1, 11, 10)
        assert q.amount_total == Decimal("111")
        assert q.amount_advance == Decimal("12")
        assert q.amount_advance + q.amount_balance == q.amount_total

        # 5 * 1 at 10% -> 0.5 rounds up to 1
        q = compute_booking(5, 1, 1, 10, 10)
        assert q.amount_advance == Decimal("1")
        assert q.amount_balance == Decimal("4")

    @pytest.mark.parametrize("price", ["1.99", "0.5", "149.5", 12.25])
    def test_fractional_price_rejected(self, price) -> None:
        with pytest.raises(InvalidPlantPrice):
            compute_booking(price, 7, 1, 99, 10)

    def test_whole_price_with_zero_cents_accepted(self) -> None:
        q = compute_booking(Decimal("150.00"), 10, 1, 10, 10)
        assert q.amount_total == 1500

    def test_sum_holds_across_prices(self) -> None:
        for price in (1, 2, 33, 199, 999):
            for pct in (10, 17, 33, 50, 99):
                q = compute_booking(price, 7, 1, pct, 10)
                assert q.amount_advance + q.amount_balance == q.amount_total
                assert q.amount_advance >= 0
                assert q.amount_balance >= 0


class TestMinorUnits:
    def test_scales_by_hundred(self) -> None:
        assert to_minor_units(Decimal("150")) == 15000
        assert to_minor_units(Decimal("12.345")) == 1235

    def test_never_below_one(self) -> None:
        assert to_minor_units(Decimal("0")) == 1
        assert to_minor_units(Decimal("0.001")) == 1
