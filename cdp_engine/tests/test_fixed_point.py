"""Unit tests for fixed-point helpers."""

from decimal import Decimal

import pytest

from cdp_engine.src.fixed_point import (
    BPS,
    SCALE,
    apply_bps,
    ceil_div,
    div_fixed,
    format_fixed,
    mul_fixed,
    to_fixed,
)


class TestToFixed:
    """Test parsing payload values."""

    def test_string(self) -> None:
        assert to_fixed("1000.5") == 1000 * SCALE + SCALE // 2

    def test_int(self) -> None:
        assert to_fixed(3) == 3 * SCALE

    def test_float_uses_shortest_repr(self) -> None:
        """0.1 should parse as exactly 0.1, not its binary approximation."""
        assert to_fixed(0.1) == 10_000_000

    def test_decimal(self) -> None:
        assert to_fixed(Decimal("0.00000001")) == 1

    def test_truncates_extra_decimals(self) -> None:
        """Digits past the eighth decimal are dropped, not rounded."""
        assert to_fixed("1.123456789") == 112345678

    @pytest.mark.parametrize("value", ["1e40", "-1e40", Decimal("9" * 40), 10**40])
    def test_rejects_out_of_range(self, value) -> None:
        """Values too large to carry 8 decimals raise ValueError, not InvalidOperation."""
        with pytest.raises(ValueError, match="out of range"):
            to_fixed(value)

    @pytest.mark.parametrize("value", ["abc", "", "NaN", "Infinity", None, True])
    def test_rejects_non_numeric(self, value) -> None:
        with pytest.raises(ValueError):
            to_fixed(value)


class TestArithmetic:
    """Test integer arithmetic helpers."""

    def test_format_fixed(self) -> None:
        assert format_fixed(to_fixed("250")) == "250.00000000"
        assert format_fixed(-1) == "-0.00000001"

    def test_mul_fixed(self) -> None:
        assert mul_fixed(to_fixed("1.5"), to_fixed("2")) == to_fixed("3")

    def test_div_fixed(self) -> None:
        assert div_fixed(to_fixed("1"), to_fixed("3")) == 33333333

    def test_div_fixed_by_zero(self) -> None:
        with pytest.raises(ZeroDivisionError):
            div_fixed(1, 0)

    def test_apply_bps(self) -> None:
        assert apply_bps(to_fixed("1000"), 7500) == to_fixed("750")
        assert apply_bps(123, BPS) == 123

    def test_ceil_div(self) -> None:
        assert ceil_div(10, 3) == 4
        assert ceil_div(9, 3) == 3
        assert ceil_div(0, 3) == 0
