"""
Tests for utility functions in mmbot/utils.py.
"""
import time

import pytest

from mmbot.errors import InvalidInput
from mmbot.utils import (
    clip,
    fmt,
    fmt_sats,
    is_finite_number,
    now_ms,
    order_cost,
    paid_price,
    require_finite,
    require_price,
    timestamp_to_date,
)


class TestTimeFunctions:

    @pytest.mark.unit
    def test_now_ms_returns_integer(self):
        assert isinstance(now_ms(), int)

    @pytest.mark.unit
    def test_now_ms_reasonable_range(self):
        before = int(time.time() * 1000)
        result = now_ms()
        after = int(time.time() * 1000)
        assert before <= result <= after

    @pytest.mark.unit
    def test_timestamp_to_date_format(self):
        assert len(timestamp_to_date(1703123456789)) == len("2023-12-21 01:50:56")


class TestClip:

    @pytest.mark.unit
    @pytest.mark.parametrize("value,lo,hi,expected", [
        (5.0, 0.0, 10.0, 5.0),
        (-5.0, 0.0, 10.0, 0.0),
        (15.0, 0.0, 10.0, 10.0),
        (0.0, 0.0, 10.0, 0.0),
    ])
    def test_clip_basic_cases(self, value, lo, hi, expected):
        assert clip(value, lo, hi) == expected


class TestValidation:

    @pytest.mark.unit
    @pytest.mark.parametrize("value,expected", [
        (1, True), (0.5, True), (-3, True),
        (float("nan"), False), (float("inf"), False),
        (True, False), ("1", False), (None, False),
    ])
    def test_is_finite_number(self, value, expected):
        assert is_finite_number(value) is expected

    @pytest.mark.unit
    def test_require_finite(self):
        assert require_finite("x", 0) == 0
        assert require_finite("x", -1, minimum=-5) == -1
        with pytest.raises(InvalidInput, match="x must be >= 0"):
            require_finite("x", -1)
        with pytest.raises(InvalidInput):
            require_finite("x", float("nan"))

    @pytest.mark.unit
    def test_require_price(self):
        assert require_price(1) == 1
        assert require_price(99) == 99
        for bad in (0, 100, 50.0, True):
            with pytest.raises(InvalidInput):
                require_price(bad)


class TestOrderCost:
    """Cost and refund arithmetic in YES-implied prices."""

    @pytest.mark.unit
    def test_paid_price(self):
        assert paid_price("yes", 30) == 30
        assert paid_price("no", 30) == 70
        with pytest.raises(InvalidInput):
            paid_price("maybe", 30)

    @pytest.mark.unit
    @pytest.mark.parametrize("side,price,amount,expected", [
        ("no", 10, 500_000, 450_000),
        ("no", 10, 1, 1),
        ("no", 99, 150, 2),
        ("yes", 30, 333, 100),
        ("yes", 1, 100, 1),
        ("no", 50, 0, 0),
    ])
    def test_order_cost(self, side, price, amount, expected):
        assert order_cost(side, price, amount) == expected

    @pytest.mark.unit
    def test_order_cost_exact_for_large_amounts(self):
        amount = 10 ** 17 + 1
        assert order_cost("no", 3, amount) == 97_000_000_000_000_001


class TestFormatting:

    @pytest.mark.unit
    @pytest.mark.parametrize("value,nd,expected", [
        (3.14159, 2, "3.14"),
        (0.5, 4, "0.5000"),
        (-1.5, 1, "-1.5"),
    ])
    def test_fmt(self, value, nd, expected):
        assert fmt(value, nd) == expected

    @pytest.mark.unit
    def test_fmt_sats(self):
        assert fmt_sats(1234567) == "1,234,567"
        assert fmt_sats(999.9) == "999"
