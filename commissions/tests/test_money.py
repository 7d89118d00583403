"""
Unit Tests for commission arithmetic and the idempotency guard helpers

Commission = round_half_up(amount * rate) in integer minor units.
"""

import pytest
from decimal import Decimal

from commissions.exceptions import InvalidCommissionRateError
from commissions.idempotency import is_processed, record_event
from commissions.money import calculate_commission


class TestCalculateCommission:
    """Tests for the rounding rule."""

    def test_exact_amount(self):
        assert calculate_commission(800, 0.70) == 560

    @pytest.mark.parametrize(
        "amount, rate, expected",
        [
            (1, 0.5, 1),  # 0.5 rounds up
            (3, 0.5, 2),  # 1.5 rounds up
            (5, 0.5, 3),  # 2.5 rounds up, not to even
            (999, 0.705, 704),  # 704.295
            (1999, 0.6, 1199),  # 1199.4
            (2999, 0.15, 450),  # 449.85
            (101, 0.1, 10),  # 10.1
        ],
    )
    def test_half_up_rounding(self, amount, rate, expected):
        assert calculate_commission(amount, rate) == expected

    def test_float_rates_do_not_leak_binary_error(self):
        """Test that 0.29 * 50 is 14.5 and rounds to 15, not 14."""
        assert calculate_commission(50, 0.29) == 15

    def test_decimal_and_string_rates(self):
        assert calculate_commission(1000, Decimal("0.333")) == 333
        assert calculate_commission(1000, "0.3335") == 334

    @pytest.mark.parametrize("rate", [0, 0.0, 1, 1.0])
    def test_rate_bounds_inclusive(self, rate):
        assert calculate_commission(1234, rate) == int(1234 * rate)

    @pytest.mark.parametrize("rate", [-0.1, 1.01, "abc", float("nan")])
    def test_invalid_rates(self, rate):
        with pytest.raises(InvalidCommissionRateError):
            calculate_commission(100, rate)

    @pytest.mark.parametrize("amount", [10.0, "10", True])
    def test_amount_must_be_integer(self, amount):
        with pytest.raises(TypeError):
            calculate_commission(amount, 0.5)

    def test_independent_of_call_order(self):
        amounts = [800, 999, 1, 12345]
        forward = [calculate_commission(a, 0.7) for a in amounts]
        backward = [calculate_commission(a, 0.7) for a in reversed(amounts)]
        assert forward == list(reversed(backward))


class TestIdempotencyHelpers:
    """Tests for processed event id bookkeeping."""

    def test_missing_document_not_processed(self):
        assert is_processed(None, "evt_1") is False
        assert is_processed({}, "evt_1") is False

    def test_recorded_event_is_processed(self):
        document = {"processed_event_ids": record_event(None, "evt_1")}
        assert is_processed(document, "evt_1") is True
        assert is_processed(document, "evt_2") is False

    def test_record_is_set_like(self):
        document = {"processed_event_ids": ["evt_1"]}
        assert record_event(document, "evt_1") == ["evt_1"]
        assert record_event(document, "evt_2") == ["evt_1", "evt_2"]

    def test_record_does_not_mutate_document(self):
        document = {"processed_event_ids": ["evt_1"]}
        record_event(document, "evt_2")
        assert document["processed_event_ids"] == ["evt_1"]

    def test_limit_keeps_most_recent(self):
        document = {"processed_event_ids": ["evt_1", "evt_2", "evt_3"]}
        assert record_event(document, "evt_4", limit=3) == ["evt_2", "evt_3", "evt_4"]
