"""
Tests for decimal money helpers and budget / capital status classification
"""
import pytest
from decimal import Decimal

from core.financial_precision import (
    to_decimal, to_float, round_whole, floor_whole, safe_divide, safe_add,
    calculate_percentage, calculate_remaining, amounts_differ,
    validate_non_negative, validate_positive, clamp_non_negative,
    FinancialPrecisionError, NegativeValueError
)
from financial_status import (
    get_budget_status, get_capital_status, calculate_dcc_from_budget,
    get_indirect_budget, is_enhanced_budget
)


class TestDecimalConversion:

    def test_float_sum_is_exact(self):
        assert to_decimal(0.1) + to_decimal(0.2) == Decimal("0.3")

    def test_none_is_zero(self):
        assert to_decimal(None) == Decimal("0")

    def test_bool_rejected(self):
        with pytest.raises(FinancialPrecisionError):
            to_decimal(True)

    def test_garbage_string_rejected(self):
        with pytest.raises(FinancialPrecisionError):
            to_decimal("abc")

    def test_to_float_rounds_half_up(self):
        assert to_float(Decimal("10.005")) == 10.01
        assert to_float(Decimal("10.004")) == 10.0

    def test_whole_unit_rounding(self):
        assert round_whole(Decimal("2.5")) == Decimal("3")
        assert floor_whole(Decimal("333.99")) == Decimal("333")


class TestArithmetic:

    def test_divide_by_zero_is_zero(self):
        assert safe_divide(10, 0) == Decimal("0")

    def test_percentage(self):
        assert calculate_percentage(1000, 10) == Decimal("100")

    def test_safe_add_many(self):
        assert safe_add(1, "2.5", Decimal("0.5")) == Decimal("4.0")

    def test_clamp(self):
        assert clamp_non_negative(-5) == Decimal("0")
        assert clamp_non_negative(5) == Decimal("5")

    def test_remaining_formula(self):
        assert calculate_remaining(100, 30, 20) == 50.0

    def test_remaining_never_negative(self):
        assert calculate_remaining(100, 80, 30) == 0.0

    def test_reconciliation_tolerance(self):
        assert not amounts_differ(100, 100.005)
        assert amounts_differ(100, 100.02)


class TestValidation:

    def test_negative_rejected(self):
        with pytest.raises(NegativeValueError):
            validate_non_negative(-1, "amount")

    def test_zero_allowed_when_non_negative(self):
        validate_non_negative(0, "amount")

    def test_zero_rejected_when_positive(self):
        with pytest.raises(NegativeValueError):
            validate_positive(0, "amount")


class TestBudgetStatus:

    def test_not_set(self):
        assert get_budget_status(0, 10) == "not_set"

    def test_over_budget(self):
        assert get_budget_status(100, 101) == "over_budget"

    def test_at_risk(self):
        assert get_budget_status(100, 81) == "at_risk"

    def test_on_budget_at_threshold(self):
        assert get_budget_status(100, 80) == "on_budget"


class TestCapitalStatus:

    def test_not_raised(self):
        assert get_capital_status(0, 0) == "not_raised"

    def test_overspent(self):
        assert get_capital_status(-1, 100) == "overspent"

    def test_low(self):
        assert get_capital_status(5, 100) == "low"

    def test_sufficient(self):
        assert get_capital_status(50, 100) == "sufficient"


class TestDirectConstructionCosts:

    def test_legacy_budget_estimate(self):
        # 1,000,000 - 5% - 5% - 5% default contingency
        assert calculate_dcc_from_budget({"total": 1000000}) == 850000.0

    def test_legacy_budget_explicit_contingency(self):
        assert calculate_dcc_from_budget({"total": 1000000, "contingency": 100000}) == 800000.0

    def test_enhanced_budget(self):
        budget = {"total": 1000000, "directConstructionCosts": 700000}
        assert is_enhanced_budget(budget)
        assert calculate_dcc_from_budget(budget) == 700000.0

    def test_no_budget(self):
        assert calculate_dcc_from_budget(None) == 0.0

    def test_indirect_budget(self):
        assert get_indirect_budget({"indirect": 5000}) == 5000.0
        assert get_indirect_budget({"indirectCosts": {"total": 2500}}) == 2500.0
