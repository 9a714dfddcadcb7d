"""Property-based tests for plan change proration.

Covers non-negative charges and credits, clamping of the elapsed fraction
and the worked 100/200 examples.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import assume, given, settings, strategies as st

from app.core.errors import InvalidPlanTransition
from app.modules.billing.models import ChangeDirection
from app.modules.billing.proration import calculate, elapsed_fraction, quantize_money


@dataclass
class StubPlan:
    code: str
    price: Decimal


CYCLE_START = datetime(2024, 1, 1)

price_strategy = st.decimals(
    min_value=Decimal("0.00"),
    max_value=Decimal("100000000.00"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
cycle_days_strategy = st.integers(min_value=1, max_value=366)
# Seconds relative to the cycle start, including instants outside the cycle
offset_strategy = st.integers(min_value=-40 * 86400, max_value=400 * 86400)


class TestProrationScenarios:
    """The worked 100/200 examples on a 30-day cycle, 10 days elapsed."""

    now = CYCLE_START + timedelta(days=10)
    cycle_end = CYCLE_START + timedelta(days=30)

    def test_upgrade_charges_target_price_minus_unused_value(self) -> None:
        result = calculate(
            StubPlan("a", Decimal("100")),
            StubPlan("b", Decimal("200")),
            CYCLE_START,
            self.cycle_end,
            self.now,
        )

        assert result.direction == ChangeDirection.UPGRADE
        assert result.unused_value == Decimal("66.67")
        assert result.amount_due == Decimal("133.33")
        assert result.credit_amount == Decimal("0.00")

    def test_downgrade_credits_unused_value_minus_target_remaining_cost(self) -> None:
        result = calculate(
            StubPlan("b", Decimal("200")),
            StubPlan("a", Decimal("100")),
            CYCLE_START,
            self.cycle_end,
            self.now,
        )

        assert result.direction == ChangeDirection.DOWNGRADE
        assert result.unused_value == Decimal("133.33")
        assert result.target_remaining_cost == Decimal("66.67")
        # Rounded once from full precision, not 133.33 - 66.67
        assert result.credit_amount == Decimal("66.67")
        assert result.amount_due == Decimal("0.00")

    def test_equal_price_switch_is_a_zero_credit_downgrade(self) -> None:
        result = calculate(
            StubPlan("a", Decimal("100")),
            StubPlan("a2", Decimal("100")),
            CYCLE_START,
            self.cycle_end,
            self.now,
        )

        assert result.direction == ChangeDirection.DOWNGRADE
        assert result.credit_amount == Decimal("0.00")

    def test_same_plan_is_rejected(self) -> None:
        with pytest.raises(InvalidPlanTransition):
            calculate(
                StubPlan("a", Decimal("100")),
                StubPlan("a", Decimal("100")),
                CYCLE_START,
                self.cycle_end,
                self.now,
            )


class TestElapsedFraction:

    def test_zero_length_cycle_counts_as_fully_elapsed(self) -> None:
        assert elapsed_fraction(CYCLE_START, CYCLE_START, CYCLE_START) == Decimal(1)

    def test_inverted_cycle_counts_as_fully_elapsed(self) -> None:
        end = CYCLE_START - timedelta(days=1)
        assert elapsed_fraction(CYCLE_START, end, CYCLE_START) == Decimal(1)

    @given(cycle_days=cycle_days_strategy, offset=offset_strategy)
    @settings(max_examples=100)
    def test_fraction_is_clamped_to_unit_interval(self, cycle_days: int, offset: int) -> None:
        end = CYCLE_START + timedelta(days=cycle_days)
        now = CYCLE_START + timedelta(seconds=offset)

        fraction = elapsed_fraction(CYCLE_START, end, now)

        assert Decimal(0) <= fraction <= Decimal(1)
        if now <= CYCLE_START:
            assert fraction == Decimal(0)
        if now >= end:
            assert fraction == Decimal(1)


class TestProrationProperties:

    @given(
        current_price=price_strategy,
        target_price=price_strategy,
        cycle_days=cycle_days_strategy,
        offset=offset_strategy,
    )
    @settings(max_examples=200)
    def test_amounts_are_never_negative_or_unbounded(
        self,
        current_price: Decimal,
        target_price: Decimal,
        cycle_days: int,
        offset: int,
    ) -> None:
        end = CYCLE_START + timedelta(days=cycle_days)
        now = CYCLE_START + timedelta(seconds=offset)

        result = calculate(
            StubPlan("current", current_price),
            StubPlan("target", target_price),
            CYCLE_START,
            end,
            now,
        )

        assert result.amount_due >= 0
        assert result.credit_amount >= 0
        # A change never charges more than the target plan or refunds more than the current one
        assert result.amount_due <= target_price
        assert result.credit_amount <= current_price
        # Exactly one side of the ledger moves
        assert result.amount_due == 0 or result.credit_amount == 0

    @given(
        current_price=price_strategy,
        target_price=price_strategy,
        cycle_days=cycle_days_strategy,
        offset=offset_strategy,
    )
    @settings(max_examples=100)
    def test_direction_follows_price_order(
        self,
        current_price: Decimal,
        target_price: Decimal,
        cycle_days: int,
        offset: int,
    ) -> None:
        end = CYCLE_START + timedelta(days=cycle_days)
        now = CYCLE_START + timedelta(seconds=offset)

        result = calculate(
            StubPlan("current", current_price),
            StubPlan("target", target_price),
            CYCLE_START,
            end,
            now,
        )

        expected = ChangeDirection.UPGRADE if target_price > current_price else ChangeDirection.DOWNGRADE
        assert result.direction == expected
        assert result.is_upgrade == (expected == ChangeDirection.UPGRADE)

    @given(
        current_price=price_strategy,
        target_price=price_strategy,
        cycle_days=cycle_days_strategy,
        offset=offset_strategy,
    )
    @settings(max_examples=100)
    def test_money_figures_have_two_decimal_places(
        self,
        current_price: Decimal,
        target_price: Decimal,
        cycle_days: int,
        offset: int,
    ) -> None:
        end = CYCLE_START + timedelta(days=cycle_days)
        now = CYCLE_START + timedelta(seconds=offset)

        result = calculate(
            StubPlan("current", current_price),
            StubPlan("target", target_price),
            CYCLE_START,
            end,
            now,
        )

        for value in (
            result.amount_due,
            result.credit_amount,
            result.unused_value,
            result.target_remaining_cost,
        ):
            assert value == quantize_money(value)
            assert value.as_tuple().exponent == -2

    @given(
        current_price=price_strategy,
        target_price=price_strategy,
        cycle_days=cycle_days_strategy,
    )
    @settings(max_examples=100)
    def test_change_at_cycle_start_charges_full_difference(
        self,
        current_price: Decimal,
        target_price: Decimal,
        cycle_days: int,
    ) -> None:
        assume(target_price > current_price)
        end = CYCLE_START + timedelta(days=cycle_days)

        result = calculate(
            StubPlan("current", current_price),
            StubPlan("target", target_price),
            CYCLE_START,
            end,
            CYCLE_START,
        )

        assert result.amount_due == quantize_money(target_price - current_price)

    @given(
        current_price=price_strategy,
        target_price=price_strategy,
        cycle_days=cycle_days_strategy,
        offset=offset_strategy,
    )
    @settings(max_examples=50)
    def test_calculation_is_deterministic(
        self,
        current_price: Decimal,
        target_price: Decimal,
        cycle_days: int,
        offset: int,
    ) -> None:
        assume(current_price != target_price)
        end = CYCLE_START + timedelta(days=cycle_days)
        now = CYCLE_START + timedelta(seconds=offset)
        current = StubPlan("current", current_price)
        target = StubPlan("target", target_price)

        assert calculate(current, target, CYCLE_START, end, now) == calculate(
            current, target, CYCLE_START, end, now
        )
