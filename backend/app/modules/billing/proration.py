"""Proration of plan changes within a billing cycle.

Pure functions only: no I/O, no clock reads. The caller passes ``now``.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from app.core.errors import InvalidPlanTransition
from app.modules.billing.models import ChangeDirection

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class PricedPlan(Protocol):
    code: str
    price: Decimal


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a proration calculation.

    Attributes:
        direction: upgrade when the target costs more, otherwise downgrade
        amount_due: what the tenant pays now (upgrades), never negative
        credit_amount: what the tenant's wallet receives (downgrades), never negative
        elapsed_fraction: share of the cycle already used, in [0, 1]
        unused_value: value left on the current plan
        target_remaining_cost: cost of the target plan for the rest of the cycle
    """
    direction: ChangeDirection
    amount_due: Decimal
    credit_amount: Decimal
    elapsed_fraction: Decimal
    unused_value: Decimal
    target_remaining_cost: Decimal

    @property
    def is_upgrade(self) -> bool:
        return self.direction == ChangeDirection.UPGRADE


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def elapsed_fraction(cycle_start: datetime, cycle_end: datetime, now: datetime) -> Decimal:
    """Share of the cycle elapsed at ``now``, clamped to [0, 1].

    A zero-length or inverted cycle counts as fully elapsed.
    """
    total = (cycle_end - cycle_start).total_seconds()
    if total <= 0:
        return Decimal(1)
    elapsed = Decimal(str((now - cycle_start).total_seconds())) / Decimal(str(total))
    return min(Decimal(1), max(Decimal(0), elapsed))


def calculate(
    current_plan: PricedPlan,
    target_plan: PricedPlan,
    cycle_start: datetime,
    cycle_end: datetime,
    now: datetime,
) -> ProrationResult:
    """Price a switch from ``current_plan`` to ``target_plan`` at ``now``.

    Args:
        current_plan: Plan the subscription is on
        target_plan: Plan requested
        cycle_start: Current billing cycle anchor
        cycle_end: End of the current billing cycle
        now: Moment the change is priced at

    Returns:
        ProrationResult with every money figure rounded to cents

    Raises:
        InvalidPlanTransition: If both plans are the same
    """
    if current_plan.code == target_plan.code:
        raise InvalidPlanTransition(plan_code=current_plan.code)

    fraction = elapsed_fraction(cycle_start, cycle_end, now)
    remaining = Decimal(1) - fraction

    current_price = Decimal(current_plan.price)
    target_price = Decimal(target_plan.price)

    unused_value = current_price * remaining
    target_remaining_cost = target_price * remaining

    if target_price > current_price:
        direction = ChangeDirection.UPGRADE
        amount_due = max(ZERO, target_price - unused_value)
        credit_amount = ZERO
    else:
        direction = ChangeDirection.DOWNGRADE
        amount_due = ZERO
        credit_amount = max(ZERO, unused_value - target_remaining_cost)

    return ProrationResult(
        direction=direction,
        amount_due=quantize_money(amount_due),
        credit_amount=quantize_money(credit_amount),
        elapsed_fraction=fraction,
        unused_value=quantize_money(unused_value),
        target_remaining_cost=quantize_money(target_remaining_cost),
    )
