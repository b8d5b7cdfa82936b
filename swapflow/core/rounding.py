"""
Swap cost computation with exact decimal rounding.

Four steps, one rounding point per quantity:
1. Power differential: floor((new_wh - old_wh) / 1000) to 2dp. Only rounding point for energy.
2. Quota to apply: min(available_quota, power_differential). As-is, quota arrives at 2dp.
3. Chargeable energy: power_differential - quota_to_apply. No rounding.
4. Cost to report: chargeable_energy * rate, rounded UP to 2dp if it carries more than 2dp.

The customer pays floor(cost); that floor is applied at the payment boundary only
and never fed back into the reported cost.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Any, Dict, Optional, Union

# Increase precision to avoid intermediate rounding drift
getcontext().prec = 28

TWO_DP = Decimal("0.01")
ZERO = Decimal("0")
# Products closer than this to their 2dp rounding are treated as exact
CEIL_TOLERANCE = Decimal("0.0000001")

Number = Union[int, float, str, Decimal]


class PaymentSkipReason(str, Enum):
    """Why collection was skipped for a swap."""
    QUOTA_CREDIT = "QUOTA_CREDIT"
    ZERO_COST_ROUNDING = "ZERO_COST_ROUNDING"


def to_decimal(value: Optional[Number]) -> Decimal:
    """Convert a measurement to Decimal via its shortest repr (no binary float noise)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def floor_2dp(value: Decimal) -> Decimal:
    return value.quantize(TWO_DP, rounding=ROUND_FLOOR)


def round_2dp(value: Decimal) -> Decimal:
    return value.quantize(TWO_DP, rounding=ROUND_HALF_UP)


def ceil_if_more_than_2dp(value: Decimal) -> Decimal:
    """Round up to 2dp when the value carries more than 2dp, otherwise round normally."""
    rounded = round_2dp(value)
    if abs(value - rounded) > CEIL_TOLERANCE:
        return value.quantize(TWO_DP, rounding=ROUND_CEILING)
    return rounded


@dataclass(frozen=True)
class SwapPaymentInput:
    """Raw measurements for one swap. Energies in Wh, quota in kWh."""
    new_battery_energy_wh: Number
    old_battery_energy_wh: Number
    rate_per_kwh: Number
    quota_total: Number = 0
    quota_used: Number = 0


@dataclass(frozen=True)
class SwapCost:
    """Result of calculate_swap_payment. Pure value, never authoritative."""
    energy_diff: Decimal
    quota_deduction: Decimal
    chargeable_energy: Decimal
    gross_energy_cost: Decimal
    quota_credit_value: Decimal
    cost: Decimal

    @property
    def display_cost(self) -> int:
        return display_cost(self.cost)

    @property
    def should_skip_payment(self) -> bool:
        return should_skip_payment(self.cost)

    @property
    def has_sufficient_quota(self) -> bool:
        return has_sufficient_quota(self.quota_deduction, self.energy_diff)

    @property
    def skip_reason(self) -> Optional[PaymentSkipReason]:
        return payment_skip_reason(self)

    def to_dict(self) -> Dict[str, Any]:
        """Plain floats for persistence and display."""
        return {
            "energy_diff": float(self.energy_diff),
            "quota_deduction": float(self.quota_deduction),
            "chargeable_energy": float(self.chargeable_energy),
            "gross_energy_cost": float(self.gross_energy_cost),
            "quota_credit_value": float(self.quota_credit_value),
            "cost": float(self.cost),
        }


def calculate_swap_payment(inp: SwapPaymentInput) -> SwapCost:
    """
    Compute energy differential, quota application and cost for a swap.

    Total over its input domain: negative differentials yield zero quota and
    zero cost, missing quota counts as zero.
    """
    new_wh = to_decimal(inp.new_battery_energy_wh)
    old_wh = to_decimal(inp.old_battery_energy_wh)
    rate = to_decimal(inp.rate_per_kwh)

    power_differential = floor_2dp((new_wh - old_wh) / Decimal(1000))

    available_quota = max(ZERO, to_decimal(inp.quota_total) - to_decimal(inp.quota_used))
    if power_differential > ZERO:
        quota_to_apply = min(available_quota, power_differential)
    else:
        quota_to_apply = ZERO

    chargeable = max(ZERO, power_differential - quota_to_apply)

    cost = ceil_if_more_than_2dp(chargeable * rate)
    gross = ceil_if_more_than_2dp(power_differential * rate)
    credit = round_2dp(quota_to_apply * rate)

    return SwapCost(
        energy_diff=power_differential,
        quota_deduction=quota_to_apply,
        chargeable_energy=chargeable,
        gross_energy_cost=gross,
        quota_credit_value=credit,
        cost=cost if cost > ZERO else ZERO.quantize(TWO_DP),
    )


def display_cost(cost: Number) -> int:
    """Whole currency units the customer is asked to pay."""
    return int(to_decimal(cost).to_integral_value(rounding=ROUND_FLOOR))


def should_skip_payment(cost: Number) -> bool:
    return display_cost(cost) <= 0


def has_sufficient_quota(quota_deduction: Number, energy_diff: Number) -> bool:
    energy = to_decimal(energy_diff)
    return to_decimal(quota_deduction) >= energy and energy > ZERO


def payment_skip_reason(result: SwapCost) -> Optional[PaymentSkipReason]:
    """QUOTA_CREDIT when quota covers the swap, ZERO_COST_ROUNDING when the floor hits zero."""
    if not result.should_skip_payment:
        return None
    if result.chargeable_energy <= ZERO:
        return PaymentSkipReason.QUOTA_CREDIT
    return PaymentSkipReason.ZERO_COST_ROUNDING
