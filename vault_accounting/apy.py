"""Rolling APY windows and yield math."""

from collections.abc import Sequence
from decimal import Decimal

from vault_accounting.constants import MAX_PERCENT, SECONDS_IN_YEAR, WAD


def push_rate(window: Sequence[Decimal], rate: Decimal, max_len: int) -> tuple[Decimal, ...]:
    """Append rate to the window, evicting the oldest entries beyond max_len."""
    if max_len <= 0:
        raise ValueError("max_len must be > 0")
    values = (*window, rate)
    return values[-max_len:]


def calculate_average(values: Sequence[Decimal]) -> Decimal:
    if not values:
        return Decimal(0)
    return sum(values, Decimal(0)) / Decimal(len(values))


def calculate_median(values: Sequence[Decimal]) -> Decimal:
    """Exact middle for odd counts, mean of the two central values for even counts."""
    if not values:
        return Decimal(0)
    sorted_values = sorted(Decimal(v) for v in values)
    mid = len(sorted_values) // 2
    if len(sorted_values) % 2:
        return sorted_values[mid]
    return (sorted_values[mid - 1] + sorted_values[mid]) / Decimal(2)


def get_compounded_apy(first_apy: Decimal, second_apy: Decimal) -> Decimal:
    """
    Combine two percent rates where the second stream compounds on top of the first.

    E.g. a lending supply rate earned on a token whose value itself accrues staking yield:
    (1 + a/100) * (1 + b/100) - 1, scaled back to percent.
    """
    first = Decimal(first_apy) / MAX_PERCENT
    second = Decimal(second_apy) / MAX_PERCENT
    return ((Decimal(1) + first) * (Decimal(1) + second) - Decimal(1)) * MAX_PERCENT


def rate_change_to_apy(rate_change: int, duration: int) -> Decimal:
    """Annualize a change of the WAD share rate over duration seconds, in percent."""
    if duration <= 0:
        return Decimal(0)
    return Decimal(rate_change) * Decimal(SECONDS_IN_YEAR) * MAX_PERCENT / Decimal(WAD) / Decimal(duration)


def calculate_apy(earned_assets: int, principal_assets: int, duration: int) -> Decimal:
    """Annualize assets earned on a principal over duration seconds, in percent."""
    if principal_assets <= 0 or duration <= 0:
        return Decimal(0)
    return (
        Decimal(earned_assets) * Decimal(SECONDS_IN_YEAR) * MAX_PERCENT / Decimal(principal_assets) / Decimal(duration)
    )


def get_annual_reward(principal: int, apy: Decimal) -> int:
    """Assets earned by principal in a year at apy percent, truncated."""
    return int(Decimal(principal) * Decimal(apy) / MAX_PERCENT)
