"""
Penalty Calculator
rosca/services/penalties.py

    days_overdue = max(0, whole days between due_date and now)
    rate         = min(days_overdue * rate_per_day, max_rate)      (percent)
    amount       = round_half_up(contribution_amount * rate / 100, 2)

Pure and deterministic. Making sure a contribution is penalized only once is
the orchestrator's job (penalty sweep + unique index), not this module's.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from rosca.config import DEFAULT_POLICY

CENTS = Decimal("0.01")
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class PenaltyPolicy:
    rate_per_day: Decimal = DEFAULT_POLICY["penalty_rate_per_day"]
    max_rate: Decimal = DEFAULT_POLICY["penalty_max_rate"]
    grace_days: int = DEFAULT_POLICY["penalty_grace_days"]

    @classmethod
    def from_group(cls, group) -> "PenaltyPolicy":
        return cls(
            rate_per_day=Decimal(group.penalty_rate_per_day),
            max_rate=Decimal(group.penalty_max_rate),
            grace_days=int(group.penalty_grace_days or 0),
        )


def days_overdue(due_date: datetime, now: datetime) -> int:
    seconds = (now - due_date).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // SECONDS_PER_DAY)


def penalty_rate(days: int, policy: PenaltyPolicy) -> Decimal:
    if days <= policy.grace_days:
        return Decimal("0")
    return min(Decimal(days) * policy.rate_per_day, policy.max_rate)


def calculate_late_penalty(
    amount: Decimal,
    due_date: datetime,
    now: datetime,
    policy: PenaltyPolicy = PenaltyPolicy(),
) -> Decimal:
    """Late-payment penalty for a contribution of ``amount`` due at ``due_date``."""
    rate = penalty_rate(days_overdue(due_date, now), policy)
    return (Decimal(amount) * rate / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)


def penalty_for(contribution, now: datetime, policy: PenaltyPolicy = PenaltyPolicy()) -> Decimal:
    return calculate_late_penalty(contribution.amount, contribution.due_date, now, policy)
