"""
Payout Calculator
rosca/services/payouts.py

    gross = contribution_amount * total_members
    fee   = gross * service_fee_percentage / 100
    net   = gross - fee

Money is Decimal throughout; ROUND_HALF_UP to cents happens once, on the
final figure. Whether ``gross`` was actually collected is checked by the
cycle state machine before it ever asks for a payout amount.
"""

from decimal import Decimal, ROUND_HALF_UP

CENTS = Decimal("0.01")


def calculate_payout_amount(contribution_amount, total_members, service_fee_percentage) -> Decimal:
    gross = Decimal(contribution_amount) * int(total_members)
    fee = gross * Decimal(service_fee_percentage) / Decimal(100)
    return (gross - fee).quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_service_fee(contribution_amount, service_fee_percentage) -> Decimal:
    """Fee share carried on each individual contribution row."""
    fee = Decimal(contribution_amount) * Decimal(service_fee_percentage) / Decimal(100)
    return fee.quantize(CENTS, rounding=ROUND_HALF_UP)


def payout_for_group(group) -> Decimal:
    return calculate_payout_amount(
        group.contribution_amount,
        group.total_members,
        group.service_fee_percentage,
    )
