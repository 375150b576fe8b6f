"""Platform fee calculation.

Fees are a percentage of each outbound payment leg, deducted before transfer and
sent to the treasury wallet as a leg of the same settlement. Amounts are
Decimal throughout; fees are rounded down to the ledger's 9-decimal precision so
the net amount never exceeds what the escrow holds.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from escrow_engine.domain.models import SettlementLeg

AMOUNT_QUANTUM = Decimal("0.000000001")
HUNDRED = Decimal("100")

PLATFORM_FEE_LABEL = "platform_fee"


@dataclass(frozen=True)
class FeeCalculation:
    gross_amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    fee_percentage: Decimal


def quantize_amount(amount: Decimal) -> Decimal:
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def calculate_platform_fee(amount: Decimal, fee_percentage: Decimal) -> FeeCalculation:
    """Split a gross amount into (fee, net) for the given percentage."""
    if fee_percentage < 0 or fee_percentage > HUNDRED:
        raise ValueError(f"Fee percentage must be within [0, 100], got {fee_percentage}")
    fee = quantize_amount(amount * fee_percentage / HUNDRED)
    return FeeCalculation(
        gross_amount=amount,
        platform_fee=fee,
        net_amount=amount - fee,
        fee_percentage=fee_percentage,
    )


def milestone_amount(buyer_amount: Decimal, percentage: Decimal) -> Decimal:
    return quantize_amount(buyer_amount * percentage / HUNDRED)


def apply_fees(
    legs: list[SettlementLeg],
    fee_percentage: Decimal,
    treasury_wallet: str,
) -> list[SettlementLeg]:
    """Expand payment legs into net + fee legs.

    fee_exempt legs pass through unchanged. Zero-amount legs are dropped.
    """
    expanded: list[SettlementLeg] = []
    for leg in legs:
        if leg.amount <= 0:
            continue
        if leg.fee_exempt or fee_percentage == 0:
            expanded.append(leg)
            continue

        fees = calculate_platform_fee(leg.amount, fee_percentage)
        expanded.append(
            SettlementLeg(
                source=leg.source,
                destination=leg.destination,
                amount=fees.net_amount,
                token=leg.token,
                label=leg.label,
                fee_exempt=False,
            )
        )
        if fees.platform_fee > 0:
            expanded.append(
                SettlementLeg(
                    source=leg.source,
                    destination=treasury_wallet,
                    amount=fees.platform_fee,
                    token=leg.token,
                    label=PLATFORM_FEE_LABEL,
                    fee_exempt=True,
                )
            )
    return expanded


def validate_fee_configuration(
    fee_percentage: Decimal,
    treasury_wallet: str,
) -> tuple[list[str], list[str]]:
    """Return (errors, warnings) for the fee settings."""
    errors: list[str] = []
    warnings: list[str] = []

    if fee_percentage < 0 or fee_percentage > HUNDRED:
        errors.append(f"Invalid fee percentage: {fee_percentage}%")
    if fee_percentage > 0 and not treasury_wallet:
        errors.append("Treasury wallet not configured. Set TREASURY_WALLET.")
    if fee_percentage == 0:
        warnings.append("Platform fee is set to 0% - no fees will be collected")
    if fee_percentage > 10:
        warnings.append(f"Platform fee is high: {fee_percentage}%")

    return errors, warnings
