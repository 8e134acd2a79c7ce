from decimal import Decimal

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    """Convert an exact major-unit amount to integer cents."""
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    if amount != amount.quantize(CENT):
        raise ValueError("Amount must have at most 2 decimal places")
    return int(amount * 100)


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)
