"""Pricing helpers."""

TAX_RATE = 0.2


def apply_tax(amount: float) -> float:
    """Add tax to an amount."""
    return round(amount * (1 + TAX_RATE), 2)


def format_price(amount: float) -> str:
    return f"${amount:.2f}"


def legacy_discount(amount: float) -> float:
    # Kept for the old checkout flow.
    return amount * 0.9


def _round_cents(amount: float) -> float:
    return round(amount, 2)
