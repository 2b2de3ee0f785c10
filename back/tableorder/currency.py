"""
USD/VND conversion, used only where a payment method settles in VND (SEPAY_QR).
Cart and order arithmetic stays in USD dollars.
"""
from decimal import ROUND_HALF_UP, Decimal

from .pricing import round_money, to_decimal
from .settings import settings


def _rate(rate) -> Decimal:
    value = to_decimal(rate if rate is not None else settings.usd_vnd_rate)
    if value <= 0:
        raise ValueError("Exchange rate must be positive")
    return value


def usd_to_vnd(amount, rate=None) -> int:
    """USD dollars to whole dong (half-up)."""
    vnd = to_decimal(amount) * _rate(rate)
    return int(vnd.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def vnd_to_usd(vnd, rate=None) -> Decimal:
    """Dong to USD dollars, unrounded; round with round_money for display."""
    return to_decimal(vnd) / _rate(rate)


def format_usd(amount) -> str:
    return f"${round_money(amount):,.2f}"


def format_vnd(vnd: int) -> str:
    return f"{vnd:,} VND"


def format_payment_amount(amount, rate=None, vnd: int | None = None) -> dict:
    """USD amount with its VND equivalent; pass vnd to show an amount already quoted."""
    if vnd is None:
        vnd = usd_to_vnd(amount, rate)
    usd = format_usd(amount)
    return {
        "usd": usd,
        "vnd": format_vnd(vnd),
        "display": f"{usd} (≈ {format_vnd(vnd)})",
        "usd_dollars": round_money(amount),
        "vnd_amount": vnd,
        "exchange_rate": _rate(rate),
    }
