from datetime import datetime
from decimal import Decimal

from sqlmodel import Session, select

from .models import Promotion, PromotionType, PromoValidation, as_utc, utcnow
from .pricing import ZERO, round_money, to_decimal


def find_promotion(session: Session, tenant_id: int, code: str) -> Promotion | None:
    return session.exec(
        select(Promotion).where(
            Promotion.tenant_id == tenant_id,
            Promotion.code == code.strip().upper(),
        )
    ).first()


def compute_discount(promotion: Promotion, subtotal: Decimal) -> Decimal:
    """Discount for a subtotal, capped by max_discount and never above the subtotal."""
    if promotion.type == PromotionType.percentage:
        discount = subtotal * to_decimal(promotion.value) / 100
        if promotion.max_discount is not None:
            discount = min(discount, to_decimal(promotion.max_discount))
    else:
        discount = to_decimal(promotion.value)
    return round_money(max(min(discount, subtotal), ZERO))


def validate_promo(
    session: Session,
    tenant_id: int,
    code: str,
    subtotal,
    now: datetime | None = None,
) -> PromoValidation:
    """Check a promo code against a subtotal.

    Never raises for a bad code: the result carries valid=False and the reason.
    """
    now = now or utcnow()
    subtotal = to_decimal(subtotal)
    promotion = find_promotion(session, tenant_id, code) if code and code.strip() else None

    if promotion is None:
        return PromoValidation(valid=False, error="Invalid promo code")
    if not promotion.active:
        return PromoValidation(valid=False, error="This promo code is no longer active")
    if now < as_utc(promotion.starts_at):
        return PromoValidation(valid=False, error="This promo code is not yet valid")
    if now > as_utc(promotion.expires_at):
        return PromoValidation(valid=False, error="This promo code has expired")
    if promotion.usage_limit is not None and promotion.usage_count >= promotion.usage_limit:
        return PromoValidation(valid=False, error="This promo code has reached its usage limit")
    if promotion.min_order_value is not None and subtotal < to_decimal(promotion.min_order_value):
        return PromoValidation(
            valid=False,
            error=f"Minimum order value is ${round_money(promotion.min_order_value)}",
        )

    return PromoValidation(
        valid=True,
        discount_amount=compute_discount(promotion, subtotal),
        code=promotion.code,
        type=promotion.type,
        description=promotion.description,
    )


def redeem(session: Session, tenant_id: int, code: str) -> None:
    """Count one use of a promo code; the caller commits."""
    promotion = find_promotion(session, tenant_id, code)
    if promotion is not None:
        promotion.usage_count += 1
        session.add(promotion)
