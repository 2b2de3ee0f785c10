"""
Payment Service

Online payment attempts for SEPAY_QR (VietQR bank transfer, settled in VND)
and CARD_ONLINE (Stripe PaymentIntent). An attempt is live until its deadline;
past it the attempt is EXPIRED, which is distinct from an explicit FAILED.
"""
import hashlib
import hmac
import logging
import re
from datetime import datetime, timedelta
from urllib.parse import urlencode

import stripe
from sqlmodel import Session, select

from .currency import format_payment_amount, usd_to_vnd
from .errors import (
    NotFoundError,
    PaymentFailedError,
    PaymentTimeoutError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    Order,
    OrderStatusHistory,
    Payment,
    PaymentRead,
    SepayWebhook,
    TableSession,
    Tenant,
    as_utc,
    utcnow,
)
from .order_service import get_session_order, publish_order_event
from .pricing import cents_to_money
from .realtime import EVENT_PAYMENT_COMPLETED, EVENT_TIMER_UPDATE
from .settings import settings
from .statuses import OrderStatus, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

SEPAY_QR_BASE_URL = "https://qr.sepay.vn/img"
LIVE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


def _get_stripe_currency_code(currency: str | None) -> str:
    """Map a tenant currency (symbol or ISO code) to a Stripe currency code."""
    currency_map = {'$': 'usd', '€': 'eur', '£': 'gbp', '₫': 'vnd'}
    if not currency:
        return settings.stripe_currency
    if currency in currency_map:
        return currency_map[currency]
    if len(currency) == 3:
        return currency.lower()
    return settings.stripe_currency


def normalize_transfer_content(text: str) -> str:
    return re.sub(r"[\s\-_.]", "", text or "").upper()


def transfer_content_for(order: Order) -> str:
    return normalize_transfer_content(f"TO{order.order_number}")


def build_sepay_qr_url(tenant: Tenant, amount_vnd: int, transfer_content: str) -> str:
    query = urlencode({
        "acc": tenant.sepay_account_number,
        "bank": tenant.sepay_bank_code,
        "amount": amount_vnd,
        "des": transfer_content,
    })
    return f"{SEPAY_QR_BASE_URL}?{query}"


def time_remaining(payment: Payment, now: datetime | None = None) -> int:
    if payment.status not in LIVE_STATUSES:
        return 0
    now = now or utcnow()
    return max(0, int((as_utc(payment.expires_at) - now).total_seconds()))


def payment_read(payment: Payment, now: datetime | None = None, already_confirmed: bool = False) -> PaymentRead:
    amount = cents_to_money(payment.amount_cents)
    display_amount = None
    if payment.amount_vnd is not None:
        display_amount = format_payment_amount(amount, vnd=payment.amount_vnd)["display"]
    return PaymentRead(
        id=payment.id,
        order_id=payment.order_id,
        method=payment.method,
        status=payment.status,
        amount=amount,
        amount_vnd=payment.amount_vnd,
        display_amount=display_amount,
        currency=payment.currency,
        qr_url=payment.qr_url,
        transfer_content=payment.transfer_content,
        client_secret=payment.client_secret,
        failure_reason=payment.failure_reason,
        expires_at=as_utc(payment.expires_at),
        time_remaining=time_remaining(payment, now),
        already_confirmed=already_confirmed,
    )


def expire_if_overdue(session: Session, payment: Payment, now: datetime | None = None) -> bool:
    """Move a live attempt past its deadline to EXPIRED. Returns True if it did."""
    now = now or utcnow()
    if payment.status in LIVE_STATUSES and as_utc(payment.expires_at) <= now:
        payment.status = PaymentStatus.EXPIRED
        payment.failure_reason = "Payment time expired"
        session.add(payment)
        session.commit()
        session.refresh(payment)
        logger.info(f"Payment {payment.id} for order {payment.order_id} expired")
        return True
    return False


def _tenant_for(session: Session, order: Order) -> Tenant:
    tenant = session.get(Tenant, order.tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    return tenant


def _stripe_key(tenant: Tenant) -> str:
    # Tenant-specific Stripe keys, fallback to global config
    key = tenant.stripe_secret_key or settings.stripe_secret_key
    if not key:
        raise ValidationError("Stripe not configured for this tenant")
    return key


def create_payment(session: Session, table_session: TableSession, order_id: int) -> Payment:
    """Start an attempt for the order, or return the one still live."""
    order = get_session_order(session, table_session, order_id)
    method = PaymentMethod(order.payment_method)
    if method == PaymentMethod.BILL_TO_TABLE:
        raise ValidationError("Order is settled with staff; no online payment needed")
    if order.status == OrderStatus.CANCELLED:
        raise ValidationError("Order is cancelled", {"order_id": order.id})
    if order.payment_status == PaymentStatus.COMPLETED:
        raise ValidationError("Order is already paid", {"order_id": order.id})

    now = utcnow()
    live = session.exec(
        select(Payment)
        .where(Payment.order_id == order.id, Payment.status.in_(list(LIVE_STATUSES)))
        .order_by(Payment.created_at.desc())
    ).all()
    for payment in live:
        if not expire_if_overdue(session, payment, now):
            return payment

    tenant = _tenant_for(session, order)
    payment = Payment(
        tenant_id=order.tenant_id,
        order_id=order.id,
        method=method,
        amount_cents=order.total_cents,
        currency="USD",
        expires_at=now + timedelta(minutes=settings.payment_expiry_minutes),
    )

    if method == PaymentMethod.SEPAY_QR:
        if not tenant.sepay_configured:
            raise ValidationError("Bank transfer payments are not available at this restaurant")
        payment.amount_vnd = usd_to_vnd(cents_to_money(order.total_cents))
        payment.transfer_content = transfer_content_for(order)
        payment.qr_url = build_sepay_qr_url(tenant, payment.amount_vnd, payment.transfer_content)
    else:
        try:
            intent = stripe.PaymentIntent.create(
                amount=order.total_cents,
                currency=_get_stripe_currency_code(tenant.currency),
                api_key=_stripe_key(tenant),
                metadata={
                    "order_id": str(order.id),
                    "table_id": str(order.table_id),
                    "tenant_id": str(order.tenant_id),
                },
                description=f"Order {order.order_number} at {tenant.name} - {order.table_number}",
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe rejected payment for order {order.order_number}: {e}")
            raise PaymentFailedError(str(e))
        payment.provider_reference = intent.id
        payment.client_secret = intent.client_secret

    if order.payment_status != PaymentStatus.PENDING:
        # Retrying after a failed attempt
        order.payment_status = PaymentStatus.PENDING
        session.add(order)
    session.add(payment)
    session.commit()
    session.refresh(payment)
    logger.info(f"Payment {payment.id} started for order {order.order_number} ({method.value})")
    return payment


def get_session_payment(session: Session, table_session: TableSession, payment_id: str) -> Payment:
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", {"payment_id": payment_id})
    # Scoped through the order so one table cannot read another's payments
    get_session_order(session, table_session, payment.order_id)
    expire_if_overdue(session, payment)
    return payment


def complete_payment(
    session: Session,
    payment: Payment,
    transaction_id: str | None = None,
) -> Order:
    """Mark the attempt and its order as paid, then notify the table and staff."""
    now = utcnow()
    order = session.get(Order, payment.order_id)
    payment.status = PaymentStatus.COMPLETED
    payment.paid_at = now
    payment.failure_reason = None
    if transaction_id:
        payment.transaction_id = transaction_id
    order.payment_status = PaymentStatus.COMPLETED
    order.paid_at = now
    session.add(payment)
    session.add(order)
    session.add(OrderStatusHistory(
        order_id=order.id,
        status=order.status,
        notes=f"Paid online ({PaymentMethod(payment.method).value})",
    ))
    session.commit()
    session.refresh(order)
    logger.info(f"Payment {payment.id} completed for order {order.order_number}")
    publish_order_event(EVENT_PAYMENT_COMPLETED, order, payment_id=payment.id)
    return order


def fail_payment(session: Session, payment: Payment, reason: str) -> None:
    order = session.get(Order, payment.order_id)
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = reason
    order.payment_status = PaymentStatus.FAILED
    session.add(payment)
    session.add(order)
    session.commit()
    session.refresh(payment)
    logger.info(f"Payment {payment.id} failed for order {order.order_number}: {reason}")


def verify_payment(session: Session, table_session: TableSession, payment_id: str) -> PaymentRead:
    """Re-check an attempt. Confirming an already completed one changes nothing."""
    payment = get_session_payment(session, table_session, payment_id)
    if payment.status == PaymentStatus.COMPLETED:
        return payment_read(payment, already_confirmed=True)

    if payment.method == PaymentMethod.CARD_ONLINE and payment.provider_reference and payment.status in LIVE_STATUSES:
        order = session.get(Order, payment.order_id)
        tenant = _tenant_for(session, order)
        try:
            intent = stripe.PaymentIntent.retrieve(payment.provider_reference, api_key=_stripe_key(tenant))
        except stripe.StripeError as e:
            logger.warning(f"Could not verify payment {payment.id} with Stripe: {e}")
            return payment_read(payment)
        if intent.status == "succeeded":
            complete_payment(session, payment, transaction_id=intent.id)
        elif intent.status == "canceled":
            fail_payment(session, payment, "Payment was cancelled")
        elif intent.status == "processing" and payment.status != PaymentStatus.PROCESSING:
            payment.status = PaymentStatus.PROCESSING
            session.add(payment)
            session.commit()
            session.refresh(payment)

    return payment_read(payment)


def extend_payment(session: Session, table_session: TableSession, payment_id: str) -> Payment:
    """Explicitly reset a live attempt's deadline."""
    payment = get_session_payment(session, table_session, payment_id)
    if payment.status == PaymentStatus.EXPIRED:
        raise PaymentTimeoutError(details={"payment_id": payment.id})
    if payment.status not in LIVE_STATUSES:
        raise ValidationError(
            "Only pending payments can be extended",
            {"payment_id": payment.id, "status": PaymentStatus(payment.status).value},
        )
    payment.expires_at = utcnow() + timedelta(minutes=settings.payment_expiry_minutes)
    session.add(payment)
    session.commit()
    session.refresh(payment)

    order = session.get(Order, payment.order_id)
    publish_order_event(
        EVENT_TIMER_UPDATE,
        order,
        payment_id=payment.id,
        expires_at=as_utc(payment.expires_at).isoformat(),
    )
    return payment


# ============ SEPAY WEBHOOK ============

def sign_sepay_payload(body: bytes, secret: str | None = None) -> str:
    secret = settings.sepay_webhook_secret if secret is None else secret
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_sepay_signature(body: bytes, signature: str | None) -> None:
    if not settings.sepay_webhook_secret:
        raise UnauthorizedError("SePay webhook secret is not configured")
    if not signature or not hmac.compare_digest(sign_sepay_payload(body), signature.strip().lower()):
        raise UnauthorizedError("Invalid webhook signature")


def _match_payment(session: Session, transfer_content: str) -> Payment | None:
    content = normalize_transfer_content(transfer_content)
    candidates = session.exec(
        select(Payment).where(
            Payment.method == PaymentMethod.SEPAY_QR,
            Payment.status.in_([*LIVE_STATUSES, PaymentStatus.EXPIRED]),
        ).order_by(Payment.created_at.desc())
    ).all()
    for payment in candidates:
        if payment.transfer_content and payment.transfer_content in content:
            return payment
    return None


def handle_sepay_webhook(session: Session, webhook: SepayWebhook) -> dict:
    """Apply a bank transfer notification. Replays of a transaction are ignored."""
    duplicate = session.exec(
        select(Payment).where(Payment.transaction_id == webhook.transaction_id)
    ).first()
    if duplicate is not None:
        logger.info(f"SePay transaction {webhook.transaction_id} already processed")
        return {"processed": False, "duplicate": True, "payment_id": duplicate.id}

    payment = _match_payment(session, webhook.transfer_content)
    if payment is None:
        logger.warning(f"SePay transaction {webhook.transaction_id} matches no payment")
        return {"processed": False, "duplicate": False, "payment_id": None}

    payment.transaction_id = webhook.transaction_id
    if webhook.status.lower() != "success":
        fail_payment(session, payment, "Bank transfer failed")
    elif webhook.amount < (payment.amount_vnd or 0):
        fail_payment(
            session,
            payment,
            f"Amount mismatch: received {webhook.amount} VND, expected {payment.amount_vnd} VND",
        )
    else:
        # Money that arrives after the deadline still settles the order
        complete_payment(session, payment, transaction_id=webhook.transaction_id)
    return {"processed": True, "duplicate": False, "payment_id": payment.id}
