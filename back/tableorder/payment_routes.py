"""
Payment API Routes

Customer-side payment attempts plus the SePay bank transfer webhook.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session

from . import payment_service
from .db import get_session
from .errors import ValidationError
from .models import PaymentCreate, SepayWebhook, TableSession
from .responses import ok
from .security import get_table_session

router = APIRouter()


@router.post("/payments", status_code=201)
def create_payment(
    request: PaymentCreate,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    payment = payment_service.create_payment(session, table_session, request.order_id)
    return ok(payment_service.payment_read(payment))


@router.post("/payments/webhook/sepay")
async def sepay_webhook(
    request: Request,
    x_sepay_signature: Annotated[str | None, Header()] = None,
    session: Session = Depends(get_session),
) -> dict:
    body = await request.body()
    payment_service.verify_sepay_signature(body, x_sepay_signature)
    try:
        webhook = SepayWebhook.model_validate_json(body)
    except PydanticValidationError as e:
        raise ValidationError("Malformed webhook payload", {"errors": e.errors(include_context=False)})
    return ok(payment_service.handle_sepay_webhook(session, webhook))


@router.get("/payments/{payment_id}")
def get_payment(
    payment_id: str,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    payment = payment_service.get_session_payment(session, table_session, payment_id)
    return ok(payment_service.payment_read(payment))


@router.post("/payments/{payment_id}/verify")
def verify_payment(
    payment_id: str,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(payment_service.verify_payment(session, table_session, payment_id))


@router.post("/payments/{payment_id}/extend")
def extend_payment(
    payment_id: str,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    payment = payment_service.extend_payment(session, table_session, payment_id)
    return ok(payment_service.payment_read(payment))
