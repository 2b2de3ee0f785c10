"""
Checkout & Order API Routes (customer side)
"""
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlmodel import Session

from . import order_service
from .checkout_service import submit_order
from .db import get_session
from .models import CheckoutRequest, OrderCancel, PromoValidateRequest, TableSession
from .promotion_service import validate_promo
from .responses import ok
from .security import get_table_session

router = APIRouter()


@router.post("/checkout/validate-promo")
def validate_promo_code(
    request: PromoValidateRequest,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(validate_promo(session, table_session.tenant_id, request.code, request.subtotal))


@router.post("/checkout", status_code=201)
def checkout(
    request: CheckoutRequest,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    order = submit_order(session, table_session, request)
    return ok(order_service.order_read(session, order))


@router.get("/orders")
def list_orders(
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    orders = order_service.list_session_orders(session, table_session)
    return ok([order_service.order_read(session, order) for order in orders])


@router.get("/orders/{order_id}")
def get_order(
    order_id: int,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    order = order_service.get_session_order(session, table_session, order_id)
    return ok(order_service.order_read(session, order))


@router.get("/orders/{order_id}/tracking")
def track_order(
    order_id: int,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    order = order_service.get_session_order(session, table_session, order_id)
    return ok(order_service.build_tracking(session, order))


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: int,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    request: OrderCancel | None = None,
    session: Session = Depends(get_session),
) -> dict:
    order = order_service.cancel_by_customer(
        session, table_session, order_id, request.reason if request else None
    )
    return ok(order_service.order_read(session, order))
