"""
Staff API Routes

Login, order status transitions, kitchen item progress, offline settlement
and table management. Access is checked per role through PermissionChecker.
"""
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlmodel import Session, select

from . import order_service
from .db import get_session
from .errors import UnauthorizedError
from .models import (
    OrderItemStatusUpdate,
    OrderMarkPaid,
    OrderStatusUpdate,
    User,
)
from .permissions import Permissions
from .responses import ok
from .security import PermissionChecker, create_access_token, verify_password
from .settings import settings
from .table_session_service import clear_table, regenerate_qr_token

router = APIRouter()


@router.post("/auth/token")
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session)
):
    statement = select(User).where(User.email == form_data.username)
    user = session.exec(statement).first()

    if not user or not verify_password(form_data.password, user.hashed_password):
        raise UnauthorizedError("Incorrect username or password")

    access_token = create_access_token(
        data={
            "sub": user.email,
            "tenant_id": user.tenant_id,
            "role": user.role.value,
            "token_version": user.token_version,
        },
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes)
    )

    response = JSONResponse(content=ok({"access_token": access_token, "token_type": "bearer"}))
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        secure=settings.is_production,  # Only enforce HTTPS in production
        samesite="lax",
        path="/",  # Ensure cookie is sent with all API requests
        max_age=settings.access_token_expire_minutes * 60
    )
    return response


@router.get("/orders")
def list_orders(
    current_user: Annotated[User, Depends(PermissionChecker(Permissions.ORDERS_READ))],
    include_closed: bool = Query(False),
    session: Session = Depends(get_session),
) -> dict:
    orders = order_service.list_tenant_orders(session, current_user, include_closed)
    return ok([order_service.order_read(session, order) for order in orders])


@router.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    status_update: OrderStatusUpdate,
    current_user: Annotated[User, Depends(PermissionChecker(Permissions.ORDERS_UPDATE))],
    session: Session = Depends(get_session),
) -> dict:
    order = order_service.change_status(
        session, current_user, order_id, status_update.status, status_update.reason
    )
    return ok(order_service.order_read(session, order))


@router.patch("/orders/{order_id}/items/{item_id}/status")
def update_order_item_status(
    order_id: int,
    item_id: int,
    status_update: OrderItemStatusUpdate,
    current_user: Annotated[User, Depends(PermissionChecker(Permissions.ORDER_ITEMS_UPDATE))],
    session: Session = Depends(get_session),
) -> dict:
    item = order_service.update_item_status(session, current_user, order_id, item_id, status_update.status)
    return ok(order_service.order_item_read(item))


@router.put("/orders/{order_id}/mark-paid")
def mark_order_paid(
    order_id: int,
    payment_data: OrderMarkPaid,
    current_user: Annotated[User, Depends(PermissionChecker(Permissions.ORDERS_PAY))],
    session: Session = Depends(get_session),
) -> dict:
    """Mark order as paid manually (for cash/terminal payments)."""
    order = order_service.mark_paid(session, current_user, order_id, payment_data.payment_method)
    return ok(order_service.order_read(session, order))


@router.post("/tables/{table_id}/clear")
def clear_table_session(
    table_id: int,
    current_user: Annotated[User, Depends(PermissionChecker(Permissions.TABLES_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    closed = clear_table(session, current_user, table_id)
    return ok({"table_id": table_id, "sessions_closed": closed})


@router.post("/tables/{table_id}/regenerate-qr")
def regenerate_qr(
    table_id: int,
    current_user: Annotated[User, Depends(PermissionChecker(Permissions.TABLES_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    table = regenerate_qr_token(session, current_user, table_id)
    return ok({
        "table_id": table.id,
        "qr_token": table.qr_token,
        "qr_url": f"{settings.api_url}/api/v1/t/{table.qr_token}",
    })
