from typing import Annotated

from fastapi import APIRouter, Depends
from sqlmodel import Session

from . import cart_service
from .db import get_session
from .models import AddCartItemRequest, TableSession, UpdateCartItemRequest
from .responses import ok
from .security import get_table_session

router = APIRouter()


@router.get("/cart")
def get_cart(
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(cart_service.get_cart(session, table_session))


@router.post("/cart/items")
def add_cart_item(
    request: AddCartItemRequest,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(cart_service.add_item(session, table_session, request))


@router.patch("/cart/items/{item_id}")
def update_cart_item(
    item_id: str,
    request: UpdateCartItemRequest,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(cart_service.update_item(session, table_session, item_id, request))


@router.delete("/cart/items/{item_id}")
def remove_cart_item(
    item_id: str,
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(cart_service.remove_item(session, table_session, item_id))


@router.delete("/cart")
def clear_cart(
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    cart_service.clear_cart(session, table_session)
    return ok(cart_service.get_cart(session, table_session))
