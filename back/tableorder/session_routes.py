"""
Session API Routes

QR token resolution, the current table session, and the session-scoped menu.
"""
import logging
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Response
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from .db import get_session
from .errors import TableOrderError, rescan_reason
from .menu_service import list_menu
from .models import ScanRequest, TableSession, as_utc, utcnow
from .responses import ok
from .security import create_session_token, get_table_session
from .settings import settings
from .table_session_service import resolve_qr_token, session_read

logger = logging.getLogger(__name__)

router = APIRouter()


def set_session_cookie(response: Response, table_session: TableSession) -> None:
    max_age = max(0, int((as_utc(table_session.expires_at) - utcnow()).total_seconds()))
    response.set_cookie(
        key=settings.session_cookie_name,
        value=create_session_token(table_session),
        httponly=True,
        secure=settings.is_production,  # Only enforce HTTPS in production
        samesite="lax",
        path="/",
        max_age=max_age,
    )


@router.get("/t/{qr_token}", include_in_schema=False)
def scan_redirect(qr_token: str, session: Session = Depends(get_session)):
    """QR code target: resolve, set the cookie, and land on a URL without the token."""
    try:
        table_session, _, _ = resolve_qr_token(session, qr_token)
    except TableOrderError as e:
        logger.info(f"QR resolution failed: {e.code}")
        query = urlencode({"reason": rescan_reason(e)})
        return RedirectResponse(f"{settings.frontend_url}/invalid-qr?{query}", status_code=302)

    response = RedirectResponse(f"{settings.frontend_url}/menu", status_code=302)
    set_session_cookie(response, table_session)
    return response


@router.post("/sessions/scan")
def scan(
    request: ScanRequest,
    response: Response,
    session: Session = Depends(get_session),
) -> dict:
    table_session, _, _ = resolve_qr_token(session, request.token)
    set_session_cookie(response, table_session)
    return ok(session_read(session, table_session))


@router.get("/sessions/current")
def current_session(
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(session_read(session, table_session))


@router.get("/internal/sessions/validate", include_in_schema=False)
def validate_session(
    table_session: Annotated[TableSession, Depends(get_table_session)],
) -> dict:
    """Used by the websocket bridge to authorize customer sockets."""
    return ok({
        "session_id": table_session.id,
        "table_id": table_session.table_id,
        "tenant_id": table_session.tenant_id,
    })


@router.get("/menu")
def get_menu(
    table_session: Annotated[TableSession, Depends(get_table_session)],
    session: Session = Depends(get_session),
) -> dict:
    return ok(list_menu(session, table_session.tenant_id))
