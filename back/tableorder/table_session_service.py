"""
Table sessions: QR token resolution, session reuse and staff table clearing.
"""
import logging
from datetime import timedelta

from sqlmodel import Session, select

from .errors import InvalidTokenError, NotFoundError
from .models import (
    Cart,
    CartItem,
    Table,
    TableSession,
    TableSessionRead,
    Tenant,
    User,
    as_utc,
    new_id,
    utcnow,
)
from .settings import settings

logger = logging.getLogger(__name__)


def _active_session(session: Session, table_id: int) -> TableSession | None:
    statement = (
        select(TableSession)
        .where(TableSession.table_id == table_id)
        .where(TableSession.active == True)  # noqa: E712
        .order_by(TableSession.scanned_at.desc())
    )
    return session.exec(statement).first()


def resolve_qr_token(session: Session, token: str) -> tuple[TableSession, Table, Tenant]:
    """Exchange a QR token for the table's session.

    Diners at the same table share one session while it is live; an expired
    session is closed and replaced.
    """
    table = session.exec(select(Table).where(Table.qr_token == token)).first()
    if table is None or not table.is_active:
        raise InvalidTokenError()

    tenant = session.get(Tenant, table.tenant_id)
    if tenant is None:
        raise InvalidTokenError()

    now = utcnow()
    table_session = _active_session(session, table.id)
    if table_session is not None and as_utc(table_session.expires_at) <= now:
        logger.info(f"Session {table_session.id} for table {table.id} expired, starting a new one")
        table_session.active = False
        session.add(table_session)
        table_session = None

    if table_session is None:
        table_session = TableSession(
            tenant_id=table.tenant_id,
            table_id=table.id,
            scanned_at=now,
            expires_at=now + timedelta(hours=settings.session_ttl_hours),
        )
        session.add(table_session)
        logger.info(f"Started session for table {table.id} (tenant {table.tenant_id})")

    session.commit()
    session.refresh(table_session)
    return table_session, table, tenant


def session_read(session: Session, table_session: TableSession) -> TableSessionRead:
    table = session.get(Table, table_session.table_id)
    tenant = session.get(Tenant, table_session.tenant_id)
    return TableSessionRead(
        session_id=table_session.id,
        table_id=table_session.table_id,
        tenant_id=table_session.tenant_id,
        table_number=table.table_number if table else "",
        restaurant_name=tenant.name if tenant else "",
        scanned_at=as_utc(table_session.scanned_at),
        expires_at=as_utc(table_session.expires_at),
        active=table_session.active,
    )


def _get_tenant_table(session: Session, tenant_id: int, table_id: int) -> Table:
    table = session.exec(
        select(Table).where(Table.id == table_id, Table.tenant_id == tenant_id)
    ).first()
    if table is None:
        raise NotFoundError("Table not found")
    return table


def clear_table(session: Session, user: User, table_id: int) -> int:
    """Close every live session of a table (the party has left). Returns how many."""
    table = _get_tenant_table(session, user.tenant_id, table_id)
    now = utcnow()
    sessions = session.exec(
        select(TableSession)
        .where(TableSession.table_id == table.id)
        .where(TableSession.active == True)  # noqa: E712
    ).all()
    for table_session in sessions:
        table_session.active = False
        table_session.cleared_at = now
        table_session.cleared_by_user_id = user.id
        session.add(table_session)

        cart = session.exec(select(Cart).where(Cart.session_id == table_session.id)).first()
        if cart is not None:
            for item in session.exec(select(CartItem).where(CartItem.cart_id == cart.id)).all():
                session.delete(item)
            session.delete(cart)

    session.commit()
    logger.info(f"Table {table.id} cleared by user {user.id}: {len(sessions)} session(s) closed")
    return len(sessions)


def regenerate_qr_token(session: Session, user: User, table_id: int) -> Table:
    """Issue a new QR token; the previous one stops resolving."""
    table = _get_tenant_table(session, user.tenant_id, table_id)
    table.qr_token = new_id()
    session.add(table)
    session.commit()
    session.refresh(table)
    logger.info(f"QR token regenerated for table {table.id}")
    return table
