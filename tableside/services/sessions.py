import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import errors, models, schemas
from ..config import SESSION_TTL_HOURS
from ..errors import operation
from ..models import OrderStatus, SessionStatus, utcnow
from ..permissions import Actor, require

logger = logging.getLogger(__name__)

OPEN_ORDER_STATUSES = (
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.preparing,
    OrderStatus.ready,
)


@dataclass
class SessionStart:
    table: models.RestaurantTable
    session: models.TableSession
    in_progress: bool


@dataclass
class SessionCheck:
    valid: bool
    reason: Optional[str] = None
    session: Optional[models.TableSession] = None


def new_token() -> str:
    return secrets.token_urlsafe(24)


# Tables ----------------------------------------------------------------------


def get_table(db: Session, table_id: int) -> Optional[models.RestaurantTable]:
    return db.get(models.RestaurantTable, table_id)


def get_table_by_token(db: Session, token: str) -> Optional[models.RestaurantTable]:
    return (
        db.query(models.RestaurantTable)
        .filter(
            models.RestaurantTable.access_token == token,
            models.RestaurantTable.is_active == True,
        )
        .first()
    )


@operation
def create_table(db: Session, payload: schemas.TableCreate, actor: Actor):
    require(actor, "TABLES_MANAGE")
    taken = (
        db.query(models.RestaurantTable)
        .filter(models.RestaurantTable.table_number == payload.table_number)
        .first()
    )
    if taken:
        raise errors.ValidationError(
            "Table number already in use", table_number=payload.table_number
        )
    table = models.RestaurantTable(**payload.model_dump(), access_token=new_token())
    db.add(table)
    db.commit()
    db.refresh(table)
    logger.info("created table %s", table.table_number)
    return table


@operation
def update_table(db: Session, table_id: int, payload: schemas.TableUpdate, actor: Actor):
    require(actor, "TABLES_MANAGE")
    table = get_table(db, table_id)
    if table is None:
        raise errors.NotFound("Table not found", table_id=table_id)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(table, key, value)
    if not table.is_active:
        # A deactivated table stops taking orders at once.
        session = _active_row(db, table_id)
        if session is not None:
            _close(db, session.id)
    db.commit()
    db.refresh(table)
    return table


@operation
def delete_table(db: Session, table_id: int, actor: Actor):
    require(actor, "TABLES_DELETE")
    table = get_table(db, table_id)
    if table is None:
        raise errors.NotFound("Table not found", table_id=table_id)
    has_history = (
        db.query(models.TableSession.id).filter(models.TableSession.table_id == table_id).first()
        or db.query(models.Order.id).filter(models.Order.table_id == table_id).first()
    )
    if has_history:
        raise errors.ValidationError("Table has sessions or orders; deactivate it instead")
    db.delete(table)
    db.commit()
    logger.info("deleted table %s", table_id)
    return table_id


def list_tables_with_status(db: Session) -> List[dict]:
    tables = (
        db.query(models.RestaurantTable)
        .filter(models.RestaurantTable.is_active == True)
        .order_by(models.RestaurantTable.table_number)
        .all()
    )
    now = utcnow()
    sessions = {
        s.table_id: s
        for s in db.query(models.TableSession).filter(
            models.TableSession.status == SessionStatus.active,
            models.TableSession.expires_at > now,
        )
    }
    counts = dict(
        db.query(models.Order.table_id, func.count(models.Order.id))
        .filter(
            models.Order.table_id.isnot(None),
            models.Order.status.in_(OPEN_ORDER_STATUSES),
        )
        .group_by(models.Order.table_id)
        .all()
    )
    return [
        {
            "table": table,
            "active_session": sessions.get(table.id),
            "open_orders": counts.get(table.id, 0),
        }
        for table in tables
    ]


# Sessions --------------------------------------------------------------------


def _active_row(db: Session, table_id: int) -> Optional[models.TableSession]:
    return (
        db.query(models.TableSession)
        .filter(
            models.TableSession.table_id == table_id,
            models.TableSession.status == SessionStatus.active,
        )
        .first()
    )


def get_active_session(db: Session, table_id: int) -> Optional[models.TableSession]:
    session = _active_row(db, table_id)
    if session is None or session.expires_at <= utcnow():
        return None
    return session


def get_session_by_token(db: Session, session_token: str) -> Optional[models.TableSession]:
    session = (
        db.query(models.TableSession)
        .join(models.RestaurantTable, models.TableSession.table_id == models.RestaurantTable.id)
        .filter(
            models.TableSession.session_token == session_token,
            models.TableSession.status == SessionStatus.active,
            models.RestaurantTable.is_active == True,
        )
        .first()
    )
    if session is None or session.expires_at <= utcnow():
        return None
    return session


def _close(db: Session, session_id: int) -> bool:
    closed = (
        db.query(models.TableSession)
        .filter(
            models.TableSession.id == session_id,
            models.TableSession.status == SessionStatus.active,
        )
        .update(
            {
                models.TableSession.status: SessionStatus.closed,
                models.TableSession.closed_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    return closed == 1


@operation
def create_table_session(db: Session, token: str) -> SessionStart:
    """Open the dining session for the table behind a QR token.

    Idempotent while a session is running. The insert relies on the
    one-active-session index: a scan that loses the race rolls back and is
    handed the winning session.
    """
    table = get_table_by_token(db, token)
    if table is None:
        raise errors.NotFound("Table not found or inactive")
    table_id = table.id

    existing = _active_row(db, table_id)
    if existing is not None:
        if existing.expires_at > utcnow():
            return SessionStart(table=table, session=existing, in_progress=True)
        _close(db, existing.id)
        logger.info("expired session %s closed for table %s", existing.id, table_id)

    session = models.TableSession(
        table_id=table_id,
        session_token=new_token(),
        status=SessionStatus.active,
        expires_at=utcnow() + timedelta(hours=SESSION_TTL_HOURS),
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = get_active_session(db, table_id)
        if winner is None:
            raise
        logger.info("concurrent scan for table %s joined session %s", table_id, winner.id)
        return SessionStart(table=get_table(db, table_id), session=winner, in_progress=True)
    db.refresh(session)
    logger.info("opened session %s for table %s", session.id, table_id)
    return SessionStart(table=table, session=session, in_progress=False)


def validate_session_token(db: Session, table_token: str, session_token: str) -> SessionCheck:
    table = get_table_by_token(db, table_token)
    session = (
        db.query(models.TableSession)
        .filter(models.TableSession.session_token == session_token)
        .first()
    )
    if table is None or session is None:
        return SessionCheck(valid=False, reason="invalid")
    if session.table_id != table.id:
        return SessionCheck(valid=False, reason="wrong_table")
    if session.status != SessionStatus.active:
        return SessionCheck(valid=False, reason="closed", session=session)
    if session.expires_at <= utcnow():
        return SessionCheck(valid=False, reason="expired", session=session)
    return SessionCheck(valid=True, session=session)


@operation
def close_table_session(db: Session, session_id: int, actor: Actor) -> models.TableSession:
    require(actor, "TABLES_MANAGE")
    session = db.get(models.TableSession, session_id)
    if session is None:
        raise errors.NotFound("Session not found", session_id=session_id)
    if _close(db, session_id):
        logger.info("session %s closed by user %s", session_id, actor.user_id)
    db.commit()
    db.refresh(session)
    return session


@operation
def reset_table(db: Session, table_id: int, actor: Actor) -> Optional[models.TableSession]:
    """Close whatever session is open on the table, expired or not."""
    require(actor, "TABLES_MANAGE")
    if get_table(db, table_id) is None:
        raise errors.NotFound("Table not found", table_id=table_id)
    session = _active_row(db, table_id)
    if session is None:
        return None
    _close(db, session.id)
    db.commit()
    db.refresh(session)
    logger.info("table %s reset by user %s", table_id, actor.user_id)
    return session
