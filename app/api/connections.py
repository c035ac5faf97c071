from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import get_current_user, get_event_bus, require_role
from app.db.session import get_db
from app.realtime.events import DomainEventBus
from app.schemas.matching import ConnectionCreate, ConnectionRespond
from app.services.direct_connections import (
    block_connection,
    list_connections_for_user,
    respond_connection,
    send_connection_request,
    serialize_connection,
)
from app.services.identity import ROLE_CITIZEN, ROLE_LAWYER, Identity
from app.services.store import store_errors

router = APIRouter()


@router.post("", status_code=201)
def create_connection(
    payload: ConnectionCreate,
    db: Session = Depends(get_db),
    user: Identity = Depends(require_role(ROLE_CITIZEN)),
    events: DomainEventBus = Depends(get_event_bus),
):
    with store_errors(db):
        row = send_connection_request(
            db,
            citizen_id=user.user_id,
            lawyer_id=payload.lawyer_id,
            message=payload.message,
            connection_type=payload.connection_type,
            events=events,
        )
    return serialize_connection(row)


@router.get("")
def get_connections(
    status: str | None = None,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
):
    with store_errors(db):
        rows = list_connections_for_user(db, user.user_id, status=status)
    return {"rows": [serialize_connection(row) for row in rows], "total": len(rows)}


@router.post("/{connection_id}/respond")
def respond_to_connection(
    connection_id: str,
    payload: ConnectionRespond,
    db: Session = Depends(get_db),
    user: Identity = Depends(require_role(ROLE_LAWYER)),
    events: DomainEventBus = Depends(get_event_bus),
):
    with store_errors(db):
        row = respond_connection(
            db,
            connection_id=connection_id,
            lawyer_id=user.user_id,
            action=payload.action,
            response_message=payload.response_message,
            events=events,
        )
    return serialize_connection(row)


@router.post("/{connection_id}/block")
def block(
    connection_id: str,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
):
    with store_errors(db):
        row = block_connection(db, connection_id=connection_id, actor_id=user.user_id)
    return serialize_connection(row)
