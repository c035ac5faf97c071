from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.common import utcnow
from app.models.direct_connection import DirectConnection
from app.models.user import User
from app.realtime.events import (
    ConnectionAccepted,
    ConnectionRejected,
    ConnectionRequested,
    DomainEventBus,
    publish_event,
)
from app.services.channel_provisioner import (
    CHANNEL_ACTIVE,
    CHANNEL_PENDING,
    channel_id_for_direct,
    close_channel,
    ensure_direct_channel,
)
from app.services.errors import (
    AlreadyOffered,
    AlreadyResolved,
    Forbidden,
    InvalidPayload,
    NotAvailable,
    NotFound,
)
from app.services.identity import ROLE_CITIZEN, ROLE_LAWYER

_LOG = logging.getLogger("app.connections")

CONNECTION_PENDING = "pending"
CONNECTION_ACCEPTED = "accepted"
CONNECTION_REJECTED = "rejected"
CONNECTION_BLOCKED = "blocked"

CONNECTION_TYPES = ("general_consultation", "specific_case", "ongoing_support")
DEFAULT_CONNECTION_TYPE = "general_consultation"


def _as_uuid(raw: Any, detail: str) -> uuid.UUID:
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError) as exc:
        raise NotFound(detail) from exc


def _clean_text(raw: Any, *, required: bool, field: str) -> str | None:
    text = str(raw or "").strip()
    if not text:
        if required:
            raise InvalidPayload(f"{field} is required")
        return None
    limit = int(settings.DIRECT_MESSAGE_MAX_LENGTH)
    if len(text) > limit:
        raise InvalidPayload(f"{field} too long. Maximum {limit} characters.")
    return text


def _verified_lawyer(db: Session, lawyer_id: uuid.UUID) -> User:
    lawyer = db.get(User, lawyer_id)
    if lawyer is None or lawyer.role != ROLE_LAWYER or not lawyer.is_active or not lawyer.lawyer_verified:
        raise NotFound("Lawyer not found or not verified")
    return lawyer


def find_connection(db: Session, citizen_id: uuid.UUID, lawyer_id: uuid.UUID) -> DirectConnection | None:
    return (
        db.query(DirectConnection)
        .filter(DirectConnection.citizen_id == citizen_id, DirectConnection.lawyer_id == lawyer_id)
        .first()
    )


def send_connection_request(
    db: Session,
    *,
    citizen_id: Any,
    lawyer_id: Any,
    message: Any,
    connection_type: str | None = None,
    events: DomainEventBus | None = None,
) -> DirectConnection:
    """Open (or reopen a rejected) citizen to lawyer connection request."""
    citizen_uuid = _as_uuid(citizen_id, "User not found")
    lawyer_uuid = _as_uuid(lawyer_id, "Lawyer not found or not verified")
    text = _clean_text(message, required=True, field="Request message")
    kind = str(connection_type or DEFAULT_CONNECTION_TYPE).strip().lower()
    if kind not in CONNECTION_TYPES:
        raise InvalidPayload("Unknown connection type")
    if citizen_uuid == lawyer_uuid:
        raise InvalidPayload("Cannot connect to yourself")
    _verified_lawyer(db, lawyer_uuid)

    now = utcnow()
    row = find_connection(db, citizen_uuid, lawyer_uuid)
    if row is not None:
        if row.status == CONNECTION_PENDING:
            raise AlreadyOffered("Connection request already pending")
        if row.status == CONNECTION_ACCEPTED:
            raise NotAvailable("You are already connected with this lawyer")
        if row.status == CONNECTION_BLOCKED or not row.is_active:
            raise NotAvailable("Connection is blocked")
        row.status = CONNECTION_PENDING
        row.request_message = text
        row.response_message = None
        row.connection_type = kind
        row.requested_at = now
        row.responded_at = None
    else:
        row = DirectConnection(
            citizen_id=citizen_uuid,
            lawyer_id=lawyer_uuid,
            status=CONNECTION_PENDING,
            request_message=text,
            connection_type=kind,
            requested_at=now,
            is_active=True,
        )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AlreadyOffered("Connection request already pending") from exc
    db.refresh(row)
    _LOG.info("connection requested id=%s citizen=%s lawyer=%s", row.id, citizen_uuid, lawyer_uuid)
    publish_event(
        events,
        ConnectionRequested(
            connection_id=str(row.id),
            citizen_id=str(citizen_uuid),
            lawyer_id=str(lawyer_uuid),
            message=text,
            connection_type=kind,
        ),
    )
    return row


def respond_connection(
    db: Session,
    *,
    connection_id: Any,
    lawyer_id: Any,
    action: str,
    response_message: Any = None,
    events: DomainEventBus | None = None,
) -> DirectConnection:
    normalized = str(action or "").strip().lower()
    if normalized not in {"accept", "reject"}:
        raise InvalidPayload('Invalid action. Use "accept" or "reject"')
    row = db.get(DirectConnection, _as_uuid(connection_id, "Connection request not found"))
    if row is None:
        raise NotFound("Connection request not found")
    if str(row.lawyer_id) != str(lawyer_id):
        raise Forbidden("Access denied - you cannot respond to this request")
    if row.status != CONNECTION_PENDING:
        raise AlreadyResolved("Connection request has already been responded to")

    reply = _clean_text(response_message, required=False, field="Response message")
    now = utcnow()
    row.response_message = reply
    row.responded_at = now
    if normalized == "accept":
        row.status = CONNECTION_ACCEPTED
        row.channel_id = channel_id_for_direct(row.citizen_id, row.lawyer_id)
        ensure_direct_channel(
            db,
            citizen_id=row.citizen_id,
            lawyer_id=row.lawyer_id,
            status=CHANNEL_ACTIVE,
            direct_connection_id=row.id,
        )
    else:
        row.status = CONNECTION_REJECTED
    db.add(row)
    db.commit()
    db.refresh(row)
    _LOG.info("connection %s id=%s lawyer=%s", row.status, row.id, row.lawyer_id)

    if row.status == CONNECTION_ACCEPTED:
        publish_event(
            events,
            ConnectionAccepted(
                connection_id=str(row.id),
                citizen_id=str(row.citizen_id),
                lawyer_id=str(row.lawyer_id),
                channel_id=str(row.channel_id),
                response_message=reply,
            ),
        )
    else:
        publish_event(
            events,
            ConnectionRejected(
                connection_id=str(row.id),
                citizen_id=str(row.citizen_id),
                lawyer_id=str(row.lawyer_id),
                response_message=reply,
            ),
        )
    return row


def block_connection(db: Session, *, connection_id: Any, actor_id: Any) -> DirectConnection:
    row = db.get(DirectConnection, _as_uuid(connection_id, "Connection not found"))
    if row is None:
        raise NotFound("Connection not found")
    if str(actor_id) not in {str(row.citizen_id), str(row.lawyer_id)}:
        raise Forbidden("Access denied - you cannot block this connection")
    if row.status == CONNECTION_BLOCKED:
        return row
    row.status = CONNECTION_BLOCKED
    row.is_active = False
    row.responded_at = row.responded_at or utcnow()
    close_channel(db, channel_id_for_direct(row.citizen_id, row.lawyer_id))
    db.add(row)
    db.commit()
    db.refresh(row)
    _LOG.info("connection blocked id=%s by=%s", row.id, actor_id)
    return row


def open_direct_channel(db: Session, *, requester_id: Any, requester_role: str, lawyer_id: Any):
    """Provision a pending direct channel ahead of the lawyer's acceptance.

    Returns ``(channel, connection)``; an accepted connection yields its active
    channel instead.
    """
    requester_uuid = _as_uuid(requester_id, "User not found")
    lawyer_uuid = _as_uuid(lawyer_id, "Lawyer not found or not verified")
    if requester_uuid == lawyer_uuid:
        raise InvalidPayload("Cannot open a chat with yourself")
    _verified_lawyer(db, lawyer_uuid)

    connection = find_connection(db, requester_uuid, lawyer_uuid)
    if connection is not None and connection.status == CONNECTION_BLOCKED:
        raise NotAvailable("Connection is blocked")
    accepted = connection is not None and connection.status == CONNECTION_ACCEPTED
    channel = ensure_direct_channel(
        db,
        citizen_id=requester_uuid,
        lawyer_id=lawyer_uuid,
        status=CHANNEL_ACTIVE if accepted else CHANNEL_PENDING,
        initiator_role=requester_role or ROLE_CITIZEN,
        direct_connection_id=connection.id if connection is not None else None,
    )
    db.commit()
    db.refresh(channel)
    return channel, connection


def list_connections_for_user(db: Session, user_id: Any, *, status: str | None = None) -> list[DirectConnection]:
    user_uuid = _as_uuid(user_id, "User not found")
    query = db.query(DirectConnection).filter(
        or_(DirectConnection.citizen_id == user_uuid, DirectConnection.lawyer_id == user_uuid)
    )
    if status:
        query = query.filter(DirectConnection.status == str(status).strip().lower())
    return query.order_by(DirectConnection.requested_at.desc()).all()


def serialize_connection(row: DirectConnection) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "citizen_id": str(row.citizen_id),
        "lawyer_id": str(row.lawyer_id),
        "status": row.status,
        "connection_type": row.connection_type,
        "request_message": row.request_message,
        "response_message": row.response_message,
        "requested_at": row.requested_at.isoformat() if row.requested_at else None,
        "responded_at": row.responded_at.isoformat() if row.responded_at else None,
        "channel_id": row.channel_id,
        "is_active": bool(row.is_active),
    }
