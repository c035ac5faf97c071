from __future__ import annotations

import uuid
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.channel import Channel, ChannelParticipant
from app.models.common import utcnow
from app.models.direct_connection import DirectConnection
from app.models.legal_case import LegalCase
from app.services.errors import Conflict, NotFound

CASE_KINDS = ("query", "dispute")
CHANNEL_TYPE_DIRECT = "direct"

CHANNEL_PENDING = "pending"
CHANNEL_ACTIVE = "active"
CHANNEL_CLOSED = "closed"


def channel_id_for_case(case_kind: str, case_id: Any) -> str:
    kind = str(case_kind or "").strip().lower()
    if kind not in CASE_KINDS:
        raise ValueError(f"Unknown case kind: {case_kind!r}")
    return f"{kind}_{case_id}"


def channel_id_for_direct(user_a: Any, user_b: Any) -> str:
    first = str(user_a or "").strip()
    second = str(user_b or "").strip()
    if not first or not second or first == second:
        raise ValueError("A direct channel needs two distinct participants")
    return "direct_" + "_".join(sorted([first, second]))


def channel_id_for(entity: LegalCase | DirectConnection) -> str:
    if isinstance(entity, LegalCase):
        return channel_id_for_case(entity.case_kind, entity.id)
    if isinstance(entity, DirectConnection):
        return channel_id_for_direct(entity.citizen_id, entity.lawyer_id)
    raise TypeError(f"No channel derivation for {type(entity).__name__}")


def get_channel(db: Session, channel_id: str) -> Channel | None:
    return db.query(Channel).filter(Channel.channel_id == str(channel_id or "")).first()


def get_channel_or_404(db: Session, channel_id: str) -> Channel:
    channel = get_channel(db, channel_id)
    if channel is None:
        raise NotFound("Chat not found")
    return channel


def is_participant(db: Session, channel_id: str, user_id: Any) -> bool:
    row = (
        db.query(ChannelParticipant.id)
        .filter(
            ChannelParticipant.channel_id == str(channel_id or ""),
            ChannelParticipant.user_id == _as_uuid(user_id),
        )
        .first()
    )
    return row is not None


def participant_rows(db: Session, channel_id: str) -> list[ChannelParticipant]:
    return (
        db.query(ChannelParticipant)
        .filter(ChannelParticipant.channel_id == channel_id)
        .order_by(ChannelParticipant.joined_at.asc(), ChannelParticipant.id.asc())
        .all()
    )


def ensure_channel(
    db: Session,
    *,
    channel_id: str,
    channel_type: str,
    participants: Iterable[tuple[Any, str]],
    status: str = CHANNEL_ACTIVE,
    case_kind: str | None = None,
    case_id: Any = None,
    direct_connection_id: Any = None,
) -> tuple[Channel, bool]:
    """Find-or-create the channel inside the caller's transaction (no commit).

    An existing pending channel requested as active is activated; missing
    participants are added. A lost insert race rolls back and raises Conflict so
    the caller can retry against the row the other writer created.
    """
    now = utcnow()
    created = False
    channel = get_channel(db, channel_id)
    try:
        if channel is None:
            channel = Channel(
                channel_id=channel_id,
                channel_type=channel_type,
                status=status,
                case_kind=case_kind,
                case_id=_as_uuid(case_id) if case_id is not None else None,
                direct_connection_id=_as_uuid(direct_connection_id) if direct_connection_id is not None else None,
                last_seq=0,
            )
            db.add(channel)
            created = True
        else:
            if status == CHANNEL_ACTIVE and channel.status == CHANNEL_PENDING:
                channel.status = CHANNEL_ACTIVE
                channel.updated_at = now
            if direct_connection_id is not None and channel.direct_connection_id is None:
                channel.direct_connection_id = _as_uuid(direct_connection_id)

        existing_members = {
            str(user_id)
            for (user_id,) in db.query(ChannelParticipant.user_id)
            .filter(ChannelParticipant.channel_id == channel_id)
            .all()
        }
        for user_id, role in participants:
            if str(user_id) in existing_members:
                continue
            db.add(ChannelParticipant(channel_id=channel_id, user_id=_as_uuid(user_id), role=role, joined_at=now))
            existing_members.add(str(user_id))
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Chat was created concurrently, please retry") from exc
    return channel, created


def ensure_case_channel(db: Session, legal_case: LegalCase, lawyer_id: Any) -> Channel:
    channel, _ = ensure_channel(
        db,
        channel_id=channel_id_for(legal_case),
        channel_type=legal_case.case_kind,
        participants=[(legal_case.citizen_id, "citizen"), (lawyer_id, "lawyer")],
        status=CHANNEL_ACTIVE,
        case_kind=legal_case.case_kind,
        case_id=legal_case.id,
    )
    return channel


def ensure_direct_channel(
    db: Session,
    *,
    citizen_id: Any,
    lawyer_id: Any,
    status: str,
    initiator_role: str = "citizen",
    direct_connection_id: Any = None,
) -> Channel:
    channel, _ = ensure_channel(
        db,
        channel_id=channel_id_for_direct(citizen_id, lawyer_id),
        channel_type=CHANNEL_TYPE_DIRECT,
        participants=[(citizen_id, initiator_role), (lawyer_id, "lawyer")],
        status=status,
        direct_connection_id=direct_connection_id,
    )
    return channel


def close_channel(db: Session, channel_id: str) -> bool:
    channel = get_channel(db, channel_id)
    if channel is None or channel.status == CHANNEL_CLOSED:
        return False
    channel.status = CHANNEL_CLOSED
    channel.updated_at = utcnow()
    db.add(channel)
    return True


def list_channels_for_user(db: Session, user_id: Any) -> list[Channel]:
    return (
        db.query(Channel)
        .join(ChannelParticipant, ChannelParticipant.channel_id == Channel.channel_id)
        .filter(ChannelParticipant.user_id == _as_uuid(user_id))
        .order_by(Channel.last_message_at.desc(), Channel.created_at.desc())
        .all()
    )


def serialize_channel(channel: Channel, participants: list[ChannelParticipant], unread_count: int = 0) -> dict[str, Any]:
    return {
        "channel_id": channel.channel_id,
        "channel_type": channel.channel_type,
        "status": channel.status,
        "case_kind": channel.case_kind,
        "case_id": str(channel.case_id) if channel.case_id else None,
        "direct_connection_id": str(channel.direct_connection_id) if channel.direct_connection_id else None,
        "participants": [{"user_id": str(row.user_id), "role": row.role} for row in participants],
        "last_seq": int(channel.last_seq or 0),
        "last_message_at": channel.last_message_at.isoformat() if channel.last_message_at else None,
        "unread_count": int(unread_count or 0),
    }


def _as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise NotFound("Unknown user") from exc
