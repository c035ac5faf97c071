from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.channel import Channel, ChannelParticipant
from app.models.channel_message import ChannelMessage, ChannelMessageRead
from app.models.common import utcnow
from app.models.user import User
from app.services.channel_provisioner import CHANNEL_CLOSED, get_channel_or_404
from app.services.errors import Conflict, InvalidPayload, NotAvailable

MESSAGE_TEXT = "text"
MESSAGE_FILE = "file"
MESSAGE_SYSTEM = "system"
CLIENT_MESSAGE_TYPES = {MESSAGE_TEXT, MESSAGE_FILE}

_APPEND_ATTEMPTS = 5


def normalize_file_ref(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    content_hash = str(raw.get("hash") or "").strip()
    if not content_hash:
        return None
    out: dict[str, Any] = {"hash": content_hash}
    for key in ("name", "mime_type", "url"):
        value = str(raw.get(key) or "").strip()
        if value:
            out[key] = value
    size = raw.get("size")
    if isinstance(size, int) and size >= 0:
        out["size"] = size
    return out


def validate_client_message(content: Any, message_type: Any, file_ref: Any) -> tuple[str, str, dict | None]:
    kind = str(message_type or MESSAGE_TEXT).strip().lower()
    if kind not in CLIENT_MESSAGE_TYPES:
        raise InvalidPayload("Unsupported message type")
    text = str(content or "")
    if kind == MESSAGE_TEXT:
        if not text.strip():
            raise InvalidPayload("Message content cannot be empty")
        limit = int(settings.CHAT_MESSAGE_MAX_LENGTH)
        if len(text) > limit:
            raise InvalidPayload(f"Message too long. Maximum {limit} characters.")
        return text, kind, None
    normalized_ref = normalize_file_ref(file_ref)
    if normalized_ref is None:
        raise InvalidPayload("File data is required for file messages")
    if len(text) > int(settings.CHAT_MESSAGE_MAX_LENGTH):
        raise InvalidPayload("File caption is too long")
    return text.strip() or "File attachment", kind, normalized_ref


def append_message(
    db: Session,
    *,
    channel_id: str,
    sender_id: uuid.UUID,
    content: str | None,
    message_type: str = MESSAGE_TEXT,
    file_ref: dict | None = None,
) -> ChannelMessage:
    """Append at the channel's single append point and commit.

    ``seq`` is claimed with a compare-and-set on ``channels.last_seq`` so two
    writers can never produce the same position.
    """
    for _ in range(_APPEND_ATTEMPTS):
        channel = get_channel_or_404(db, channel_id)
        if channel.status == CHANNEL_CLOSED:
            raise NotAvailable("Chat is closed")
        current_seq = int(channel.last_seq or 0)
        now = utcnow()
        claimed = db.execute(
            update(Channel)
            .where(Channel.channel_id == channel_id, Channel.last_seq == current_seq)
            .values(last_seq=current_seq + 1, last_message_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        if claimed == 0:
            db.rollback()
            continue

        row = ChannelMessage(
            channel_id=channel_id,
            seq=current_seq + 1,
            sender_id=sender_id,
            message_type=message_type,
            content=content,
            file_ref=file_ref,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.flush()
        db.add(ChannelMessageRead(message_id=row.id, channel_id=channel_id, user_id=sender_id, read_at=now))
        db.commit()
        db.refresh(row)
        return row
    raise Conflict("Chat is busy, please retry")


def mark_read(
    db: Session,
    *,
    channel_id: str,
    user_id: uuid.UUID,
    message_ids: list[Any] | None = None,
) -> list[str]:
    query = (
        db.query(ChannelMessage.id)
        .outerjoin(
            ChannelMessageRead,
            (ChannelMessageRead.message_id == ChannelMessage.id) & (ChannelMessageRead.user_id == user_id),
        )
        .filter(
            ChannelMessage.channel_id == channel_id,
            ChannelMessage.sender_id != user_id,
            ChannelMessageRead.id.is_(None),
        )
    )
    if message_ids:
        wanted = []
        for raw in message_ids:
            try:
                wanted.append(uuid.UUID(str(raw)))
            except ValueError:
                continue
        if not wanted:
            return []
        query = query.filter(ChannelMessage.id.in_(wanted))

    now = utcnow()
    newly_read = [message_id for (message_id,) in query.order_by(ChannelMessage.seq.asc()).all()]
    for message_id in newly_read:
        db.add(ChannelMessageRead(message_id=message_id, channel_id=channel_id, user_id=user_id, read_at=now))
    if not message_ids:
        participant = (
            db.query(ChannelParticipant)
            .filter(ChannelParticipant.channel_id == channel_id, ChannelParticipant.user_id == user_id)
            .first()
        )
        if participant is not None:
            participant.last_read_at = now
            db.add(participant)
    db.commit()
    return [str(message_id) for message_id in newly_read]


def unread_count(db: Session, channel_id: str, user_id: uuid.UUID) -> int:
    return (
        db.query(ChannelMessage.id)
        .outerjoin(
            ChannelMessageRead,
            (ChannelMessageRead.message_id == ChannelMessage.id) & (ChannelMessageRead.user_id == user_id),
        )
        .filter(
            ChannelMessage.channel_id == channel_id,
            ChannelMessage.sender_id != user_id,
            ChannelMessageRead.id.is_(None),
        )
        .count()
    )


def list_messages(db: Session, channel_id: str, *, after_seq: int | None = None, limit: int = 50) -> list[ChannelMessage]:
    query = db.query(ChannelMessage).filter(ChannelMessage.channel_id == channel_id)
    if after_seq is not None:
        query = query.filter(ChannelMessage.seq > int(after_seq))
    return query.order_by(ChannelMessage.seq.asc()).limit(max(1, min(int(limit or 50), 200))).all()


def read_markers(db: Session, message_ids: list[uuid.UUID]) -> dict[str, list[str]]:
    if not message_ids:
        return {}
    rows = (
        db.query(ChannelMessageRead.message_id, ChannelMessageRead.user_id)
        .filter(ChannelMessageRead.message_id.in_(message_ids))
        .all()
    )
    out: dict[str, list[str]] = {}
    for message_id, user_id in rows:
        out.setdefault(str(message_id), []).append(str(user_id))
    return out


def serialize_message(row: ChannelMessage, *, sender: dict[str, Any] | None = None, read_by: list[str] | None = None) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "channelId": row.channel_id,
        "seq": int(row.seq),
        "type": row.message_type,
        "content": row.content,
        "fileRef": row.file_ref,
        "sender": sender or {"id": str(row.sender_id)},
        "timestamp": row.created_at.isoformat() if row.created_at else None,
        "readBy": list(read_by if read_by is not None else [str(row.sender_id)]),
    }


def serialize_history(db: Session, rows: list[ChannelMessage]) -> list[dict[str, Any]]:
    sender_ids = {row.sender_id for row in rows}
    users = {str(user.id): user for user in db.query(User).filter(User.id.in_(sender_ids)).all()} if sender_ids else {}
    markers = read_markers(db, [row.id for row in rows])
    out: list[dict[str, Any]] = []
    for row in rows:
        user = users.get(str(row.sender_id))
        sender = {"id": str(row.sender_id)}
        if user is not None:
            sender.update({"name": user.name, "role": user.role})
        out.append(serialize_message(row, sender=sender, read_by=markers.get(str(row.id), [])))
    return out
