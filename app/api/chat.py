from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import get_current_user
from app.db.session import get_db
from app.models.channel import Channel
from app.schemas.matching import TypingUpdate
from app.services.channel_provisioner import (
    get_channel_or_404,
    is_participant,
    list_channels_for_user,
    participant_rows,
    serialize_channel,
)
from app.services.chat_presence import list_typing, set_typing
from app.services.chat_service import list_messages, serialize_history, unread_count
from app.services.errors import AccessDenied
from app.services.identity import Identity
from app.services.store import store_errors

router = APIRouter()


def _channel_for_participant(db: Session, channel_id: str, user: Identity) -> Channel:
    channel = get_channel_or_404(db, channel_id)
    if not is_participant(db, channel.channel_id, user.user_id):
        raise AccessDenied()
    return channel


@router.get("")
def get_channels(
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
):
    with store_errors(db):
        rows = [
            serialize_channel(
                channel,
                participant_rows(db, channel.channel_id),
                unread_count(db, channel.channel_id, user.user_id),
            )
            for channel in list_channels_for_user(db, user.user_id)
        ]
    return {"rows": rows, "total": len(rows)}


@router.get("/{channel_id}/messages")
def get_messages(
    channel_id: str,
    after_seq: int | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
):
    with store_errors(db):
        channel = _channel_for_participant(db, channel_id, user)
        rows = list_messages(db, channel.channel_id, after_seq=after_seq, limit=limit)
        return {
            "channel_id": channel.channel_id,
            "last_seq": int(channel.last_seq or 0),
            "rows": serialize_history(db, rows),
        }


@router.get("/{channel_id}/live")
def get_live_state(
    channel_id: str,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
):
    with store_errors(db):
        channel = _channel_for_participant(db, channel_id, user)
        unread = unread_count(db, channel.channel_id, user.user_id)
    return {
        "channel_id": channel.channel_id,
        "status": channel.status,
        "last_seq": int(channel.last_seq or 0),
        "last_message_at": channel.last_message_at.isoformat() if channel.last_message_at else None,
        "unread_count": unread,
        "typing": list_typing(channel_id=channel.channel_id, exclude_user_id=user.key),
    }


@router.post("/{channel_id}/typing")
def set_live_typing(
    channel_id: str,
    payload: TypingUpdate,
    db: Session = Depends(get_db),
    user: Identity = Depends(get_current_user),
):
    with store_errors(db):
        channel = _channel_for_participant(db, channel_id, user)
    set_typing(
        channel_id=channel.channel_id,
        user_id=user.key,
        name=user.name,
        role=user.role,
        typing=payload.typing,
    )
    return {"status": "ok", "typing": payload.typing}
