import uuid
from datetime import datetime
from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from app.db.session import Base
from app.models.common import UUIDMixin, TimestampMixin, channel_ref, utc_timestamp, uuid_ref

class Channel(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "channels"
    channel_id: Mapped[str] = channel_ref(unique=True)
    channel_type: Mapped[str] = mapped_column(String(20), nullable=False)  # direct|query|dispute
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")  # pending|active|closed
    case_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    case_id: Mapped[uuid.UUID | None] = uuid_ref(nullable=True)
    direct_connection_id: Mapped[uuid.UUID | None] = uuid_ref(index=False, nullable=True)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_at: Mapped[datetime | None] = utc_timestamp(nullable=True, default_now=False)


class ChannelParticipant(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "channel_participants"
    __table_args__ = (UniqueConstraint("channel_id", "user_id", name="uq_channel_participants_member"),)

    channel_id: Mapped[str] = channel_ref()
    user_id: Mapped[uuid.UUID] = uuid_ref()
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    joined_at: Mapped[datetime] = utc_timestamp()
    last_read_at: Mapped[datetime | None] = utc_timestamp(nullable=True, default_now=False)
