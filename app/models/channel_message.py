import uuid
from datetime import datetime
from sqlalchemy import Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from app.db.session import Base
from app.models.common import UUIDMixin, TimestampMixin, channel_ref, utc_timestamp, uuid_ref

class ChannelMessage(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "channel_messages"
    __table_args__ = (UniqueConstraint("channel_id", "seq", name="uq_channel_messages_seq"),)

    channel_id: Mapped[str] = channel_ref()
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    sender_id: Mapped[uuid.UUID] = uuid_ref()
    message_type: Mapped[str] = mapped_column(String(20), nullable=False, default="text")  # text|file|system
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_ref: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class ChannelMessageRead(Base, UUIDMixin):
    __tablename__ = "channel_message_reads"
    __table_args__ = (UniqueConstraint("message_id", "user_id", name="uq_channel_message_reads_reader"),)

    message_id: Mapped[uuid.UUID] = uuid_ref()
    channel_id: Mapped[str] = channel_ref()
    user_id: Mapped[uuid.UUID] = uuid_ref()
    read_at: Mapped[datetime] = utc_timestamp()
