import uuid
from datetime import datetime, timezone
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy import DateTime, String

# channel ids look like "query_<uuid>" or "direct_<uuid>_<uuid>"
CHANNEL_ID_LENGTH = 120

def utcnow():
    return datetime.now(timezone.utc)

def uuid_ref(*, index: bool = True, nullable: bool = False):
    return mapped_column(UUID(as_uuid=True), index=index, nullable=nullable)

def channel_ref(*, index: bool = True, nullable: bool = False, unique: bool = False):
    return mapped_column(String(CHANNEL_ID_LENGTH), index=index, nullable=nullable, unique=unique)

def utc_timestamp(*, nullable: bool = False, default_now: bool = True):
    return mapped_column(DateTime(timezone=True), default=utcnow if default_now else None, nullable=nullable)

class UUIDMixin:
    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
