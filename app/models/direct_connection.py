import uuid
from datetime import datetime
from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from app.db.session import Base
from app.models.common import UUIDMixin, TimestampMixin, channel_ref, utc_timestamp, uuid_ref

class DirectConnection(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "direct_connections"
    __table_args__ = (UniqueConstraint("citizen_id", "lawyer_id", name="uq_direct_connections_pair"),)

    citizen_id: Mapped[uuid.UUID] = uuid_ref()
    lawyer_id: Mapped[uuid.UUID] = uuid_ref()
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True, default="pending")  # pending|accepted|rejected|blocked
    request_message: Mapped[str] = mapped_column(String(500), nullable=False)
    response_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    connection_type: Mapped[str] = mapped_column(String(40), nullable=False, default="general_consultation")
    requested_at: Mapped[datetime] = utc_timestamp()
    responded_at: Mapped[datetime | None] = utc_timestamp(nullable=True, default_now=False)
    channel_id: Mapped[str | None] = channel_ref(index=False, nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
