import uuid
from datetime import datetime
from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column
from app.db.session import Base
from app.models.common import UUIDMixin, TimestampMixin, utc_timestamp, uuid_ref

class CaseProposal(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "case_proposals"
    case_id: Mapped[uuid.UUID] = uuid_ref()
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # offer (lawyer->citizen)|request (citizen->lawyer)
    citizen_id: Mapped[uuid.UUID] = uuid_ref()
    lawyer_id: Mapped[uuid.UUID] = uuid_ref()
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True, default="pending")
    requested_at: Mapped[datetime] = utc_timestamp()
    responded_at: Mapped[datetime | None] = utc_timestamp(nullable=True, default_now=False)
