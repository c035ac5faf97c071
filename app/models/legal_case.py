import uuid
from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from app.db.session import Base
from app.models.common import UUIDMixin, TimestampMixin, uuid_ref

class LegalCase(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "legal_cases"
    case_kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # query|dispute
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    citizen_id: Mapped[uuid.UUID] = uuid_ref()
    assigned_lawyer_id: Mapped[uuid.UUID | None] = uuid_ref(nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True, default="pending")
    # Bumped by every conditional write; stale writers get rowcount 0.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
