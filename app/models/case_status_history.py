import uuid
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from app.db.session import Base
from app.models.common import UUIDMixin, TimestampMixin, uuid_ref

class CaseStatusHistory(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "case_status_history"
    case_id: Mapped[uuid.UUID] = uuid_ref()
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[uuid.UUID | None] = uuid_ref(index=False, nullable=True)
    comment: Mapped[str | None] = mapped_column(String(400), nullable=True)
