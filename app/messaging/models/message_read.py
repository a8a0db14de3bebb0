"""Read receipts: one row per (message, reader)."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, PrimaryKeyConstraint, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.datetime_utils import utcnow
from app.db.session import Base


class MessageRead(Base):
    __tablename__ = "message_reads"
    # The composite key doubles as the (message, reader) uniqueness rule that
    # insert-if-absent relies on
    __table_args__ = (
        PrimaryKeyConstraint("message_id", "user_id", name="pk_message_reads"),
        Index("ix_message_reads_user", "user_id"),
    )

    message_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("messages.id", ondelete="CASCADE")
    )
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"))
    read_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    message = relationship("Message", back_populates="reads")
