from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.datetime_utils import utcnow
from app.core.ids import new_id
from app.db.session import Base


def direct_key_for(user_a: str, user_b: str) -> str:
    """Canonical key of an unordered user pair, stored on 1:1 conversations."""
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (Index("ix_conversations_updated_at", "updated_at"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=new_id)
    is_group: Mapped[bool] = mapped_column(Boolean, default=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)

    # NULL for groups; unique across 1:1 conversations
    direct_key: Mapped[str | None] = mapped_column(
        String(53), nullable=True, unique=True, default=None
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    participants = relationship(
        "ConversationParticipant", back_populates="conversation", cascade="all, delete-orphan"
    )
    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.created_at",
        cascade="all, delete-orphan",
    )
