from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.datetime_utils import utcnow
from app.core.ids import new_id
from app.db.session import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at", "id"),
        UniqueConstraint(
            "conversation_id", "sender_id", "client_key", name="uq_messages_client_key"
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("conversations.id", ondelete="CASCADE")
    )
    sender_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"))

    content: Mapped[str] = mapped_column(Text, default="")
    image_url: Mapped[str | None] = mapped_column(String(500), nullable=True, default=None)
    # Client idempotency key; NULLs never collide in the unique constraint
    client_key: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", lazy="joined")
    reads = relationship("MessageRead", back_populates="message", cascade="all, delete-orphan")
