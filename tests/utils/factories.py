from datetime import datetime

from faker import Faker
from sqlalchemy.orm import Session

from app.auth.models.user import User
from app.core.datetime_utils import utcnow
from app.core.ids import new_id
from app.messaging.models.conversation import Conversation, direct_key_for
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.models.message import Message

fake = Faker()


def create_user_factory(
    db_session: Session,
    username: str | None = None,
    display_name: str | None = None,
    is_active: bool = True,
) -> User:
    """
    Factory function to create test users.

    Args:
        db_session: Database session
        username: Unique handle (generates random if None)
        display_name: Shown name (generates random if None)
        is_active: Whether user is active

    Returns:
        Created User instance
    """
    user = User(
        id=new_id(),
        username=username or f"{fake.user_name()}{fake.random_int(100, 999)}",
        display_name=display_name or fake.name(),
        is_active=is_active,
        created_at=utcnow(),
    )

    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)

    return user


def create_direct_conversation(db_session: Session, user_a: User, user_b: User) -> Conversation:
    now = utcnow()
    conversation = Conversation(
        id=new_id(),
        is_group=False,
        direct_key=direct_key_for(user_a.id, user_b.id),
        created_at=now,
        updated_at=now,
    )
    conversation.participants = [
        ConversationParticipant(user_id=user_a.id, joined_at=now),
        ConversationParticipant(user_id=user_b.id, joined_at=now),
    ]
    db_session.add(conversation)
    db_session.commit()
    db_session.refresh(conversation)
    return conversation


def create_message_factory(
    db_session: Session,
    conversation: Conversation,
    sender: User,
    content: str | None = None,
    created_at: datetime | None = None,
) -> Message:
    """Insert a message directly, bypassing the store's validation.

    An explicit created_at stands in for a send whose commit landed late.
    """
    message = Message(
        id=new_id(),
        conversation_id=conversation.id,
        sender_id=sender.id,
        content=content or fake.sentence(),
        created_at=created_at or utcnow(),
    )
    db_session.add(message)
    db_session.commit()
    db_session.refresh(message)
    return message
