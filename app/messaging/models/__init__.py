from app.messaging.models.conversation import Conversation
from app.messaging.models.conversation_participant import ConversationParticipant
from app.messaging.models.message import Message
from app.messaging.models.message_read import MessageRead

__all__ = ["Conversation", "ConversationParticipant", "Message", "MessageRead"]
