from pydantic import BaseModel, Field

from app.core.constants import CLIENT_KEY_MAX_LENGTH, MESSAGE_MAX_LENGTH
from app.core.datetime_utils import UTCDatetime
from app.messaging.schemas.conversation import ConversationResponse


class MessageCreate(BaseModel):
    content: str = Field("", max_length=MESSAGE_MAX_LENGTH)
    image_url: str | None = Field(None, max_length=500)
    client_key: str | None = Field(None, min_length=1, max_length=CLIENT_KEY_MAX_LENGTH)


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    image_url: str | None = None
    client_key: str | None = None
    created_at: UTCDatetime
    read_by: list[str] = Field(default_factory=list)

    class Config:
        from_attributes = True


class MessagePage(BaseModel):
    messages: list[MessageResponse]
    next_cursor: str | None = None
    has_more: bool = False
    earlier_cursor: str | None = None
    has_earlier: bool = False


class ConversationDetail(BaseModel):
    conversation: ConversationResponse
    page: MessagePage
    marked_read: int = 0
