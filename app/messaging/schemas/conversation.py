from pydantic import BaseModel, Field

from app.core.constants import GROUP_MAX_MEMBERS, GROUP_NAME_MAX_LENGTH
from app.core.datetime_utils import UTCDatetime


class DirectConversationCreate(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=26)


class GroupConversationCreate(BaseModel):
    name: str | None = Field(None, max_length=GROUP_NAME_MAX_LENGTH)
    member_ids: list[str] = Field(..., min_length=1, max_length=GROUP_MAX_MEMBERS)


class ParticipantInfo(BaseModel):
    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    is_online: bool = False
    is_admin: bool = False

    class Config:
        from_attributes = True


class ConversationResponse(BaseModel):
    id: str
    is_group: bool
    name: str | None = None
    participants: list[ParticipantInfo]
    created_at: UTCDatetime
    updated_at: UTCDatetime

    class Config:
        from_attributes = True


class ConversationSummary(BaseModel):
    id: str
    display_name: str
    avatar_url: str | None = None
    last_message_preview: str | None = None
    last_message_at: UTCDatetime | None = None
    unread_count: int = 0
    is_group: bool = False
    member_count: int = 0
    updated_at: UTCDatetime


class ConversationListResponse(BaseModel):
    conversations: list[ConversationSummary]
    total: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class MarkReadResponse(BaseModel):
    marked_read: int
