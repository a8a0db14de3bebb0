from pydantic import BaseModel

from app.core.datetime_utils import UTCDatetime


class UserSummary(BaseModel):
    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    is_online: bool = False
    last_seen_at: UTCDatetime | None = None

    class Config:
        from_attributes = True
