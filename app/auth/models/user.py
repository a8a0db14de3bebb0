from sqlalchemy import Boolean, Column, DateTime, String

from app.core.datetime_utils import utcnow
from app.core.ids import new_id
from app.db.session import Base


class User(Base):
    """
    User account as seen by the messaging core.

    Accounts are owned by the profile subsystem; messaging reads them and only
    writes the presence fields.

    Attributes:
        id: ULID primary key
        username: Unique handle (indexed for search)
        display_name: Name shown in conversation lists
        avatar_url: Optional avatar image URL
        is_online: Presence flag refreshed on every authenticated request
        last_seen_at: Last authenticated request timestamp
        is_active: Whether the user account is active
        created_at: Account creation timestamp
    """

    __tablename__ = "users"

    # Primary fields
    id = Column(String(26), primary_key=True, default=new_id)
    username = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    avatar_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Presence
    is_online = Column(Boolean, default=False, nullable=False)
    last_seen_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def name(self) -> str:
        return self.display_name or self.username

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username})>"
