"""Application-wide constants.

This module centralizes magic numbers and configuration constants
that are used across multiple modules. For environment-specific
configuration, see config.py.
"""

# =============================================================================
# Pagination Defaults
# =============================================================================

# Default page size for conversation messages
CONVERSATION_MESSAGES_PAGE_SIZE: int = 50

# Maximum page size for conversation messages
MAX_MESSAGES_PAGE_SIZE: int = 200

# Default page size for user search
USER_SEARCH_LIMIT: int = 10

# Minimum query length for user search
USER_SEARCH_MIN_LENGTH: int = 2

# =============================================================================
# Content Limits
# =============================================================================

# Maximum stored message length (longer content is truncated)
MESSAGE_MAX_LENGTH: int = 5000

# Conversation list preview length
MESSAGE_PREVIEW_MAX_LENGTH: int = 100

# Client idempotency key length
CLIENT_KEY_MAX_LENGTH: int = 64

# Group conversation limits
GROUP_NAME_MAX_LENGTH: int = 255
GROUP_MAX_MEMBERS: int = 50

# =============================================================================
# Display fallbacks
# =============================================================================

DEFAULT_GROUP_NAME: str = "Group"
DEFAULT_USER_NAME: str = "User"

# =============================================================================
# Presence
# =============================================================================

# A user counts as online if seen within this window
PRESENCE_WINDOW_SECONDS: int = 300
