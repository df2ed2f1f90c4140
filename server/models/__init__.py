"""SQLAlchemy models — re-export all."""

from models.user import UserProfile  # noqa: F401
from models.ledger import DailyTokenAllowance, TokenUsage, UsageEvent  # noqa: F401
from models.conversation import (  # noqa: F401
    PLACEHOLDER_TITLE,
    Message,
    MessageResponse,
    Thread,
)
