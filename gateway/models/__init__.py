"""SQLAlchemy models — re-export all."""

from models.user import UserProfile, APIKey  # noqa: F401
from models.conversation import Conversation, ConversationMessage  # noqa: F401
from models.exchange_log import ExchangeLog  # noqa: F401
