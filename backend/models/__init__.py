"""SQLAlchemy models — re-export all."""

from models.user import User, APIKey  # noqa: F401
from models.agent import Agent  # noqa: F401
from models.credit import CreditBalance  # noqa: F401
from models.conversation import Conversation  # noqa: F401
from models.message import Message  # noqa: F401
from models.payment import MessagePack, Payment  # noqa: F401
