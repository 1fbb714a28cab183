"""roomcast: Real-time multi-room chat engine.

Tracks which connection is in which room, fans out messages, coordinates
typing indicators and propagates delivered/seen receipts.
"""

from roomcast.config import ChatConfig
from roomcast.connections import Connection, ConnectionRegistry
from roomcast.engine import ChatEngine
from roomcast.errors import (
    ChatError,
    ConnectionClosedError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from roomcast.membership import MembershipTable
from roomcast.metrics import ChatMetrics
from roomcast.models import ChatMessage, DisplayState, Room, User, display_state
from roomcast.pipeline import MessagePipeline
from roomcast.receipts import ReceiptTracker
from roomcast.router import RoomEventRouter
from roomcast.stores import (
    InMemoryMessageStore,
    InMemoryRoomDirectory,
    InMemoryUserDirectory,
    MessageStore,
    RoomDirectory,
    UserDirectory,
)
from roomcast.typing_state import TypingCoordinator

__version__ = "0.1.0"

__all__ = [
    # engine
    "ChatEngine",
    "ChatConfig",
    "ChatMetrics",
    # components
    "Connection",
    "ConnectionRegistry",
    "MembershipTable",
    "TypingCoordinator",
    "MessagePipeline",
    "ReceiptTracker",
    "RoomEventRouter",
    # collaborators
    "MessageStore",
    "UserDirectory",
    "RoomDirectory",
    "InMemoryMessageStore",
    "InMemoryUserDirectory",
    "InMemoryRoomDirectory",
    # models
    "ChatMessage",
    "DisplayState",
    "Room",
    "User",
    "display_state",
    # errors
    "ChatError",
    "ConnectionClosedError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
]
