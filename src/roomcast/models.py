"""Chat domain models - records, inbound events and outbound events."""

from datetime import UTC, datetime
from enum import Enum
from typing import ClassVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model exchanged with clients using camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Records
class User(WireModel):
    """A chat user. Only `online` and `connection_id` are owned by the engine."""

    id: str
    username: str
    online: bool = False
    connection_id: str | None = None


class UserRef(WireModel):
    """Display identity of a message sender."""

    id: str
    username: str


class Room(WireModel):
    """A named broadcast domain."""

    id: str
    name: str


class ChatMessage(WireModel):
    """A persisted message. Immutable except for the append-only `seen_by`."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    room_id: str
    sender_id: str
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    delivered: bool = False
    seen_by: set[str] = Field(default_factory=set)

    @field_serializer("seen_by")
    def _serialize_seen_by(self, seen_by: set[str]) -> list[str]:
        return sorted(seen_by)


class DisplayState(str, Enum):
    """How a message is rendered, in priority order."""

    SEEN = "seen"
    DELIVERED = "delivered"
    SENDING = "sending"


def display_state(message: ChatMessage) -> DisplayState:
    """Pick the single display state of a message.

    Seen wins over delivered; a message that is neither is still in flight
    on the client and was never acknowledged by the server.
    """
    if message.seen_by:
        return DisplayState.SEEN
    if message.delivered:
        return DisplayState.DELIVERED
    return DisplayState.SENDING


class Event(WireModel):
    """Base class for everything sent over a connection."""

    kind: ClassVar[str]


# Inbound events
class JoinRoom(Event):
    """Identify the connection and subscribe it to a room."""

    kind: ClassVar[str] = "joinRoom"

    username: str = Field(min_length=1)
    room_id: str = Field(min_length=1)


class SendMessage(Event):
    """Post a message to a room."""

    kind: ClassVar[str] = "sendMessage"

    room_id: str = Field(min_length=1)
    content: str
    sender_id: str = Field(min_length=1)


class Typing(Event):
    kind: ClassVar[str] = "typing"

    room_id: str = Field(min_length=1)
    username: str = Field(min_length=1)


class StopTyping(Event):
    kind: ClassVar[str] = "stopTyping"

    room_id: str = Field(min_length=1)
    username: str = Field(min_length=1)


class MessageSeen(Event):
    """Mark every message of a room as seen by a user."""

    kind: ClassVar[str] = "messageSeen"

    room_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


# Outbound events
class UserJoined(Event):
    kind: ClassVar[str] = "userJoined"

    user: User
    room_id: str


class LoadMessages(Event):
    """Room history, sent only to the connection that joined."""

    kind: ClassVar[str] = "loadMessages"

    room_id: str
    messages: list[ChatMessage]


class NewMessage(Event):
    kind: ClassVar[str] = "newMessage"

    message: ChatMessage
    sender: UserRef


class TypingStarted(Event):
    kind: ClassVar[str] = "typing"

    room_id: str
    username: str


class TypingStopped(Event):
    kind: ClassVar[str] = "stopTyping"

    room_id: str
    username: str


class MessagesSeen(Event):
    kind: ClassVar[str] = "messagesSeen"

    room_id: str
    user_id: str


class UserOffline(Event):
    """Global presence notification, sent to every live connection."""

    kind: ClassVar[str] = "userOffline"

    username: str


class ErrorEvent(Event):
    """Failure report addressed to the originating connection."""

    kind: ClassVar[str] = "error"

    code: str
    detail: str
    event: str | None = None
