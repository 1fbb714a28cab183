"""Collaborators the engine persists through, and in-memory implementations.

The engine never creates rooms or owns user records. It reaches them
through the protocols below; the in-memory classes back the default app
and the tests.
"""

from collections.abc import Sequence
from typing import Protocol
from uuid import uuid4

from roomcast.errors import NotFoundError
from roomcast.models import ChatMessage, Room, User


class MessageStore(Protocol):
    """Durable message storage."""

    async def create(self, message: ChatMessage) -> ChatMessage: ...

    async def find_by_room(self, room_id: str) -> Sequence[ChatMessage]: ...

    async def append_seen(self, message_id: str, user_id: str) -> bool:
        """Add `user_id` to the message's seen set. Returns False if present."""
        ...


class UserDirectory(Protocol):
    """User records keyed by id, unique by username."""

    async def find_or_create(self, username: str) -> User: ...

    async def get(self, user_id: str) -> User | None: ...

    async def set_online(
        self,
        user_id: str,
        online: bool,
        connection_id: str | None = None,
    ) -> User: ...


class RoomDirectory(Protocol):
    """Lookup of rooms created elsewhere."""

    async def exists(self, room_id: str) -> bool: ...

    async def get(self, room_id: str) -> Room | None: ...


class InMemoryMessageStore:
    """Message store keeping every room's messages in insertion order."""

    def __init__(self) -> None:
        self._rooms: dict[str, list[ChatMessage]] = {}
        self._by_id: dict[str, ChatMessage] = {}

    async def create(self, message: ChatMessage) -> ChatMessage:
        stored = message.model_copy(deep=True)
        self._rooms.setdefault(stored.room_id, []).append(stored)
        self._by_id[stored.id] = stored
        return stored.model_copy(deep=True)

    async def find_by_room(self, room_id: str) -> list[ChatMessage]:
        return [m.model_copy(deep=True) for m in self._rooms.get(room_id, [])]

    async def append_seen(self, message_id: str, user_id: str) -> bool:
        stored = self._by_id.get(message_id)
        if stored is None:
            msg = f"Unknown message {message_id}"
            raise NotFoundError(msg)
        if user_id in stored.seen_by:
            return False
        stored.seen_by.add(user_id)
        return True


class InMemoryUserDirectory:
    """User directory that creates users on first sight of a username."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._ids_by_name: dict[str, str] = {}

    def add(self, user: User) -> User:
        """Seed a user with a known id."""
        self._users[user.id] = user.model_copy()
        self._ids_by_name[user.username] = user.id
        return user

    async def find_or_create(self, username: str) -> User:
        user_id = self._ids_by_name.get(username)
        if user_id is None:
            user = self.add(User(id=uuid4().hex, username=username))
            return user.model_copy()
        return self._users[user_id].model_copy()

    async def get(self, user_id: str) -> User | None:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def set_online(
        self,
        user_id: str,
        online: bool,
        connection_id: str | None = None,
    ) -> User:
        user = self._users.get(user_id)
        if user is None:
            msg = f"Unknown user {user_id}"
            raise NotFoundError(msg)
        user.online = online
        if connection_id is not None:
            user.connection_id = connection_id
        return user.model_copy()


class InMemoryRoomDirectory:
    """Room directory filled by whoever creates rooms."""

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}

    def create(self, name: str, room_id: str | None = None) -> Room:
        room = Room(id=room_id or uuid4().hex, name=name)
        self._rooms[room.id] = room
        return room

    async def exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    async def get(self, room_id: str) -> Room | None:
        return self._rooms.get(room_id)
