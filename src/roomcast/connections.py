"""Connection registry - live channels and the users behind them."""

import logging
from dataclasses import dataclass, field
from uuid import uuid4

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from roomcast.errors import (
    ChatError,
    ConnectionClosedError,
    NotFoundError,
    PersistenceError,
)
from roomcast.models import Event, User
from roomcast.stores import UserDirectory

logger = logging.getLogger(__name__)

DEFAULT_OUTBOX_SIZE = 100


@dataclass
class Connection:
    """Handle to one live channel.

    Outbound events are queued on `send_stream`; the transport drains
    `outbox`.
    """

    id: str
    send_stream: MemoryObjectSendStream[Event] = field(repr=False)
    outbox: MemoryObjectReceiveStream[Event] = field(repr=False)
    user_id: str | None = None
    username: str | None = None
    room_id: str | None = None

    @property
    def identified(self) -> bool:
        return self.user_id is not None

    def close(self) -> None:
        """Stop accepting outbound events. Queued events can still be drained."""
        self.send_stream.close()


class ConnectionRegistry:
    """Tracks live connections and online/offline transitions of their users."""

    def __init__(
        self,
        users: UserDirectory,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
    ) -> None:
        self._users = users
        self._outbox_size = outbox_size
        self._connections: dict[str, Connection] = {}

    def register(self, connection_id: str | None = None) -> Connection:
        """Create an idle, unassociated connection."""
        connection_id = connection_id or uuid4().hex
        if connection_id in self._connections:
            msg = f"Connection {connection_id} is already registered"
            raise ValueError(msg)

        send_stream, receive_stream = anyio.create_memory_object_stream[Event](
            max_buffer_size=self._outbox_size,
        )
        connection = Connection(
            id=connection_id,
            send_stream=send_stream,
            outbox=receive_stream,
        )
        self._connections[connection_id] = connection
        logger.debug("Registered connection %s", connection_id)
        return connection

    async def identify(
        self,
        connection_id: str,
        username: str,
    ) -> tuple[User, User | None]:
        """Associate a connection with a user and mark the user online.

        Returns the identified user and, when the connection was bound to a
        different user whose last connection this was, that previous user
        now offline.
        """
        connection = self.get(connection_id)

        try:
            user = await self._users.find_or_create(username)
        except ChatError:
            raise
        except Exception as e:
            raise PersistenceError(e) from e

        # The channel may have closed while the directory was consulted.
        if self._connections.get(connection_id) is not connection:
            msg = f"Connection {connection_id} closed while joining"
            raise ConnectionClosedError(msg)

        previous = connection.user_id
        connection.user_id = user.id
        connection.username = user.username
        went_offline = None
        if previous is not None and previous != user.id:
            went_offline = await self._set_offline_if_idle(previous)

        user = await self._set_online(user.id, True, connection_id)
        logger.info("Connection %s identified as %s", connection_id, user.username)
        return user, went_offline

    async def release(self, connection_id: str) -> User | None:
        """Forget a closed connection.

        Returns the user that went offline, i.e. only when this was the
        user's last live connection. Unknown connections are ignored.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        connection.close()
        logger.debug("Released connection %s", connection_id)

        if connection.user_id is None:
            return None
        return await self._set_offline_if_idle(connection.user_id)

    def get(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            msg = f"Unknown connection {connection_id}"
            raise NotFoundError(msg)
        return connection

    def find(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def connections_of(self, user_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.user_id == user_id]

    async def _set_offline_if_idle(self, user_id: str) -> User | None:
        if self.connections_of(user_id):
            return None
        user = await self._set_online(user_id, False)
        logger.info("User %s is offline", user.username)
        return user

    async def _set_online(
        self,
        user_id: str,
        online: bool,
        connection_id: str | None = None,
    ) -> User:
        try:
            return await self._users.set_online(user_id, online, connection_id)
        except ChatError:
            raise
        except Exception as e:
            raise PersistenceError(e) from e
