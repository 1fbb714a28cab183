"""Room event router - dispatches inbound events and broadcasts the results."""

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import pydantic

from roomcast.broadcast import Broadcaster
from roomcast.connections import Connection, ConnectionRegistry
from roomcast.errors import (
    ChatError,
    ConnectionClosedError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from roomcast.lanes import RoomLanes
from roomcast.marshaling import decode
from roomcast.membership import MembershipTable
from roomcast.metrics import ChatMetrics
from roomcast.models import (
    ErrorEvent,
    Event,
    JoinRoom,
    LoadMessages,
    MessageSeen,
    MessagesSeen,
    NewMessage,
    SendMessage,
    StopTyping,
    Typing,
    TypingStarted,
    TypingStopped,
    UserJoined,
    UserOffline,
)
from roomcast.pipeline import DEFAULT_HISTORY_LIMIT, MessagePipeline
from roomcast.receipts import ReceiptTracker
from roomcast.stores import RoomDirectory
from roomcast.typing_state import TypingCoordinator

logger = logging.getLogger(__name__)

EventHandler = Callable[[Connection, Any], Awaitable[None]]


class RoomEventRouter:
    """Routes inbound events to the engine components.

    The dispatch table is built once; every inbound event is looked up by
    its kind. Work that touches a room runs inside that room's lane.

    Error policy:
    - ValidationError and PersistenceError are reported to the originating
      connection with an ``error`` event.
    - NotFoundError and ConnectionClosedError drop the event silently.
    - Anything else is logged and re-raised.
    """

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        membership: MembershipTable,
        typing: TypingCoordinator,
        pipeline: MessagePipeline,
        receipts: ReceiptTracker,
        rooms: RoomDirectory,
        broadcaster: Broadcaster,
        lanes: RoomLanes,
        metrics: ChatMetrics | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._registry = registry
        self._membership = membership
        self._typing = typing
        self._pipeline = pipeline
        self._receipts = receipts
        self._rooms = rooms
        self._broadcaster = broadcaster
        self._lanes = lanes
        self._metrics = metrics
        self._history_limit = history_limit

        self._routes: dict[str, tuple[type[Event], EventHandler]] = {
            JoinRoom.kind: (JoinRoom, self._join_room),
            SendMessage.kind: (SendMessage, self._send_message),
            Typing.kind: (Typing, self._start_typing),
            StopTyping.kind: (StopTyping, self._stop_typing),
            MessageSeen.kind: (MessageSeen, self._message_seen),
        }
        typing.on_expired = self._typing_expired
        typing.after_expired = self._disconnect_lagging

    @property
    def kinds(self) -> frozenset[str]:
        """Inbound event kinds the router understands."""
        return frozenset(self._routes)

    async def dispatch_frame(self, connection_id: str, frame: Any) -> None:
        """Decode a raw wire frame and dispatch it."""
        try:
            kind, data = decode(frame)
        except ValidationError as e:
            self._report(connection_id, e, None)
            return
        await self.dispatch(connection_id, kind, data)

    async def dispatch(
        self,
        connection_id: str,
        kind: str,
        data: Mapping[str, Any],
    ) -> None:
        """Handle one inbound event from a connection."""
        if self._metrics is not None:
            self._metrics.event_received(kind)

        route = self._routes.get(kind)
        if route is None:
            self._drop(kind, "invalid")
            self._report(connection_id, ValidationError(f"Unknown event {kind}"), kind)
            return

        model, handler = route
        try:
            if self._metrics is not None:
                with self._metrics.dispatch_timer(kind):
                    await self._handle(connection_id, model, handler, data)
            else:
                await self._handle(connection_id, model, handler, data)
        except ValidationError as e:
            self._drop(kind, "invalid")
            self._report(connection_id, e, kind)
        except PersistenceError as e:
            logger.warning("%s from %s failed: %s", kind, connection_id, e)
            self._drop(kind, "persistence")
            self._report(connection_id, e, kind)
        except (NotFoundError, ConnectionClosedError) as e:
            logger.info("Dropped %s from %s: %s", kind, connection_id, e)
            self._drop(kind, e.code)
        except Exception:
            logger.exception("Handler for %s failed on %s", kind, connection_id)
            raise
        finally:
            await self._disconnect_lagging()

    async def disconnect(self, connection_id: str) -> None:
        """Tear down everything a closed connection owns.

        Leaves its room, clears its typing indicators and releases it,
        announcing ``userOffline`` to everyone when its user has no other
        live connection. Unknown connections are ignored.
        """
        connection = self._registry.find(connection_id)
        if connection is None:
            return

        rooms = self._typing.rooms_of(connection_id)
        current = self._membership.room_of(connection_id)
        if current is not None:
            rooms.add(current)

        for room_id in sorted(rooms):
            async with self._lanes.hold(room_id):
                if room_id == current:
                    self._membership.leave(connection_id)
                self._clear_typing(connection_id, room_id)

        try:
            offline = await self._registry.release(connection_id)
        except ChatError as e:
            logger.warning("Could not mark %s offline: %s", connection_id, e)
            return

        if offline is not None:
            self._broadcaster.to_all(UserOffline(username=offline.username))
        logger.info("Connection %s disconnected", connection_id)

    async def _handle(
        self,
        connection_id: str,
        model: type[Event],
        handler: EventHandler,
        data: Mapping[str, Any],
    ) -> None:
        try:
            event = model.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(_describe(model.kind, e)) from e

        connection = self._registry.get(connection_id)
        await handler(connection, event)

    async def _join_room(self, connection: Connection, event: JoinRoom) -> None:
        room_id = event.room_id
        await self._require_room(room_id)
        user, went_offline = await self._registry.identify(
            connection.id, event.username
        )
        if went_offline is not None:
            self._broadcaster.to_all(UserOffline(username=went_offline.username))

        previous = self._membership.room_of(connection.id)
        if previous is not None and previous != room_id:
            async with self._lanes.hold(previous):
                self._membership.leave(connection.id)
                self._clear_typing(connection.id, previous)

        async with self._lanes.hold(room_id):
            self._require_live(connection)
            self._membership.join(connection.id, room_id)
            self._broadcaster.to_room(room_id, UserJoined(user=user, room_id=room_id))

            history = await self._pipeline.history(room_id, self._history_limit)
            self._broadcaster.to_connection(
                connection.id,
                LoadMessages(room_id=room_id, messages=history),
            )

    async def _send_message(self, connection: Connection, event: SendMessage) -> None:
        self._require_identified(connection)
        room_id = event.room_id
        await self._require_room(room_id)

        async with self._lanes.hold(room_id):
            message, sender = await self._pipeline.send(
                room_id, event.sender_id, event.content
            )
            self._broadcaster.to_room(
                room_id, NewMessage(message=message, sender=sender)
            )
            if self._metrics is not None:
                self._metrics.message_sent()

            # Sending ends composition.
            if self._typing.stop_typing(room_id, sender.username):
                self._broadcaster.to_room(
                    room_id,
                    TypingStopped(room_id=room_id, username=sender.username),
                    exclude={connection.id},
                )

    async def _start_typing(self, connection: Connection, event: Typing) -> None:
        self._require_identified(connection)
        await self._require_room(event.room_id)

        async with self._lanes.hold(event.room_id):
            if self._typing.start_typing(event.room_id, event.username, connection.id):
                self._broadcaster.to_room(
                    event.room_id,
                    TypingStarted(room_id=event.room_id, username=event.username),
                    exclude={connection.id},
                )

    async def _stop_typing(self, connection: Connection, event: StopTyping) -> None:
        self._require_identified(connection)
        await self._require_room(event.room_id)

        async with self._lanes.hold(event.room_id):
            if self._typing.stop_typing(event.room_id, event.username):
                self._broadcaster.to_room(
                    event.room_id,
                    TypingStopped(room_id=event.room_id, username=event.username),
                    exclude={connection.id},
                )

    async def _message_seen(self, connection: Connection, event: MessageSeen) -> None:
        self._require_identified(connection)
        await self._require_room(event.room_id)

        async with self._lanes.hold(event.room_id):
            await self._receipts.mark_seen(event.room_id, event.user_id)
            self._broadcaster.to_room(
                event.room_id,
                MessagesSeen(room_id=event.room_id, user_id=event.user_id),
            )

    async def _typing_expired(self, room_id: str, username: str) -> None:
        # Called by the coordinator with the room's lane already held.
        if self._metrics is not None:
            self._metrics.typing_expired()
        self._broadcaster.to_room(
            room_id, TypingStopped(room_id=room_id, username=username)
        )

    def _clear_typing(self, connection_id: str, room_id: str) -> None:
        for room, username in self._typing.clear_connection(connection_id, room_id):
            self._broadcaster.to_room(
                room,
                TypingStopped(room_id=room, username=username),
                exclude={connection_id},
            )

    async def _require_room(self, room_id: str) -> None:
        if self._membership.members_of(room_id):
            return
        try:
            exists = await self._rooms.exists(room_id)
        except ChatError:
            raise
        except Exception as e:
            raise PersistenceError(e) from e
        if not exists:
            msg = f"Unknown room {room_id}"
            raise NotFoundError(msg)

    def _require_identified(self, connection: Connection) -> None:
        if not connection.identified:
            msg = f"Connection {connection.id} has not joined a room"
            raise NotFoundError(msg)

    def _require_live(self, connection: Connection) -> None:
        if self._registry.find(connection.id) is not connection:
            msg = f"Connection {connection.id} closed"
            raise ConnectionClosedError(msg)

    async def _disconnect_lagging(self) -> None:
        for connection_id in self._broadcaster.take_lagging():
            logger.warning("Disconnecting slow connection %s", connection_id)
            await self.disconnect(connection_id)

    def _report(self, connection_id: str, error: ChatError, kind: str | None) -> None:
        self._broadcaster.to_connection(
            connection_id,
            ErrorEvent(code=error.code, detail=str(error), event=kind),
        )

    def _drop(self, kind: str, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.event_dropped(kind, reason)


def _describe(kind: str, error: pydantic.ValidationError) -> str:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or kind}: {err['msg']}"
        for err in error.errors()
    )
    return f"Invalid {kind} payload: {problems}"
