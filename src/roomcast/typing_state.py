"""Typing coordinator - who is composing a message in each room.

Each typist carries a deadline. A fresh typing signal pushes the deadline
out and replaces the expiry timer; an explicit stop or the deadline ends
the entry, whichever comes first. Expired entries are invisible to readers
even before their timer has run.

An entry stays in the table until exactly one stop transition has been
reported for it, either by a `stop_typing`/`clear_connection` return value
or by the expiry callback.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import anyio
import anyio.abc

from roomcast.lanes import RoomLanes

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TIMEOUT = 1.5

ExpiredCallback = Callable[[str, str], Awaitable[None]]
SettledCallback = Callable[[], Awaitable[None]]


@dataclass(eq=False)
class _Typist:
    username: str
    deadline: float
    connection_id: str | None = None
    timer: anyio.CancelScope = field(default_factory=anyio.CancelScope)


class TypingCoordinator:
    """Tracks the set of typing users per room with automatic expiry.

    Expiry timers live in the coordinator's own task group, so `run()` must
    be active before `start_typing` is called:

        async with anyio.create_task_group() as tg:
            await tg.start(coordinator.run)
            coordinator.start_typing("general", "alice")

    `on_expired(room_id, username)` is awaited once for every entry removed
    by its deadline, while the room's lane is held. `after_expired()` is
    awaited right after, once the lane is released.
    """

    def __init__(
        self,
        lanes: RoomLanes,
        timeout: float = DEFAULT_TYPING_TIMEOUT,
        on_expired: ExpiredCallback | None = None,
    ) -> None:
        self._lanes = lanes
        self._timeout = timeout
        self.on_expired = on_expired
        self.after_expired: SettledCallback | None = None
        self._rooms: dict[str, dict[str, _Typist]] = {}
        self._task_group: anyio.abc.TaskGroup | None = None
        self._running = False

    async def run(
        self,
        *,
        task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        """Host expiry timers until closed."""
        if self._running:
            msg = "TypingCoordinator is already running"
            raise RuntimeError(msg)

        self._running = True
        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                task_status.started()
                await anyio.sleep_forever()
        finally:
            self._running = False
            self._task_group = None
            self._rooms.clear()

    async def close(self) -> None:
        """Stop the coordinator, cancelling every pending timer."""
        if self._task_group:
            self._task_group.cancel_scope.cancel()

    def start_typing(
        self,
        room_id: str,
        username: str,
        connection_id: str | None = None,
    ) -> bool:
        """Mark a user typing, refreshing the deadline if already typing.

        Returns True only when the user was not typing before.
        """
        if self._task_group is None:
            msg = "TypingCoordinator is not running"
            raise RuntimeError(msg)

        typists = self._rooms.setdefault(room_id, {})
        previous = typists.get(username)
        if previous is not None:
            previous.timer.cancel()

        typist = _Typist(
            username=username,
            deadline=anyio.current_time() + self._timeout,
            connection_id=connection_id,
        )
        typists[username] = typist
        self._task_group.start_soon(self._expire_later, room_id, typist)

        return previous is None

    def stop_typing(self, room_id: str, username: str) -> bool:
        """Remove a typist. Returns True if the user was typing."""
        typist = self._pop(room_id, username)
        if typist is None:
            return False
        typist.timer.cancel()
        return True

    def typists(self, room_id: str) -> set[str]:
        """Users currently typing in a room, ignoring elapsed deadlines."""
        now = anyio.current_time()
        return {
            name
            for name, typist in self._rooms.get(room_id, {}).items()
            if typist.deadline > now
        }

    def is_typing(self, room_id: str, username: str) -> bool:
        return username in self.typists(room_id)

    def rooms_of(self, connection_id: str) -> set[str]:
        """Rooms holding an entry signalled from a connection."""
        return {
            room_id
            for room_id, typists in self._rooms.items()
            if any(t.connection_id == connection_id for t in typists.values())
        }

    def clear_connection(
        self,
        connection_id: str,
        room_id: str | None = None,
    ) -> list[tuple[str, str]]:
        """Drop every entry signalled from a connection, optionally in one room.

        Returns the `(room_id, username)` pairs that were removed.
        """
        if room_id is None:
            rooms = list(self._rooms.items())
        else:
            rooms = [(room_id, self._rooms.get(room_id, {}))]

        cleared: list[tuple[str, str]] = []
        for room, typists in rooms:
            for name, typist in list(typists.items()):
                if typist.connection_id != connection_id:
                    continue
                self._pop(room, name)
                typist.timer.cancel()
                cleared.append((room, name))
        return cleared

    async def _expire_later(self, room_id: str, typist: _Typist) -> None:
        with typist.timer:
            await anyio.sleep_until(typist.deadline)
            async with self._lanes.hold(room_id):
                # A refresh or stop may have replaced the entry meanwhile.
                if self._rooms.get(room_id, {}).get(typist.username) is not typist:
                    return
                self._pop(room_id, typist.username)
                logger.debug("Typing expired for %s in %s", typist.username, room_id)
                if self.on_expired is not None:
                    await self.on_expired(room_id, typist.username)
            if self.after_expired is not None:
                await self.after_expired()

    def _pop(self, room_id: str, username: str) -> _Typist | None:
        typists = self._rooms.get(room_id)
        if typists is None:
            return None
        typist = typists.pop(username, None)
        if not typists:
            del self._rooms[room_id]
        return typist
