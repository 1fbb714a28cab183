"""Fan-out of outbound events to connection outboxes."""

import logging
from collections.abc import Collection

import anyio

from roomcast.connections import Connection, ConnectionRegistry
from roomcast.membership import MembershipTable
from roomcast.metrics import ChatMetrics
from roomcast.models import Event

logger = logging.getLogger(__name__)


class Broadcaster:
    """Queues events on connection outboxes without ever blocking.

    Room fan-out reads the membership table at send time, never a snapshot
    taken before a suspension point. A connection whose outbox is full is
    marked lagging and, with `drop_slow_consumers`, its outbox is closed so
    the transport tears it down.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        membership: MembershipTable,
        metrics: ChatMetrics | None = None,
        *,
        drop_slow_consumers: bool = True,
    ) -> None:
        self._registry = registry
        self._membership = membership
        self._metrics = metrics
        self._drop_slow_consumers = drop_slow_consumers
        self._lagging: set[str] = set()

    def to_connection(self, connection_id: str, event: Event) -> bool:
        connection = self._registry.find(connection_id)
        if connection is None:
            return False
        delivered = self._deliver(connection, event)
        self._record(event, int(delivered))
        return delivered

    def to_room(
        self,
        room_id: str,
        event: Event,
        exclude: Collection[str] = (),
    ) -> int:
        """Send an event to every current member of a room."""
        count = 0
        for connection_id in self._membership.members_of(room_id):
            if connection_id in exclude:
                continue
            connection = self._registry.find(connection_id)
            if connection is not None and self._deliver(connection, event):
                count += 1
        self._record(event, count)
        return count

    def to_all(self, event: Event, exclude: Collection[str] = ()) -> int:
        """Send an event to every live connection, joined or not."""
        count = 0
        for connection in self._registry.connections():
            if connection.id in exclude:
                continue
            if self._deliver(connection, event):
                count += 1
        self._record(event, count)
        return count

    def take_lagging(self) -> list[str]:
        """Connections that overflowed since the last call."""
        lagging = list(self._lagging)
        self._lagging.clear()
        return lagging

    def _deliver(self, connection: Connection, event: Event) -> bool:
        try:
            connection.send_stream.send_nowait(event)
        except anyio.WouldBlock:
            logger.warning(
                "Outbox of connection %s is full, %s event not delivered",
                connection.id,
                event.kind,
            )
            if self._drop_slow_consumers:
                self._lagging.add(connection.id)
                connection.close()
            return False
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            return False
        return True

    def _record(self, event: Event, count: int) -> None:
        if self._metrics is not None:
            self._metrics.delivered(event.kind, count)
