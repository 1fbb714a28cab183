"""Helpers for driving an engine in tests."""

from typing import TypeVar

import anyio

from roomcast import ChatEngine, Connection
from roomcast.models import Event

E = TypeVar("E", bound=Event)


def drain(connection: Connection) -> list[Event]:
    """Take every event currently queued on a connection."""
    events: list[Event] = []
    while True:
        try:
            events.append(connection.outbox.receive_nowait())
        except (anyio.WouldBlock, anyio.EndOfStream):
            return events


def only(events: list[Event], event_type: type[E]) -> list[E]:
    return [e for e in events if isinstance(e, event_type)]


async def join(engine: ChatEngine, username: str, room_id: str) -> Connection:
    """Open a connection and join it to a room."""
    connection = engine.registry.register()
    await engine.router.dispatch(
        connection.id,
        "joinRoom",
        {"username": username, "roomId": room_id},
    )
    return connection


async def send(engine: ChatEngine, connection: Connection, content: str) -> None:
    await engine.router.dispatch(
        connection.id,
        "sendMessage",
        {
            "roomId": connection.room_id,
            "content": content,
            "senderId": connection.user_id,
        },
    )
