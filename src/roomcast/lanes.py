"""Per-room serialization lanes."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import anyio


@dataclass(eq=False)
class _Lane:
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    users: int = 0


class RoomLanes:
    """One FIFO lock per room.

    Everything that mutates a room's state or broadcasts to it runs while
    holding that room's lane, so events of one room apply in arrival order
    while distinct rooms proceed in parallel. Lanes are not reentrant.

    A lane exists only while some task holds it or waits for it.
    """

    def __init__(self) -> None:
        self._lanes: dict[str, _Lane] = {}

    def __len__(self) -> int:
        return len(self._lanes)

    @asynccontextmanager
    async def hold(self, room_id: str) -> AsyncIterator[None]:
        lane = self._lanes.get(room_id)
        if lane is None:
            lane = self._lanes[room_id] = _Lane()
        lane.users += 1
        try:
            async with lane.lock:
                yield
        finally:
            lane.users -= 1
            if lane.users == 0 and self._lanes.get(room_id) is lane:
                del self._lanes[room_id]
