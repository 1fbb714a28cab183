"""ChatEngine - wires the components into one injectable unit."""

import logging
from contextlib import AsyncExitStack

import anyio

from roomcast.broadcast import Broadcaster
from roomcast.config import ChatConfig
from roomcast.connections import ConnectionRegistry
from roomcast.lanes import RoomLanes
from roomcast.membership import MembershipTable
from roomcast.metrics import ChatMetrics
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

logger = logging.getLogger(__name__)


class ChatEngine:
    """The real-time core: registry, membership, typing, messages, receipts.

    Every engine owns its own state, so tests and apps can run several side
    by side. Use it as an async context manager to run the typing timers:

        async with ChatEngine(rooms=rooms) as engine:
            connection = engine.registry.register()
            await engine.router.dispatch(connection.id, "joinRoom", {...})
    """

    def __init__(
        self,
        config: ChatConfig | None = None,
        *,
        messages: MessageStore | None = None,
        users: UserDirectory | None = None,
        rooms: RoomDirectory | None = None,
        metrics: ChatMetrics | None = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.messages = messages if messages is not None else InMemoryMessageStore()
        self.users = users if users is not None else InMemoryUserDirectory()
        self.rooms = rooms if rooms is not None else InMemoryRoomDirectory()
        self.metrics = metrics

        self.lanes = RoomLanes()
        self.registry = ConnectionRegistry(self.users, self.config.outbox_size)
        self.membership = MembershipTable(self.registry)
        self.typing = TypingCoordinator(self.lanes, self.config.typing_timeout)
        self.pipeline = MessagePipeline(self.messages, self.users)
        self.receipts = ReceiptTracker(self.messages)
        self.broadcaster = Broadcaster(
            self.registry,
            self.membership,
            metrics,
            drop_slow_consumers=self.config.drop_slow_consumers,
        )
        self.router = RoomEventRouter(
            registry=self.registry,
            membership=self.membership,
            typing=self.typing,
            pipeline=self.pipeline,
            receipts=self.receipts,
            rooms=self.rooms,
            broadcaster=self.broadcaster,
            lanes=self.lanes,
            metrics=metrics,
            history_limit=self.config.history_limit,
        )
        self._exit_stack: AsyncExitStack | None = None

    async def __aenter__(self) -> "ChatEngine":
        logger.info("Starting chat engine...")
        async with AsyncExitStack() as stack:
            task_group = await stack.enter_async_context(anyio.create_task_group())
            await task_group.start(self.typing.run)
            self._exit_stack = stack.pop_all()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        logger.info("Shutting down chat engine...")
        for connection in self.registry.connections():
            connection.close()
        await self.typing.close()
        if self._exit_stack is not None:
            stack, self._exit_stack = self._exit_stack, None
            await stack.__aexit__(exc_type, exc_val, exc_tb)
