"""Shared fixtures for roomcast tests."""

import pytest

from roomcast import (
    ChatConfig,
    ChatEngine,
    InMemoryRoomDirectory,
    InMemoryUserDirectory,
    User,
)

TYPING_TIMEOUT = 0.05


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def rooms() -> InMemoryRoomDirectory:
    directory = InMemoryRoomDirectory()
    directory.create("General", room_id="general")
    directory.create("Random", room_id="random")
    return directory


@pytest.fixture
def users() -> InMemoryUserDirectory:
    directory = InMemoryUserDirectory()
    for name in ("alice", "bob", "carol"):
        directory.add(User(id=name, username=name))
    return directory


@pytest.fixture
def config() -> ChatConfig:
    return ChatConfig(typing_timeout=TYPING_TIMEOUT)


@pytest.fixture
async def engine(config, rooms, users):
    async with ChatEngine(config, rooms=rooms, users=users) as engine:
        yield engine
