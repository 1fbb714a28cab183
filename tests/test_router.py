"""End-to-end tests of the event router against a running engine."""

import dataclasses

import anyio
import pytest
from helpers import drain, join, only, send

from roomcast import ChatConfig, ChatEngine, InMemoryMessageStore
from roomcast.models import (
    ChatMessage,
    ErrorEvent,
    LoadMessages,
    MessagesSeen,
    NewMessage,
    TypingStarted,
    TypingStopped,
    UserJoined,
    UserOffline,
)

pytestmark = pytest.mark.anyio

TIMEOUT_SECONDS = 2
EXPIRY_WAIT = 0.2
MESSAGE_COUNT = 5
BOGUS_ROOMS = 50


class FailingMessageStore(InMemoryMessageStore):
    async def create(self, message: ChatMessage) -> ChatMessage:
        raise OSError("store unavailable")


class BlockingMessageStore(InMemoryMessageStore):
    """Holds persistence of "general" messages until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = anyio.Event()

    async def create(self, message: ChatMessage) -> ChatMessage:
        if message.room_id == "general":
            await self.release.wait()
        return await super().create(message)


class GeneralFailsMessageStore(InMemoryMessageStore):
    async def create(self, message: ChatMessage) -> ChatMessage:
        if message.room_id == "general":
            raise OSError("general shard unavailable")
        return await super().create(message)


class SlowFirstMessageStore(InMemoryMessageStore):
    """Takes a while to persist messages whose content is 'slow'."""

    async def create(self, message: ChatMessage) -> ChatMessage:
        if message.content == "slow":
            await anyio.sleep(0.05)
        return await super().create(message)


class TestJoin:
    async def test_join_broadcasts_to_room_including_joiner(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")

        alice_events = drain(alice)
        bob_events = drain(bob)

        joined = only(alice_events, UserJoined)
        assert [e.user.username for e in joined] == ["alice", "bob"]
        assert [e.user.username for e in only(bob_events, UserJoined)] == ["bob"]
        assert joined[0].user.online is True
        assert joined[0].room_id == "general"

    async def test_joiner_receives_history(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        drain(alice)
        await send(engine, alice, "first")
        await send(engine, alice, "second")

        bob = await join(engine, "bob", "general")

        [history] = only(drain(bob), LoadMessages)
        assert [m.content for m in history.messages] == ["first", "second"]
        assert not only(drain(alice), LoadMessages)

    async def test_switching_rooms_keeps_single_membership(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        await engine.router.dispatch(
            alice.id, "joinRoom", {"username": "alice", "roomId": "random"}
        )

        assert alice.id not in engine.membership.members_of("general")
        assert engine.membership.members_of("random") == {alice.id}
        assert alice.room_id == "random"

    async def test_unknown_room_is_dropped(self, engine) -> None:
        bob = await join(engine, "bob", "general")
        drain(bob)
        stranger = engine.registry.register()

        await engine.router.dispatch(
            stranger.id, "joinRoom", {"username": "alice", "roomId": "nowhere"}
        )

        assert drain(stranger) == []
        assert drain(bob) == []
        assert engine.membership.room_of(stranger.id) is None

    async def test_rejoining_as_other_user_announces_offline(self, engine) -> None:
        carol = await join(engine, "carol", "random")
        drain(carol)
        connection = await join(engine, "alice", "general")

        await engine.router.dispatch(
            connection.id, "joinRoom", {"username": "bob", "roomId": "general"}
        )

        assert only(drain(carol), UserOffline) == [UserOffline(username="alice")]
        assert (await engine.users.get("alice")).online is False
        assert (await engine.users.get("bob")).online is True

    async def test_rejoining_as_other_user_keeps_shared_user_online(
        self, engine
    ) -> None:
        carol = await join(engine, "carol", "random")
        await join(engine, "alice", "random")
        connection = await join(engine, "alice", "general")
        drain(carol)

        await engine.router.dispatch(
            connection.id, "joinRoom", {"username": "bob", "roomId": "general"}
        )

        assert only(drain(carol), UserOffline) == []
        assert (await engine.users.get("alice")).online is True

    async def test_rejoining_does_not_duplicate_delivery(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        for _ in range(3):
            await engine.router.dispatch(
                alice.id, "joinRoom", {"username": "alice", "roomId": "general"}
            )
        drain(alice)

        await send(engine, alice, "once")

        assert len(only(drain(alice), NewMessage)) == 1


class TestSendMessage:
    async def test_message_reaches_every_member_once(self, engine) -> None:
        members = [await join(engine, name, "general") for name in ("alice", "bob")]
        carol = await join(engine, "carol", "general")
        members.append(carol)
        outsider = await join(engine, "alice", "random")
        for connection in [*members, outsider]:
            drain(connection)

        await send(engine, carol, "hello")

        for connection in members:
            [event] = drain(connection)
            assert isinstance(event, NewMessage)
            assert event.message.content == "hello"
            assert event.message.delivered is True
            assert event.message.seen_by == set()
            assert event.sender.username == "carol"
        assert drain(outsider) == []

    async def test_messages_arrive_in_acceptance_order(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        drain(alice)
        drain(bob)

        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                for i in range(MESSAGE_COUNT):
                    tg.start_soon(send, engine, alice, f"msg-{i}")

        stored = [m.id for m in await engine.messages.find_by_room("general")]
        assert len(stored) == MESSAGE_COUNT
        for connection in (alice, bob):
            received = [e.message.id for e in only(drain(connection), NewMessage)]
            assert received == stored

    async def test_later_send_waits_for_earlier_persistence(
        self, config, rooms, users
    ) -> None:
        store = SlowFirstMessageStore()
        async with ChatEngine(config, messages=store, rooms=rooms, users=users) as eng:
            alice = await join(eng, "alice", "general")
            bob = await join(eng, "bob", "general")
            drain(alice)
            drain(bob)

            with anyio.fail_after(TIMEOUT_SECONDS):
                async with anyio.create_task_group() as tg:
                    tg.start_soon(send, eng, alice, "slow")
                    await anyio.sleep(0.01)
                    tg.start_soon(send, eng, alice, "fast")

            received = [e.message.content for e in only(drain(bob), NewMessage)]
            assert received == ["slow", "fast"]

    async def test_empty_content_reported_to_sender_only(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        drain(alice)
        drain(bob)

        await send(engine, alice, "   ")

        [error] = drain(alice)
        assert isinstance(error, ErrorEvent)
        assert error.code == "validation"
        assert error.event == "sendMessage"
        assert drain(bob) == []
        assert await engine.messages.find_by_room("general") == []

    async def test_missing_fields_reported(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        drain(alice)

        await engine.router.dispatch(alice.id, "sendMessage", {"roomId": "general"})

        [error] = drain(alice)
        assert isinstance(error, ErrorEvent)
        assert "content" in error.detail
        assert "senderId" in error.detail

    async def test_persistence_failure_is_not_broadcast(
        self, config, rooms, users
    ) -> None:
        store = FailingMessageStore()
        async with ChatEngine(config, messages=store, rooms=rooms, users=users) as eng:
            alice = await join(eng, "alice", "general")
            bob = await join(eng, "bob", "general")
            drain(alice)
            drain(bob)

            await send(eng, alice, "lost")

            [error] = drain(alice)
            assert isinstance(error, ErrorEvent)
            assert error.code == "persistence"
            assert drain(bob) == []

    async def test_unidentified_connection_is_dropped(self, engine) -> None:
        bob = await join(engine, "bob", "general")
        drain(bob)
        anonymous = engine.registry.register()

        await engine.router.dispatch(
            anonymous.id,
            "sendMessage",
            {"roomId": "general", "content": "hi", "senderId": "alice"},
        )

        assert drain(anonymous) == []
        assert drain(bob) == []

    async def test_sending_stops_typing(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        await engine.router.dispatch(
            alice.id, "typing", {"roomId": "general", "username": "alice"}
        )
        drain(bob)

        await send(engine, alice, "done")

        events = drain(bob)
        assert [type(e) for e in events] == [NewMessage, TypingStopped]
        assert engine.typing.typists("general") == set()


class TestRoomIsolation:
    async def test_stalled_room_does_not_block_other_rooms(
        self, config, rooms, users
    ) -> None:
        store = BlockingMessageStore()
        async with ChatEngine(config, messages=store, rooms=rooms, users=users) as eng:
            alice = await join(eng, "alice", "general")
            bob = await join(eng, "bob", "random")
            drain(alice)
            drain(bob)

            with anyio.fail_after(TIMEOUT_SECONDS):
                async with anyio.create_task_group() as tg:
                    tg.start_soon(send, eng, alice, "stuck")
                    await anyio.sleep(0.01)

                    await send(eng, bob, "elsewhere")

                    [event] = drain(bob)
                    assert isinstance(event, NewMessage)
                    assert event.message.content == "elsewhere"
                    assert drain(alice) == []
                    store.release.set()

            [event] = drain(alice)
            assert isinstance(event, NewMessage)
            assert event.message.content == "stuck"

    async def test_failing_room_leaves_other_rooms_working(
        self, config, rooms, users
    ) -> None:
        store = GeneralFailsMessageStore()
        async with ChatEngine(config, messages=store, rooms=rooms, users=users) as eng:
            alice = await join(eng, "alice", "general")
            bob = await join(eng, "bob", "random")
            drain(alice)
            drain(bob)

            await send(eng, alice, "lost")
            await send(eng, bob, "kept")
            await send(eng, alice, "lost again")
            await send(eng, bob, "kept again")

            errors = drain(alice)
            assert [type(e) for e in errors] == [ErrorEvent, ErrorEvent]
            assert {e.code for e in only(errors, ErrorEvent)} == {"persistence"}
            received = [e.message.content for e in only(drain(bob), NewMessage)]
            assert received == ["kept", "kept again"]

    async def test_lanes_are_released_for_unknown_rooms(self, engine) -> None:
        alice = await join(engine, "alice", "general")

        for i in range(BOGUS_ROOMS):
            await engine.router.dispatch(
                alice.id, "stopTyping", {"roomId": f"bogus-{i}", "username": "alice"}
            )
            await engine.router.dispatch(
                alice.id, "typing", {"roomId": f"bogus-{i}", "username": "alice"}
            )

        assert len(engine.lanes) == 0
        assert engine.typing.rooms_of(alice.id) == set()


class TestTyping:
    async def test_typing_goes_to_others(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        drain(alice)
        drain(bob)

        await engine.router.dispatch(
            alice.id, "typing", {"roomId": "general", "username": "alice"}
        )

        assert drain(alice) == []
        [event] = drain(bob)
        assert event == TypingStarted(room_id="general", username="alice")

    async def test_concurrent_typists_are_a_set(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        carol = await join(engine, "carol", "general")
        drain(carol)

        for connection, name in ((alice, "alice"), (bob, "bob")):
            await engine.router.dispatch(
                connection.id, "typing", {"roomId": "general", "username": name}
            )

        assert engine.typing.typists("general") == {"alice", "bob"}
        started = only(drain(carol), TypingStarted)
        assert {e.username for e in started} == {"alice", "bob"}

    async def test_expiry_emits_exactly_one_stop(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        await engine.router.dispatch(
            alice.id, "typing", {"roomId": "general", "username": "alice"}
        )
        drain(bob)

        await anyio.sleep(EXPIRY_WAIT)

        assert engine.typing.typists("general") == set()
        assert drain(bob) == [TypingStopped(room_id="general", username="alice")]

    async def test_explicit_stop_prevents_expiry_broadcast(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        payload = {"roomId": "general", "username": "alice"}
        await engine.router.dispatch(alice.id, "typing", payload)
        await engine.router.dispatch(alice.id, "stopTyping", payload)
        drain(bob)

        await anyio.sleep(EXPIRY_WAIT)

        assert drain(bob) == []

    async def test_disconnect_while_typing_clears_indicator(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        await engine.router.dispatch(
            alice.id, "typing", {"roomId": "general", "username": "alice"}
        )
        drain(bob)

        await engine.router.disconnect(alice.id)
        await anyio.sleep(EXPIRY_WAIT)

        events = drain(bob)
        assert only(events, TypingStopped) == [
            TypingStopped(room_id="general", username="alice")
        ]
        assert only(events, UserOffline) == [UserOffline(username="alice")]
        assert engine.typing.typists("general") == set()


class TestMessageSeen:
    async def test_alice_and_bob_scenario(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        drain(alice)
        await send(engine, alice, "hi")

        [new_message] = drain(alice)
        assert isinstance(new_message, NewMessage)
        assert new_message.message.delivered is True
        assert new_message.message.seen_by == set()

        bob = await join(engine, "bob", "general")
        await engine.router.dispatch(
            bob.id, "messageSeen", {"roomId": "general", "userId": "bob"}
        )

        [stored] = await engine.messages.find_by_room("general")
        assert stored.seen_by == {"bob"}
        seen = only(drain(alice), MessagesSeen)
        assert seen == [MessagesSeen(room_id="general", user_id="bob")]
        assert only(drain(bob), MessagesSeen) == seen

    async def test_marking_twice_is_idempotent(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        await send(engine, alice, "one")
        await send(engine, alice, "two")
        bob = await join(engine, "bob", "general")
        payload = {"roomId": "general", "userId": "bob"}

        await engine.router.dispatch(bob.id, "messageSeen", payload)
        first = [m.seen_by for m in await engine.messages.find_by_room("general")]
        await engine.router.dispatch(bob.id, "messageSeen", payload)
        second = [m.seen_by for m in await engine.messages.find_by_room("general")]

        assert first == second == [{"bob"}, {"bob"}]


class TestDisconnect:
    async def test_never_joined_connection_is_noop(self, engine) -> None:
        bob = await join(engine, "bob", "general")
        drain(bob)
        idle = engine.registry.register()

        await engine.router.disconnect(idle.id)

        assert drain(bob) == []
        assert engine.registry.find(idle.id) is None

    async def test_unknown_connection_is_noop(self, engine) -> None:
        await engine.router.disconnect("does-not-exist")

    async def test_disconnect_leaves_room(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "general")
        drain(bob)

        await engine.router.disconnect(alice.id)

        assert engine.membership.members_of("general") == {bob.id}
        assert engine.membership.room_of(alice.id) is None
        assert drain(bob) == [UserOffline(username="alice")]

    async def test_offline_only_after_last_connection(self, engine) -> None:
        first = await join(engine, "alice", "general")
        second = await join(engine, "alice", "random")
        bob = await join(engine, "bob", "general")
        drain(bob)

        await engine.router.disconnect(first.id)
        assert drain(bob) == []
        assert (await engine.users.get("alice")).online is True

        await engine.router.disconnect(second.id)
        assert drain(bob) == [UserOffline(username="alice")]
        assert (await engine.users.get("alice")).online is False

    async def test_user_offline_reaches_other_rooms(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        bob = await join(engine, "bob", "random")
        drain(bob)

        await engine.router.disconnect(alice.id)

        assert drain(bob) == [UserOffline(username="alice")]

    async def test_slow_consumer_is_disconnected(self, rooms, users) -> None:
        config = ChatConfig(outbox_size=2)
        async with ChatEngine(config, rooms=rooms, users=users) as eng:
            alice = await join(eng, "alice", "general")
            drain(alice)
            # The join events alone fill the slow connection's outbox.
            slow = await join(eng, "bob", "general")
            drain(alice)

            received = []
            for i in range(MESSAGE_COUNT):
                await send(eng, alice, f"msg-{i}")
                received.extend(drain(alice))

            assert eng.registry.find(slow.id) is None
            assert eng.membership.members_of("general") == {alice.id}
            assert len(only(received, NewMessage)) == MESSAGE_COUNT
            assert only(received, UserOffline) == [UserOffline(username="bob")]

    async def test_slow_consumer_disconnected_after_typing_expiry(
        self, config, rooms, users
    ) -> None:
        config = dataclasses.replace(config, outbox_size=2)
        async with ChatEngine(config, rooms=rooms, users=users) as eng:
            slow = await join(eng, "alice", "general")
            drain(slow)
            bob = await join(eng, "bob", "general")
            drain(bob)
            # userJoined(bob) and typing(bob) leave the slow outbox full.
            await eng.router.dispatch(
                bob.id, "typing", {"roomId": "general", "username": "bob"}
            )

            await anyio.sleep(EXPIRY_WAIT)

            assert eng.registry.find(slow.id) is None
            assert eng.membership.members_of("general") == {bob.id}
            assert drain(bob) == [
                TypingStopped(room_id="general", username="bob"),
                UserOffline(username="alice"),
            ]


class TestDispatch:
    async def test_unknown_event_kind_reported(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        drain(alice)

        await engine.router.dispatch(alice.id, "editMessage", {})

        [error] = drain(alice)
        assert isinstance(error, ErrorEvent)
        assert error.code == "validation"
        assert error.event == "editMessage"

    async def test_malformed_frame_reported(self, engine) -> None:
        alice = await join(engine, "alice", "general")
        drain(alice)

        await engine.router.dispatch_frame(alice.id, "not json")

        [error] = drain(alice)
        assert isinstance(error, ErrorEvent)
        assert error.event is None

    async def test_frame_dispatch(self, engine) -> None:
        connection = engine.registry.register()

        await engine.router.dispatch_frame(
            connection.id,
            '{"event": "joinRoom", "data": {"username": "alice", "roomId": "general"}}',
        )

        assert engine.membership.room_of(connection.id) == "general"

    async def test_kinds(self, engine) -> None:
        assert engine.router.kinds == {
            "joinRoom",
            "sendMessage",
            "typing",
            "stopTyping",
            "messageSeen",
        }
