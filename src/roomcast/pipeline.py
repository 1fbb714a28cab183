"""Message pipeline - validate, persist and stamp new messages."""

import logging

from roomcast.errors import ChatError, NotFoundError, PersistenceError, ValidationError
from roomcast.models import ChatMessage, UserRef
from roomcast.stores import MessageStore, UserDirectory

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


class MessagePipeline:
    """Turns accepted `send` calls into persisted, delivered messages.

    Delivery is synchronous with persistence: a message is stored with
    `delivered=True` and broadcast right after, so there is no pending
    undelivered state on the server.
    """

    def __init__(self, messages: MessageStore, users: UserDirectory) -> None:
        self._messages = messages
        self._users = users

    async def send(
        self,
        room_id: str,
        sender_id: str,
        content: str,
    ) -> tuple[ChatMessage, UserRef]:
        """Persist a message and return it with its sender's display identity.

        Raises:
            ValidationError: Content is empty or whitespace only.
            NotFoundError: The sender is unknown.
            PersistenceError: The message store failed; nothing was stored.
        """
        if not content or not content.strip():
            msg = "Message content must not be empty"
            raise ValidationError(msg)

        try:
            sender = await self._users.get(sender_id)
        except ChatError:
            raise
        except Exception as e:
            raise PersistenceError(e) from e
        if sender is None:
            msg = f"Unknown sender {sender_id}"
            raise NotFoundError(msg)

        message = ChatMessage(
            room_id=room_id,
            sender_id=sender.id,
            content=content,
            delivered=True,
        )
        try:
            stored = await self._messages.create(message)
        except ChatError:
            raise
        except Exception as e:
            logger.warning("Failed to persist message in %s: %s", room_id, e)
            raise PersistenceError(e) from e

        logger.debug("Stored message %s in %s", stored.id, room_id)
        return stored, UserRef(id=sender.id, username=sender.username)

    async def history(
        self,
        room_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[ChatMessage]:
        """Most recent messages of a room, oldest first."""
        try:
            messages = await self._messages.find_by_room(room_id)
        except ChatError:
            raise
        except Exception as e:
            raise PersistenceError(e) from e
        if limit <= 0:
            return []
        return list(messages)[-limit:]
