"""Receipt tracker - seen acknowledgements per room."""

import logging

from roomcast.errors import ChatError, PersistenceError
from roomcast.stores import MessageStore

logger = logging.getLogger(__name__)


class ReceiptTracker:
    """Appends users to the seen set of a room's messages."""

    def __init__(self, messages: MessageStore) -> None:
        self._messages = messages

    async def mark_seen(self, room_id: str, user_id: str) -> int:
        """Mark every message in a room as seen by a user.

        Messages already seen by the user are left alone, so repeating the
        call is a no-op. Returns the number of messages that changed.
        """
        try:
            messages = await self._messages.find_by_room(room_id)
            changed = 0
            for message in messages:
                if user_id in message.seen_by:
                    continue
                if await self._messages.append_seen(message.id, user_id):
                    changed += 1
        except ChatError:
            raise
        except Exception as e:
            logger.warning("Failed to mark %s seen in %s: %s", user_id, room_id, e)
            raise PersistenceError(e) from e

        logger.debug("%s saw %d new messages in %s", user_id, changed, room_id)
        return changed
