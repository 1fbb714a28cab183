"""Configuration dataclass for the chat engine."""

from dataclasses import dataclass


@dataclass
class ChatConfig:
    """Configuration for a ChatEngine."""

    typing_timeout: float = 1.5
    """Seconds a typing indicator lives after the last typing signal."""

    outbox_size: int = 100
    """Maximum outbound events buffered per connection."""

    history_limit: int = 50
    """Messages replayed to a connection when it joins a room."""

    drop_slow_consumers: bool = True
    """Disconnect a connection whose outbox is full instead of skipping it."""
