"""OpenTelemetry instruments for the chat engine."""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import MeterProvider

METER_NAME = "roomcast"


class ChatMetrics:
    """Counters and histograms recorded by the event router.

    Tracks:
    - chat.events.received: Inbound events by kind
    - chat.events.dropped: Inbound events dropped, by kind and reason
    - chat.messages.sent: Messages persisted and broadcast
    - chat.broadcast.deliveries: Outbound events queued on connections
    - chat.typing.expired: Typing indicators cleared by their deadline
    - chat.dispatch.duration: Time spent handling one inbound event

    Example:
        metrics = ChatMetrics(meter_provider=provider)
        engine = ChatEngine(metrics=metrics)
    """

    def __init__(self, meter_provider: MeterProvider | None = None) -> None:
        provider = meter_provider or metrics.get_meter_provider()
        meter = provider.get_meter(METER_NAME)

        self._received = meter.create_counter(
            "chat.events.received",
            unit="{event}",
            description="Number of inbound events received from connections",
        )
        self._dropped = meter.create_counter(
            "chat.events.dropped",
            unit="{event}",
            description="Number of inbound events dropped without broadcast",
        )
        self._messages_sent = meter.create_counter(
            "chat.messages.sent",
            unit="{message}",
            description="Number of messages persisted and broadcast",
        )
        self._deliveries = meter.create_counter(
            "chat.broadcast.deliveries",
            unit="{event}",
            description="Number of outbound events queued on connections",
        )
        self._typing_expired = meter.create_counter(
            "chat.typing.expired",
            unit="{indicator}",
            description="Number of typing indicators cleared by expiry",
        )
        self._dispatch_duration = meter.create_histogram(
            "chat.dispatch.duration",
            unit="s",
            description="Duration of handling one inbound event",
        )

    def event_received(self, kind: str) -> None:
        self._received.add(1, {"chat.event": kind})

    def event_dropped(self, kind: str, reason: str) -> None:
        self._dropped.add(1, {"chat.event": kind, "chat.drop.reason": reason})

    def message_sent(self) -> None:
        self._messages_sent.add(1)

    def delivered(self, kind: str, count: int) -> None:
        if count:
            self._deliveries.add(count, {"chat.event": kind})

    def typing_expired(self) -> None:
        self._typing_expired.add(1)

    @contextmanager
    def dispatch_timer(self, kind: str) -> Iterator[None]:
        attributes: dict[str, Any] = {"chat.event": kind}
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            attributes["error.type"] = type(e).__name__
            raise
        finally:
            self._dispatch_duration.record(time.perf_counter() - start, attributes)
