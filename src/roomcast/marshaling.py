"""Wire envelope marshaling.

Every frame on a connection is a JSON object of the form
``{"event": "<kind>", "data": {...}}``.
"""

import json
from typing import Any

from roomcast.errors import ValidationError
from roomcast.models import Event

EVENT_KEY = "event"
DATA_KEY = "data"


def encode(event: Event) -> dict[str, Any]:
    """Convert an outbound event to its JSON-ready envelope."""
    return {
        EVENT_KEY: event.kind,
        DATA_KEY: event.model_dump(mode="json", by_alias=True),
    }


def decode(frame: Any) -> tuple[str, dict[str, Any]]:
    """Split an inbound envelope into its event kind and payload.

    Accepts either the raw text of a frame or an already parsed object.
    """
    if isinstance(frame, str | bytes):
        try:
            frame = json.loads(frame)
        except json.JSONDecodeError as e:
            msg = f"Frame is not valid JSON: {e}"
            raise ValidationError(msg) from e

    if not isinstance(frame, dict):
        msg = "Frame must be a JSON object"
        raise ValidationError(msg)

    kind = frame.get(EVENT_KEY)
    if not isinstance(kind, str) or not kind:
        msg = f"Frame is missing the '{EVENT_KEY}' field"
        raise ValidationError(msg)

    data = frame.get(DATA_KEY) or {}
    if not isinstance(data, dict):
        msg = f"'{DATA_KEY}' of a {kind} frame must be an object"
        raise ValidationError(msg)

    return kind, data
