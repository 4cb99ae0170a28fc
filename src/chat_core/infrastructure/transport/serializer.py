from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        if isinstance(o, (set, frozenset, tuple)):
            return list(o)
        return super().default(o)


def dumps(payload: Any) -> str:
    return json.dumps(payload, cls=_Encoder)


def serialize_frame(event: str, data: Any) -> str:
    return dumps({"event": event, "data": data})


def deserialize_frame(raw: str | bytes) -> tuple[str, Any]:
    """Split a ``{"event": name, "data": ...}`` frame. Raises ValueError if malformed."""
    frame = json.loads(raw)
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise ValueError("frame has no event name")
    return frame["event"], frame.get("data") or {}
