"""Matrix message types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class MatrixIncomingMessage:
    """A text message received in one of the bot's rooms."""

    room_id: str
    event_id: str
    sender: str
    text: str
    reply_to_event_id: str | None = None
    formatted_body: str | None = None
    raw: dict[str, Any] | None = None
