"""Bridge configuration classes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..client import MatrixClient
    from ..reminders import ReminderStore
    from .commands import CommandGrammar, HandlerRegistry, ReplyTexts


@dataclass(frozen=True)
class MatrixBridgeConfig:
    """Everything the runtime needs to serve the configured rooms."""

    client: MatrixClient
    registry: HandlerRegistry
    grammar: CommandGrammar
    texts: ReplyTexts
    room_ids: list[str]
    user_allowlist: set[str] | None = None
    reminders: ReminderStore | None = None
    reminder_poll_interval: float = 15.0
