"""Scheduled reminders: persistence and delivery."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import anyio

from .logging import get_logger
from .state_store import JsonStateStore

if TYPE_CHECKING:
    from .client import MatrixClient

logger = get_logger(__name__)

STATE_VERSION = 1
STATE_FILENAME = "royalnet_reminders.json"

REMINDER_PREFIX = "🕒 "


@dataclass(frozen=True, slots=True)
class Reminder:
    reminder_id: str
    room_id: str
    event_id: str
    sender: str
    text: str
    due_at: datetime


@dataclass
class _RemindersState:
    version: int
    reminders: list[dict[str, Any]] = field(default_factory=list)


def resolve_reminders_path(state_dir: Path) -> Path:
    return state_dir / STATE_FILENAME


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_state() -> _RemindersState:
    return _RemindersState(version=STATE_VERSION, reminders=[])


def _encode(reminder: Reminder) -> dict[str, Any]:
    return {
        "id": reminder.reminder_id,
        "room_id": reminder.room_id,
        "event_id": reminder.event_id,
        "sender": reminder.sender,
        "text": reminder.text,
        "due_at": reminder.due_at.astimezone(timezone.utc).isoformat(),
    }


def _decode(entry: dict[str, Any]) -> Reminder | None:
    try:
        return Reminder(
            reminder_id=str(entry["id"]),
            room_id=str(entry["room_id"]),
            event_id=str(entry["event_id"]),
            sender=str(entry["sender"]),
            text=str(entry["text"]),
            due_at=datetime.fromisoformat(entry["due_at"]),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("royalnet.reminders.invalid_entry", entry=entry)
        return None


class ReminderStore(JsonStateStore[_RemindersState]):
    """Pending reminders, ordered by due time."""

    def __init__(self, path: Path) -> None:
        super().__init__(
            path,
            version=STATE_VERSION,
            state_type=_RemindersState,
            state_factory=_new_state,
            log_prefix="royalnet.reminders",
        )

    async def add_reminder(
        self,
        *,
        room_id: str,
        event_id: str,
        sender: str,
        text: str,
        due_at: datetime,
    ) -> Reminder:
        reminder = Reminder(
            reminder_id=uuid.uuid4().hex,
            room_id=room_id,
            event_id=event_id,
            sender=sender,
            text=text,
            due_at=due_at.astimezone(timezone.utc),
        )
        async with self._lock:
            self._reload_locked_if_needed()
            self._state.reminders.append(_encode(reminder))
            self._save_locked()
        return reminder

    async def list_reminders(self) -> list[Reminder]:
        async with self._lock:
            self._reload_locked_if_needed()
            decoded = [_decode(entry) for entry in self._state.reminders]
        return sorted(
            (reminder for reminder in decoded if reminder is not None),
            key=lambda reminder: reminder.due_at,
        )

    async def pop_due(self, now: datetime) -> list[Reminder]:
        """Remove and return the reminders due at ``now``."""
        due: list[Reminder] = []
        keep: list[dict[str, Any]] = []
        async with self._lock:
            self._reload_locked_if_needed()
            for entry in self._state.reminders:
                reminder = _decode(entry)
                if reminder is None:
                    continue
                if reminder.due_at <= now:
                    due.append(reminder)
                else:
                    keep.append(entry)
            if len(keep) != len(self._state.reminders):
                self._state.reminders = keep
                self._save_locked()
        return sorted(due, key=lambda reminder: reminder.due_at)


async def deliver_due_reminders(
    store: ReminderStore,
    client: MatrixClient,
    *,
    now: datetime,
) -> int:
    """Send every due reminder threaded to the message that created it.

    Returns the number of reminders delivered. Failed deliveries are logged
    and dropped.
    """
    delivered = 0
    for reminder in await store.pop_due(now):
        sent = await client.send_message(
            reminder.room_id,
            f"{REMINDER_PREFIX}{reminder.text}",
            reply_to_event_id=reminder.event_id,
        )
        if sent is None:
            logger.error(
                "royalnet.reminders.delivery_failed",
                reminder_id=reminder.reminder_id,
                room_id=reminder.room_id,
                event_id=reminder.event_id,
            )
            continue
        delivered += 1
        logger.info(
            "royalnet.reminders.delivered",
            reminder_id=reminder.reminder_id,
            room_id=reminder.room_id,
        )
    return delivered


async def run_reminder_loop(
    store: ReminderStore,
    client: MatrixClient,
    *,
    poll_interval: float,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> None:
    while True:
        try:
            await deliver_due_reminders(store, client, now=clock())
        except Exception as exc:
            logger.error(
                "royalnet.reminders.loop_error",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
        await sleep(poll_interval)
