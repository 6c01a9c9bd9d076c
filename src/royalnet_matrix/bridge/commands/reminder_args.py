"""Argument grammar of the /reminder command.

    /reminder <when> <text>

``<when>`` is a relative offset such as ``+10m`` or ``+1h30m`` (units s, m,
h, d, w) or an absolute ISO timestamp such as ``2024-12-24T20:00``. Naive
timestamps are read in the local timezone. Everything after ``<when>`` is the
reminder text, newlines included.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from ...errors import ArgumentParseError

USAGE = "Uso: /reminder <+10m | AAAA-MM-GGTHH:MM> <testo>"
TOO_FAR = "L'intervallo è troppo grande."

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}
_OFFSET_RE = re.compile(r"\+((?:\d+[smhdw])+)")
_OFFSET_PART_RE = re.compile(r"(\d+)([smhdw])")


@dataclass(frozen=True, slots=True)
class ReminderArgs:
    text: str
    delay: timedelta | None = None
    at: datetime | None = None

    def __post_init__(self) -> None:
        if (self.delay is None) == (self.at is None):
            raise ValueError("a reminder needs exactly one of delay or at")

    def resolve(self, now: datetime) -> datetime:
        """Absolute due time, relative to ``now`` for offsets.

        Raises:
            OverflowError: the due time is past the end of the calendar.
        """
        if self.delay is not None:
            return now + self.delay
        if self.at is None:
            raise ValueError("a reminder needs exactly one of delay or at")
        if self.at.tzinfo is None:
            return self.at.astimezone()
        return self.at


def parse_offset(value: str) -> timedelta | None:
    """Relative offset such as ``+1h30m``, None if ``value`` is not one.

    Raises:
        ArgumentParseError: the offset does not fit in a ``timedelta``.
    """
    match = _OFFSET_RE.fullmatch(value)
    if match is None:
        return None
    try:
        seconds = sum(
            int(amount) * _UNIT_SECONDS[unit]
            for amount, unit in _OFFSET_PART_RE.findall(match.group(1))
        )
        return timedelta(seconds=seconds)
    except (OverflowError, ValueError) as exc:
        raise ArgumentParseError(TOO_FAR) from exc


def parse_timestamp(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_reminder_args(args_text: str) -> ReminderArgs:
    """Parse the text following ``/reminder``.

    Raises:
        ArgumentParseError: missing time or text, or an unreadable time.
    """
    stripped = args_text.lstrip()
    if not stripped:
        raise ArgumentParseError(f"Specifica quando e cosa ricordare. {USAGE}")
    parts = stripped.split(maxsplit=1)
    when = parts[0]
    text = parts[1].strip() if len(parts) > 1 else ""

    delay = parse_offset(when)
    at = None if delay is not None else parse_timestamp(when)
    if delay is None and at is None:
        raise ArgumentParseError(f"Non ho capito quando: {when!r}. {USAGE}")
    if delay is not None and delay <= timedelta(0):
        raise ArgumentParseError("L'intervallo deve essere maggiore di zero.")
    if not text:
        raise ArgumentParseError(f"Specifica cosa ricordare. {USAGE}")
    return ReminderArgs(text=text, delay=delay, at=at)
