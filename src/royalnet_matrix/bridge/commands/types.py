"""Parsed command values.

Each command of the grammar has one frozen variant class here. Parsing a
message produces exactly one ``ParseOutcome``: a command variant, an
``Unrecognized`` marker, or an ``ArgumentError`` for a recognized command
whose arguments were malformed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .reminder_args import ReminderArgs


@dataclass(frozen=True, slots=True)
class Start:
    pass


@dataclass(frozen=True, slots=True)
class Help:
    target: str = ""


@dataclass(frozen=True, slots=True)
class Fortune:
    pass


@dataclass(frozen=True, slots=True)
class Echo:
    text: str = ""


@dataclass(frozen=True, slots=True)
class WhoAmI:
    pass


@dataclass(frozen=True, slots=True)
class Answer:
    question: str = ""


@dataclass(frozen=True, slots=True)
class Reminder:
    args: ReminderArgs


Command = Union[Start, Help, Fortune, Echo, WhoAmI, Answer, Reminder]


@dataclass(frozen=True, slots=True)
class Unrecognized:
    text: str


@dataclass(frozen=True, slots=True)
class ArgumentError:
    command: str
    text: str
    message: str


ParseOutcome = Union[Command, Unrecognized, ArgumentError]
