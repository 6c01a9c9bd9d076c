"""Built-in command handlers."""

from __future__ import annotations

import hashlib
import random
from collections.abc import Callable
from datetime import date, datetime
from functools import partial
from typing import Protocol

from ...errors import CommandError, CommandNotFound
from ...logging import get_logger
from ...reminders import utc_now
from ...types import MatrixIncomingMessage
from .grammar import DEFAULT_GRAMMAR, CommandGrammar
from .registry import HandlerRegistry
from .reply import ReplySink
from .types import Answer, Echo, Fortune, Help, Reminder, Start, WhoAmI

logger = get_logger(__name__)

FORTUNES = (
    "😄 Oggi sarà una fantastica giornata!",
    "😌 Oggi sarà una giornata tranquilla.",
    "😐 Oggi sarà una giornata come tante altre.",
    "😕 Oggi sarà una giornata un po' storta.",
    "😴 Oggi avrai tanto sonno.",
    "🍀 Oggi la fortuna sarà dalla tua parte.",
    "🎮 Oggi vincerai tutte le partite che giocherai.",
    "💸 Oggi troverai una moneta per terra.",
    "🌧 Oggi è meglio portare l'ombrello.",
    "📚 Oggi imparerai qualcosa di nuovo.",
    "🍕 Oggi mangerai qualcosa di molto buono.",
    "🤝 Oggi ritroverai un vecchio amico.",
)

ANSWERS = (
    "🔵 Sì.",
    "🔵 Decisamente sì!",
    "🔵 Uhm, secondo me sì.",
    "🔵 Sì! Sì! SÌ!",
    "🔵 Sicuramente!",
    "🔴 No.",
    "🔴 Decisamente no!",
    "🔴 Uhm, secondo me no.",
    "🔴 No, no, e ancora NO!",
    "🔴 Assolutamente no.",
    "⚪ Boh.",
    "⚪ Non lo so.",
    "⚪ Chiedilo a qualcun altro.",
    "⚪ Forse.",
)


class AccountDirectory(Protocol):
    async def get_account(self, user_id: str) -> str | None: ...


class ReminderScheduler(Protocol):
    async def add_reminder(
        self,
        *,
        room_id: str,
        event_id: str,
        sender: str,
        text: str,
        due_at: datetime,
    ) -> object: ...


def format_command_line(name: str, description: str) -> str:
    return f"/{name} — {description}"


def fortune_for(sender: str, day: date) -> str:
    """Today's horoscope: the same for one sender for the whole day."""
    digest = hashlib.sha256(f"{sender}:{day.isoformat()}".encode()).digest()
    return FORTUNES[int.from_bytes(digest[:8], "big") % len(FORTUNES)]


def format_due_at(due_at: datetime) -> str:
    when = due_at.strftime("%d/%m/%Y %H:%M")
    tzname = due_at.tzname()
    return f"{when} ({tzname})" if tzname else when


async def handle_start(
    sink: ReplySink,
    message: MatrixIncomingMessage,
    command: Start,
    *,
    text: str,
) -> None:
    await sink.send(text)


async def handle_help(
    sink: ReplySink,
    message: MatrixIncomingMessage,
    command: Help,
    *,
    grammar: CommandGrammar,
) -> None:
    target = command.target.strip()
    if not target:
        lines = [
            format_command_line(spec.name, spec.description)
            for spec in grammar.list_commands()
        ]
        await sink.send("\n".join(lines))
        return
    spec = grammar.lookup(target)
    if spec is None:
        raise CommandNotFound(target)
    await sink.send(format_command_line(spec.name, spec.description))


async def handle_fortune(
    sink: ReplySink,
    message: MatrixIncomingMessage,
    command: Fortune,
    *,
    clock: Callable[[], datetime],
) -> None:
    await sink.send(fortune_for(message.sender, clock().date()))


async def handle_echo(
    sink: ReplySink,
    message: MatrixIncomingMessage,
    command: Echo,
) -> None:
    if not command.text.strip():
        raise CommandError("Non hai scritto niente da ripetere.")
    await sink.send(command.text)


async def handle_whoami(
    sink: ReplySink,
    message: MatrixIncomingMessage,
    command: WhoAmI,
    *,
    accounts: AccountDirectory,
) -> None:
    account = await accounts.get_account(message.sender)
    if account is None:
        raise CommandError(
            "Il tuo account Matrix non è associato a nessun account RYG."
        )
    await sink.send(
        f"👤 Il tuo account Matrix è associato all'account RYG {account}."
    )


async def handle_answer(
    sink: ReplySink,
    message: MatrixIncomingMessage,
    command: Answer,
    *,
    rng: random.Random,
) -> None:
    await sink.send(rng.choice(ANSWERS))


async def handle_reminder(
    sink: ReplySink,
    message: MatrixIncomingMessage,
    command: Reminder,
    *,
    reminders: ReminderScheduler,
    clock: Callable[[], datetime],
) -> None:
    now = clock()
    try:
        due_at = command.args.resolve(now)
    except OverflowError as exc:
        raise CommandError("La data specificata è troppo lontana.") from exc
    if due_at <= now:
        raise CommandError("La data specificata è nel passato.")
    await reminders.add_reminder(
        room_id=message.room_id,
        event_id=message.event_id,
        sender=message.sender,
        text=command.args.text,
        due_at=due_at,
    )
    logger.debug(
        "command.reminder.scheduled",
        room_id=message.room_id,
        event_id=message.event_id,
        due_at=due_at.isoformat(),
    )
    await sink.send(f"⏰ Promemoria impostato per {format_due_at(due_at)}.")


def build_default_registry(
    *,
    accounts: AccountDirectory,
    reminders: ReminderScheduler,
    start_text: str,
    grammar: CommandGrammar = DEFAULT_GRAMMAR,
    clock: Callable[[], datetime] = utc_now,
    rng: random.Random | None = None,
) -> HandlerRegistry:
    """Registry of the built-in handlers bound to their collaborators."""
    registry = HandlerRegistry()
    registry.register(Start, partial(handle_start, text=start_text))
    registry.register(Help, partial(handle_help, grammar=grammar))
    registry.register(Fortune, partial(handle_fortune, clock=clock))
    registry.register(Echo, handle_echo)
    registry.register(WhoAmI, partial(handle_whoami, accounts=accounts))
    registry.register(Answer, partial(handle_answer, rng=rng or random.Random()))
    registry.register(
        Reminder, partial(handle_reminder, reminders=reminders, clock=clock)
    )
    registry.ensure_complete(grammar)
    return registry
