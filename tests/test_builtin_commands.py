"""Tests for bridge/commands/builtin.py - the built-in handlers."""

from __future__ import annotations

import random
from datetime import date, datetime, timedelta, timezone

import pytest

from royalnet_matrix.bridge.commands import builtin
from royalnet_matrix.bridge.commands.builtin import (
    ANSWERS,
    FORTUNES,
    build_default_registry,
    format_command_line,
    format_due_at,
    fortune_for,
)
from royalnet_matrix.bridge.commands.grammar import DEFAULT_GRAMMAR
from royalnet_matrix.bridge.commands.reminder_args import ReminderArgs
from royalnet_matrix.bridge.commands.types import (
    Answer,
    Echo,
    Fortune,
    Help,
    Reminder,
    Start,
    WhoAmI,
)
from royalnet_matrix.errors import CommandError, CommandNotFound
from matrix_fixtures import (
    MATRIX_EVENT_ID,
    MATRIX_ROOM_ID,
    MATRIX_SENDER,
    FakeReplySink,
    make_message,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeAccounts:
    def __init__(self, accounts: dict[str, str] | None = None) -> None:
        self.accounts = accounts or {}

    async def get_account(self, user_id: str) -> str | None:
        return self.accounts.get(user_id)


class FakeReminders:
    def __init__(self) -> None:
        self.added: list[dict] = []

    async def add_reminder(self, **kwargs) -> None:
        self.added.append(kwargs)


def test_format_command_line() -> None:
    assert format_command_line("echo", "Ripeti.") == "/echo — Ripeti."


def test_fortune_is_stable_for_sender_and_day() -> None:
    day = date(2024, 5, 1)
    assert fortune_for(MATRIX_SENDER, day) == fortune_for(MATRIX_SENDER, day)
    assert fortune_for(MATRIX_SENDER, day) in FORTUNES


def test_fortune_varies_across_days() -> None:
    start = date(2024, 1, 1)
    fortunes = {fortune_for(MATRIX_SENDER, start + timedelta(days=n)) for n in range(60)}
    assert len(fortunes) > 1


def test_format_due_at_includes_zone() -> None:
    assert format_due_at(NOW) == "01/05/2024 12:00 (UTC)"


def test_format_due_at_naive() -> None:
    assert format_due_at(datetime(2024, 5, 1, 8, 30)) == "01/05/2024 08:30"


@pytest.mark.anyio
async def test_start_sends_configured_text() -> None:
    sink = FakeReplySink()
    await builtin.handle_start(sink, make_message("/start"), Start(), text="Ciao!")
    assert sink.sent == [("Ciao!", MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_help_without_target_lists_commands() -> None:
    sink = FakeReplySink()
    await builtin.handle_help(sink, make_message("/help"), Help(), grammar=DEFAULT_GRAMMAR)
    (text, _), = sink.sent
    assert text.splitlines()[0] == "/start — Invia messaggio di introduzione."
    assert len(text.splitlines()) == len(DEFAULT_GRAMMAR)


@pytest.mark.anyio
async def test_help_with_target_describes_one_command() -> None:
    sink = FakeReplySink()
    await builtin.handle_help(
        sink, make_message("/help /echo"), Help(" /echo "), grammar=DEFAULT_GRAMMAR
    )
    assert sink.sent == [("/echo — Ripeti il testo inviato.", MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_help_unknown_target_raises() -> None:
    sink = FakeReplySink()
    with pytest.raises(CommandNotFound):
        await builtin.handle_help(
            sink, make_message("/help nope"), Help("nope"), grammar=DEFAULT_GRAMMAR
        )
    assert sink.attempts == []


@pytest.mark.anyio
async def test_fortune_uses_sender_and_clock() -> None:
    sink = FakeReplySink()
    await builtin.handle_fortune(
        sink, make_message("/fortune"), Fortune(), clock=lambda: NOW
    )
    assert sink.sent == [(fortune_for(MATRIX_SENDER, NOW.date()), MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_echo_repeats_text() -> None:
    sink = FakeReplySink()
    await builtin.handle_echo(sink, make_message("/echo ciao"), Echo("ciao"))
    assert sink.sent == [("ciao", MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_echo_without_text_raises() -> None:
    with pytest.raises(CommandError, match="Non hai scritto niente"):
        await builtin.handle_echo(FakeReplySink(), make_message("/echo"), Echo("  "))


@pytest.mark.anyio
async def test_whoami_linked_account() -> None:
    sink = FakeReplySink()
    accounts = FakeAccounts({MATRIX_SENDER: "steffo"})
    await builtin.handle_whoami(
        sink, make_message("/whoami"), WhoAmI(), accounts=accounts
    )
    (text, _), = sink.sent
    assert text.startswith("👤 ")
    assert "steffo" in text


@pytest.mark.anyio
async def test_whoami_unlinked_account_raises() -> None:
    with pytest.raises(CommandError, match="non è associato"):
        await builtin.handle_whoami(
            FakeReplySink(), make_message("/whoami"), WhoAmI(), accounts=FakeAccounts()
        )


@pytest.mark.anyio
async def test_answer_picks_from_answers() -> None:
    sink = FakeReplySink()
    await builtin.handle_answer(
        sink, make_message("/answer ok?"), Answer("ok?"), rng=random.Random(42)
    )
    (text, _), = sink.sent
    assert text in ANSWERS


@pytest.mark.anyio
async def test_reminder_is_scheduled() -> None:
    sink = FakeReplySink()
    reminders = FakeReminders()
    command = Reminder(ReminderArgs(text="buy milk", delay=timedelta(minutes=10)))
    await builtin.handle_reminder(
        sink,
        make_message("/reminder +10m buy milk"),
        command,
        reminders=reminders,
        clock=lambda: NOW,
    )
    assert reminders.added == [
        {
            "room_id": MATRIX_ROOM_ID,
            "event_id": MATRIX_EVENT_ID,
            "sender": MATRIX_SENDER,
            "text": "buy milk",
            "due_at": NOW + timedelta(minutes=10),
        }
    ]
    assert sink.sent == [
        ("⏰ Promemoria impostato per 01/05/2024 12:10 (UTC).", MATRIX_EVENT_ID)
    ]


@pytest.mark.anyio
async def test_reminder_in_the_past_raises() -> None:
    reminders = FakeReminders()
    past = datetime(2020, 1, 1, tzinfo=timezone.utc)
    command = Reminder(ReminderArgs(text="too late", at=past))
    with pytest.raises(CommandError, match="passato"):
        await builtin.handle_reminder(
            FakeReplySink(),
            make_message("/reminder 2020-01-01T00:00+00:00 too late"),
            command,
            reminders=reminders,
            clock=lambda: NOW,
        )
    assert reminders.added == []


def test_default_registry_covers_grammar() -> None:
    registry = build_default_registry(
        accounts=FakeAccounts(), reminders=FakeReminders(), start_text="Ciao!"
    )
    assert len(registry) == len(DEFAULT_GRAMMAR)
    for variant in DEFAULT_GRAMMAR.variants():
        assert variant in registry
