"""Tests for bridge/commands/dispatch.py - the dispatch cycle."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone

import anyio
import pytest
from structlog.testing import capture_logs

from royalnet_matrix.bridge.commands.builtin import build_default_registry
from royalnet_matrix.bridge.commands.dispatch import CommandDispatcher, ReplyTexts
from royalnet_matrix.bridge.commands.grammar import (
    DEFAULT_GRAMMAR,
    CommandGrammar,
    CommandSpec,
)
from royalnet_matrix.bridge.commands.registry import HandlerRegistry
from royalnet_matrix.errors import CommandError, ConfigError
from matrix_fixtures import (
    MATRIX_EVENT_ID,
    MATRIX_ROOM_ID,
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


def _registry() -> HandlerRegistry:
    return build_default_registry(
        accounts=FakeAccounts(),
        reminders=FakeReminders(),
        start_text="Ciao!",
        clock=lambda: NOW,
        rng=random.Random(0),
    )


def _dispatcher(
    sink: FakeReplySink,
    registry: HandlerRegistry | None = None,
    texts: ReplyTexts | None = None,
) -> CommandDispatcher:
    return CommandDispatcher(
        registry or _registry(),
        sink_factory=lambda msg: sink,
        bot_names=("royalbot",),
        texts=texts,
    )


def _registry_with(**overrides) -> HandlerRegistry:
    """Registry of no-op handlers, except the given variant-name overrides."""
    registry = HandlerRegistry()
    for variant in DEFAULT_GRAMMAR.variants():
        registry.register(variant, overrides.get(variant.__name__, _noop))
    return registry


async def _noop(sink, message, command) -> None:
    return None


def _failing_registry(error: Exception) -> HandlerRegistry:
    async def failing(sink, message, command) -> None:
        raise error

    return _registry_with(WhoAmI=failing)


# --- End-to-end scenarios ---


@pytest.mark.anyio
async def test_echo_replies_with_text() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/echo hello world"))
    assert sink.sent == [("hello world", MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_help_lists_all_commands() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/help"))
    assert len(sink.sent) == 1
    text, reply_to = sink.sent[0]
    assert reply_to == MATRIX_EVENT_ID
    lines = text.splitlines()
    assert [line.split(" ", 1)[0] for line in lines] == [
        f"/{spec.name}" for spec in DEFAULT_GRAMMAR.list_commands()
    ]


@pytest.mark.anyio
async def test_help_unknown_target_replies_error() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/help nonexistent"))
    assert sink.sent == [("⚠️ comando non trovato", MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_unknown_command_replies_notice() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/bogus"))
    assert sink.sent == [("⚠️ Comando sconosciuto.", MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_error_reply_failure_is_logged_once_and_swallowed() -> None:
    sink = FakeReplySink(fail=True)
    dispatcher = _dispatcher(sink, _failing_registry(CommandError("database offline")))

    with capture_logs() as logs:
        await dispatcher.dispatch(make_message("/whoami"))

    assert sink.attempts == [("⚠️ database offline", MATRIX_EVENT_ID)]
    compound = [log for log in logs if log["event"] == "command.error_reply_failed"]
    assert len(compound) == 1
    record = compound[0]
    assert record["log_level"] == "error"
    assert record["room_id"] == MATRIX_ROOM_ID
    assert record["event_id"] == MATRIX_EVENT_ID
    assert record["error"] == "database offline"
    assert record["error_type"] == "CommandError"
    assert record["reply_error"] == "homeserver unreachable"
    assert record["reply_error_type"] == "ReplyError"


# --- Error pipeline details ---


@pytest.mark.anyio
async def test_domain_error_is_threaded_to_message() -> None:
    sink = FakeReplySink()
    dispatcher = _dispatcher(sink, _failing_registry(CommandError("no")))
    with capture_logs() as logs:
        await dispatcher.dispatch(make_message("/whoami", event_id="$abc"))
    assert sink.sent == [("⚠️ no", "$abc")]
    assert not [log for log in logs if log["event"] == "command.failed"]


@pytest.mark.anyio
async def test_unexpected_exception_is_reported_and_logged() -> None:
    sink = FakeReplySink()
    dispatcher = _dispatcher(sink, _failing_registry(RuntimeError("boom")))
    with capture_logs() as logs:
        await dispatcher.dispatch(make_message("/whoami"))
    assert sink.sent == [("⚠️ boom", MATRIX_EVENT_ID)]
    failed = [log for log in logs if log["event"] == "command.failed"]
    assert len(failed) == 1
    assert failed[0]["error_type"] == "RuntimeError"


@pytest.mark.anyio
async def test_argument_error_uses_error_reply_path() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/reminder whenever do it"))
    assert len(sink.sent) == 1
    text, reply_to = sink.sent[0]
    assert text.startswith("⚠️ Non ho capito quando: 'whenever'.")
    assert reply_to == MATRIX_EVENT_ID


@pytest.mark.anyio
async def test_oversized_reminder_offset_replies_error() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/reminder +99999999999w ciao"))
    assert sink.sent == [("⚠️ L'intervallo è troppo grande.", MATRIX_EVENT_ID)]


@pytest.mark.anyio
async def test_reminder_past_the_calendar_replies_error() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/reminder +100000000d ciao"))
    assert sink.sent == [("⚠️ La data specificata è troppo lontana.", MATRIX_EVENT_ID)]


@dataclass(frozen=True, slots=True)
class Explode:
    args: object


def _explode(args_text: str) -> object:
    raise RuntimeError("parser exploded")


@pytest.mark.anyio
async def test_parser_crash_is_reported_and_logged() -> None:
    grammar = CommandGrammar(
        [
            CommandSpec(
                name="explode",
                description="Esplodi.",
                variant=Explode,
                argument="structured",
                parse_args=_explode,
            )
        ]
    )
    registry = HandlerRegistry()
    registry.register(Explode, _noop)
    sink = FakeReplySink()
    dispatcher = CommandDispatcher(
        registry, sink_factory=lambda msg: sink, grammar=grammar
    )

    with capture_logs() as logs:
        await dispatcher.dispatch(make_message("/explode now"))

    assert sink.sent == [("⚠️ parser exploded", MATRIX_EVENT_ID)]
    failed = [log for log in logs if log["event"] == "command.parse_failed"]
    assert len(failed) == 1
    assert failed[0]["error_type"] == "RuntimeError"
    assert failed[0]["room_id"] == MATRIX_ROOM_ID



@pytest.mark.anyio
async def test_unknown_reply_failure_is_swallowed() -> None:
    sink = FakeReplySink(fail=True)
    with capture_logs() as logs:
        await _dispatcher(sink).dispatch(make_message("/bogus"))
    assert len(sink.attempts) == 1
    failed = [log for log in logs if log["event"] == "command.unknown_reply_failed"]
    assert len(failed) == 1
    assert failed[0]["event_id"] == MATRIX_EVENT_ID


@pytest.mark.anyio
async def test_success_sends_nothing_else() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/fortune"))
    assert len(sink.sent) == 1
    assert not sink.sent[0][0].startswith("⚠️")


@pytest.mark.anyio
async def test_handler_may_succeed_without_replying() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink, _registry_with()).dispatch(make_message("/echo hi"))
    assert sink.attempts == []


@pytest.mark.anyio
async def test_custom_reply_texts() -> None:
    sink = FakeReplySink()
    texts = ReplyTexts(unknown_command="Unknown command.", error_prefix="[!] ")
    dispatcher = _dispatcher(sink, texts=texts)
    await dispatcher.dispatch(make_message("/bogus", event_id="$1"))
    await dispatcher.dispatch(make_message("/help nope", event_id="$2"))
    assert sink.sent == [
        ("Unknown command.", "$1"),
        ("[!] comando non trovato", "$2"),
    ]


@pytest.mark.anyio
async def test_command_for_other_bot_is_unrecognized() -> None:
    sink = FakeReplySink()
    await _dispatcher(sink).dispatch(make_message("/echo@otherbot hi"))
    assert sink.sent == [("⚠️ Comando sconosciuto.", MATRIX_EVENT_ID)]


def test_incomplete_registry_rejected() -> None:
    with pytest.raises(ConfigError):
        CommandDispatcher(HandlerRegistry(), sink_factory=lambda msg: FakeReplySink())


# --- Concurrency ---


@pytest.mark.anyio
async def test_slow_handler_does_not_block_other_cycles() -> None:
    released = anyio.Event()
    sinks: dict[str, FakeReplySink] = {}

    async def slow(sink, message, command) -> None:
        await released.wait()
        await sink.send("slow done")

    async def fast(sink, message, command) -> None:
        await sink.send(command.text)
        released.set()

    registry = _registry_with(WhoAmI=slow, Echo=fast)

    def sink_factory(msg):
        return sinks.setdefault(msg.event_id, FakeReplySink(event_id=msg.event_id))

    dispatcher = CommandDispatcher(registry, sink_factory=sink_factory)
    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(dispatcher.dispatch, make_message("/whoami", event_id="$slow"))
            tg.start_soon(dispatcher.dispatch, make_message("/echo fast", event_id="$fast"))

    assert sinks["$fast"].sent == [("fast", "$fast")]
    assert sinks["$slow"].sent == [("slow done", "$slow")]

