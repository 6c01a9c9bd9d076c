"""Command dispatch: parse, run the handler, report failures."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from ...errors import CommandError
from ...logging import get_logger
from ...settings import DEFAULT_ERROR_PREFIX, DEFAULT_UNKNOWN_COMMAND
from ...types import MatrixIncomingMessage
from .grammar import DEFAULT_GRAMMAR, CommandGrammar
from .parse import parse_command
from .registry import HandlerRegistry
from .reply import ReplySink
from .types import ArgumentError, Command, Unrecognized

logger = get_logger(__name__)

SinkFactory = Callable[[MatrixIncomingMessage], ReplySink]


@dataclass(frozen=True, slots=True)
class ReplyTexts:
    unknown_command: str = DEFAULT_UNKNOWN_COMMAND
    error_prefix: str = DEFAULT_ERROR_PREFIX

    def format_error(self, error: Exception) -> str:
        return f"{self.error_prefix}{error}"


class CommandDispatcher:
    """Runs one dispatch cycle per inbound message.

    Every cycle ends normally: handler failures are reported to the room, and
    a failure to report them is logged once and dropped.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        *,
        sink_factory: SinkFactory,
        grammar: CommandGrammar = DEFAULT_GRAMMAR,
        bot_names: Iterable[str] = (),
        texts: ReplyTexts | None = None,
    ) -> None:
        registry.ensure_complete(grammar)
        self._registry = registry
        self._sink_factory = sink_factory
        self._grammar = grammar
        self._bot_names = tuple(bot_names)
        self._texts = texts or ReplyTexts()

    async def dispatch(self, msg: MatrixIncomingMessage) -> None:
        sink = self._sink_factory(msg)
        try:
            outcome = parse_command(
                msg.text, bot_names=self._bot_names, grammar=self._grammar
            )
        except Exception as exc:
            logger.exception(
                "command.parse_failed",
                room_id=msg.room_id,
                event_id=msg.event_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await self._reply_error(sink, msg, exc)
            return

        if isinstance(outcome, Unrecognized):
            await self._reply_unknown(sink, msg)
            return

        if isinstance(outcome, ArgumentError):
            logger.debug(
                "command.bad_arguments",
                command=outcome.command,
                room_id=msg.room_id,
                event_id=msg.event_id,
                error=outcome.message,
            )
            error: Exception | None = CommandError(outcome.message)
        else:
            error = await self._run_handler(outcome, sink, msg)

        if error is None:
            return
        await self._reply_error(sink, msg, error)

    async def _run_handler(
        self,
        command: Command,
        sink: ReplySink,
        msg: MatrixIncomingMessage,
    ) -> Exception | None:
        handler = self._registry.resolve(command)
        logger.debug(
            "command.received",
            command=type(command).__name__,
            room_id=msg.room_id,
            event_id=msg.event_id,
            sender=msg.sender,
        )
        try:
            await handler(sink, msg, command)
        except CommandError as exc:
            return exc
        except Exception as exc:
            logger.exception(
                "command.failed",
                command=type(command).__name__,
                room_id=msg.room_id,
                event_id=msg.event_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return exc
        return None

    async def _reply_error(
        self,
        sink: ReplySink,
        msg: MatrixIncomingMessage,
        error: Exception,
    ) -> None:
        logger.debug(
            "command.error",
            room_id=msg.room_id,
            event_id=msg.event_id,
            error=str(error),
        )
        try:
            await sink.send(self._texts.format_error(error), reply_to=msg.event_id)
        except Exception as reply_exc:
            logger.error(
                "command.error_reply_failed",
                room_id=msg.room_id,
                event_id=msg.event_id,
                error=str(error),
                error_type=error.__class__.__name__,
                reply_error=str(reply_exc),
                reply_error_type=reply_exc.__class__.__name__,
            )

    async def _reply_unknown(self, sink: ReplySink, msg: MatrixIncomingMessage) -> None:
        logger.debug("command.unknown", room_id=msg.room_id, event_id=msg.event_id)
        try:
            await sink.send(self._texts.unknown_command, reply_to=msg.event_id)
        except Exception as reply_exc:
            logger.error(
                "command.unknown_reply_failed",
                room_id=msg.room_id,
                event_id=msg.event_id,
                reply_error=str(reply_exc),
                reply_error_type=reply_exc.__class__.__name__,
            )
