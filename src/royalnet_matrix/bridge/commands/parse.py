"""Command parsing utilities."""

from __future__ import annotations

import re
from collections.abc import Iterable

from ...errors import ArgumentParseError
from .grammar import DEFAULT_GRAMMAR, CommandGrammar
from .types import ArgumentError, ParseOutcome, Unrecognized


_TOKEN_END_RE = re.compile(r"\r\n|\s")


def _split_slash(text: str) -> tuple[str, str | None, str] | None:
    """Split ``/command@mention args`` into its parts, None for plain text.

    The arguments are everything after the first separator following the
    command token, kept byte for byte.
    """
    stripped = text.lstrip()
    if not stripped.startswith("/"):
        return None
    end = _TOKEN_END_RE.search(stripped)
    if end is None:
        token, args_text = stripped[1:], ""
    else:
        token, args_text = stripped[1 : end.start()], stripped[end.end() :]
    command, _, mention = token.partition("@")
    if not command:
        return None
    return command.lower(), mention or None, args_text



def parse_slash_command(text: str) -> tuple[str | None, str]:
    """Parse a slash command from text, returning (command_id, args_text).

    Args:
        text: The message text to parse.

    Returns:
        A tuple of (command_id, args_text) where command_id is None if
        the text is not a slash command.
    """
    parts = _split_slash(text)
    if parts is None:
        return None, text
    command, _, args_text = parts
    return command, args_text


def command_mention(text: str) -> str | None:
    """The bot name a slash command is addressed to (``/help@name``), if any."""
    parts = _split_slash(text)
    if parts is None:
        return None
    return parts[1]


def is_addressed_to(mention: str | None, bot_names: Iterable[str]) -> bool:
    if mention is None:
        return True
    wanted = mention.strip().lower()
    return any(wanted == name.lower() for name in bot_names)


def parse_command(
    text: str,
    *,
    bot_names: Iterable[str] = (),
    grammar: CommandGrammar = DEFAULT_GRAMMAR,
) -> ParseOutcome:
    """Classify one inbound message against the grammar.

    Args:
        text: The raw message text.
        bot_names: Names the bot answers to in ``/command@name``.
        grammar: The command grammar.

    Returns:
        The command variant, ``Unrecognized`` for anything that is not one of
        our commands, or ``ArgumentError`` when a known command has
        malformed arguments.
    """
    parts = _split_slash(text)
    if parts is None:
        return Unrecognized(text)
    command_id, mention, args_text = parts
    if not is_addressed_to(mention, bot_names):
        return Unrecognized(text)
    spec = grammar.lookup(command_id)
    if spec is None:
        return Unrecognized(text)
    try:
        return spec.build(args_text)
    except ArgumentParseError as exc:
        return ArgumentError(command=spec.name, text=text, message=str(exc))

