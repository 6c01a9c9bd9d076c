"""Decide which room messages reach the command dispatcher.

The bot only reacts to slash commands. A command addressed to a named bot
(``/help@otherbot``) is ignored unless the name is one of ours, so several
bots can share a room.
"""

from __future__ import annotations

from collections.abc import Iterable

from .bridge.commands.parse import command_mention, is_addressed_to, parse_slash_command


def bot_names(user_id: str, display_name: str | None = None) -> tuple[str, ...]:
    """Names accepted after ``@`` in a command.

    Args:
        user_id: The bot's Matrix user ID (e.g., '@royalbot:example.org').
        display_name: The bot's display name, if known.

    Returns:
        The full user ID, its localpart and the display name.
    """
    names = [user_id]
    localpart = user_id.removeprefix("@").split(":", 1)[0]
    if localpart:
        names.append(localpart)
    if display_name:
        names.append(display_name)
    return tuple(dict.fromkeys(names))


def should_dispatch(text: str, *, bot_names: Iterable[str]) -> bool:
    """Check if a message should be handed to the dispatcher.

    Args:
        text: The message text.
        bot_names: Names the bot answers to.

    Returns:
        True for slash commands that are not addressed to another bot.
    """
    command_id, _ = parse_slash_command(text)
    if command_id is None:
        return False
    return is_addressed_to(command_mention(text), bot_names)
