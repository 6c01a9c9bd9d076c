"""Exception types shared across the bot."""

from __future__ import annotations


class ConfigError(Exception):
    """Invalid configuration, grammar or handler registry."""


class CommandError(Exception):
    """A user-facing failure raised by a command handler.

    The message is shown to the user as-is, after the error prefix.
    """


class CommandNotFound(CommandError):
    def __init__(self, name: str) -> None:
        super().__init__("comando non trovato")
        self.name = name


class ArgumentParseError(Exception):
    """The arguments of a recognized command could not be parsed."""


class ReplyError(Exception):
    """Sending a reply to a room failed."""

    def __init__(self, room_id: str, description: str | None = None) -> None:
        super().__init__(description or f"failed to send reply to {room_id}")
        self.room_id = room_id


class MetadataRegistrationError(Exception):
    """Publishing the command list to the homeserver failed."""
