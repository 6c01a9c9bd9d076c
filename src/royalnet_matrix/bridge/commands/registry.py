"""Mapping from command variants to the handlers implementing them."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from ...errors import ConfigError
from ...types import MatrixIncomingMessage
from .grammar import CommandGrammar
from .reply import ReplySink
from .types import Command

Handler = Callable[[ReplySink, MatrixIncomingMessage, Any], Awaitable[None]]


class HandlerRegistry:
    """Handlers keyed by command variant.

    A handler receives the reply sink, the inbound message and the parsed
    command. It returns None on success, replying through the sink if it
    wants to, and raises ``CommandError`` for user-facing failures.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[Any], Handler] = {}

    def register(self, variant: type[Any], handler: Handler) -> None:
        if variant in self._handlers:
            raise ConfigError(f"A handler for {variant.__name__} is already registered.")
        self._handlers[variant] = handler

    def resolve(self, command: Command) -> Handler:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise ConfigError(f"No handler registered for {type(command).__name__}.")
        return handler

    def ensure_complete(self, grammar: CommandGrammar) -> None:
        """Check that every command of ``grammar`` has a handler.

        Raises:
            ConfigError: listing the commands without a handler.
        """
        missing = [
            spec.name for spec in grammar.list_commands()
            if spec.variant not in self._handlers
        ]
        if missing:
            raise ConfigError(f"Commands without a handler: {', '.join(missing)}.")

    def __contains__(self, variant: object) -> bool:
        return variant in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
