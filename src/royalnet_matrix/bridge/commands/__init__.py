"""Command handling for the Matrix bot.

This module provides the command grammar, parsing, the handler registry and
the dispatcher.
"""

from __future__ import annotations

from .builtin import build_default_registry
from .dispatch import CommandDispatcher, ReplyTexts
from .grammar import DEFAULT_GRAMMAR, CommandGrammar, CommandMetadata, CommandSpec
from .parse import parse_command, parse_slash_command
from .registry import HandlerRegistry
from .reply import MatrixReplySink, ReplySink

__all__ = [
    "CommandDispatcher",
    "CommandGrammar",
    "CommandMetadata",
    "CommandSpec",
    "DEFAULT_GRAMMAR",
    "HandlerRegistry",
    "MatrixReplySink",
    "ReplySink",
    "ReplyTexts",
    "build_default_registry",
    "parse_command",
    "parse_slash_command",
]
