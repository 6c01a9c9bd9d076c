"""The closed set of commands the bot understands."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Literal

from ...errors import ArgumentParseError, CommandNotFound, ConfigError
from .reminder_args import parse_reminder_args
from .types import Answer, Command, Echo, Fortune, Help, Reminder, Start, WhoAmI

ArgumentKind = Literal["none", "text", "structured"]


@dataclass(frozen=True, slots=True)
class CommandMetadata:
    """Name and description advertised to the homeserver."""

    name: str
    description: str


@dataclass(frozen=True, slots=True)
class CommandSpec:
    name: str
    description: str
    variant: type[Any]
    argument: ArgumentKind = "none"
    parse_args: Callable[[str], Any] | None = None

    def __post_init__(self) -> None:
        if (self.argument == "structured") != (self.parse_args is not None):
            raise ConfigError(
                f"Command {self.name!r}: parse_args is required for, and only "
                "for, structured arguments."
            )

    def build(self, args_text: str) -> Command:
        """Build the command variant from the text after the command token.

        Raises:
            ArgumentParseError: the arguments do not fit the command.
        """
        if self.argument == "text":
            return self.variant(args_text)
        if self.parse_args is not None:
            return self.variant(self.parse_args(args_text))
        if args_text.strip():
            raise ArgumentParseError(
                f"Il comando /{self.name} non accetta argomenti."
            )
        return self.variant()


def _normalize_name(name: str) -> str:
    return name.strip().removeprefix("/").lower()


class CommandGrammar:
    """An immutable, ordered collection of command specs."""

    def __init__(self, specs: Iterable[CommandSpec]) -> None:
        self._specs = tuple(specs)
        self._by_name: dict[str, CommandSpec] = {}
        self._by_variant: dict[type[Any], CommandSpec] = {}
        for spec in self._specs:
            name = _normalize_name(spec.name)
            if name != spec.name or not name:
                raise ConfigError(f"Invalid command name {spec.name!r}.")
            if name in self._by_name:
                raise ConfigError(f"Duplicate command {name!r}.")
            if spec.variant in self._by_variant:
                raise ConfigError(
                    f"Variant {spec.variant.__name__} is bound to more than one command."
                )
            self._by_name[name] = spec
            self._by_variant[spec.variant] = spec

    def __iter__(self):
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def list_commands(self) -> tuple[CommandSpec, ...]:
        return self._specs

    def lookup(self, name: str) -> CommandSpec | None:
        return self._by_name.get(_normalize_name(name))

    def spec_for(self, command: Command) -> CommandSpec | None:
        return self._by_variant.get(type(command))

    def variants(self) -> tuple[type[Any], ...]:
        return tuple(spec.variant for spec in self._specs)

    def describe(self, name: str) -> str:
        """Description of one command.

        Raises:
            CommandNotFound: ``name`` is not part of the grammar.
        """
        spec = self.lookup(name)
        if spec is None:
            raise CommandNotFound(name)
        return spec.description

    def metadata(self) -> tuple[CommandMetadata, ...]:
        return tuple(
            CommandMetadata(name=spec.name, description=spec.description)
            for spec in self._specs
        )


DEFAULT_GRAMMAR = CommandGrammar(
    [
        CommandSpec(
            name="start",
            description="Invia messaggio di introduzione.",
            variant=Start,
        ),
        CommandSpec(
            name="help",
            description=(
                "Visualizza l'elenco dei comandi disponibili, "
                "o mostra informazioni su uno specifico comando."
            ),
            variant=Help,
            argument="text",
        ),
        CommandSpec(
            name="fortune",
            description="Mostra il tuo oroscopo di oggi.",
            variant=Fortune,
        ),
        CommandSpec(
            name="echo",
            description="Ripeti il testo inviato.",
            variant=Echo,
            argument="text",
        ),
        CommandSpec(
            name="whoami",
            description="Controlla a che account RYG è associato il tuo account Matrix.",
            variant=WhoAmI,
        ),
        CommandSpec(
            name="answer",
            description="Rispondi ad una domanda.",
            variant=Answer,
            argument="text",
        ),
        CommandSpec(
            name="reminder",
            description="Ricorda la chat di qualcosa che avverrà in futuro.",
            variant=Reminder,
            argument="structured",
            parse_args=parse_reminder_args,
        ),
    ]
)
