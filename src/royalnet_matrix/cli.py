"""royalnet-matrix command line."""

from __future__ import annotations

import argparse
import sys

import anyio

from . import __version__
from .bridge.commands import DEFAULT_GRAMMAR
from .bridge.commands.builtin import format_command_line
from .bridge.runtime import build_bridge_config, run_main_loop
from .errors import ConfigError, MetadataRegistrationError
from .logging import configure_logging, get_logger
from .settings import HOME_CONFIG_PATH, load_settings

logger = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="royalnet-matrix")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Connect to the homeserver and serve commands")
    run.add_argument(
        "--config",
        default=str(HOME_CONFIG_PATH),
        help="Path to royalnet.toml (default: %(default)s)",
    )
    run.add_argument(
        "--verbose",
        action="store_true",
        default=None,
        help="Enable debug logging (overrides [logging] verbose).",
    )
    run.add_argument(
        "--log-json",
        dest="log_json",
        action="store_true",
        default=None,
        help="Emit JSON log lines (overrides [logging] json).",
    )

    sub.add_parser("commands", help="List the commands the bot understands")

    return parser


def _print_commands() -> None:
    for spec in DEFAULT_GRAMMAR.list_commands():
        print(format_command_line(spec.name, spec.description))


def _run(args: argparse.Namespace) -> int:
    try:
        settings, config_path = load_settings(args.config)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    verbose = settings.logging.verbose if args.verbose is None else args.verbose
    log_json = settings.logging.json_output if args.log_json is None else args.log_json
    configure_logging(verbose=verbose, log_json=log_json)

    cfg = build_bridge_config(settings, config_path)
    try:
        started = anyio.run(run_main_loop, cfg)
    except MetadataRegistrationError as exc:
        logger.error("startup.commands.failed", error=str(exc))
        return 1
    except KeyboardInterrupt:
        return 0
    return 0 if started else 1


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "commands":
        _print_commands()
        raise SystemExit(0)
    if args.cmd == "run":
        raise SystemExit(_run(args))

    parser.error(f"unknown command: {args.cmd}")


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
