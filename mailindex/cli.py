"""Command-line interface for mailindex."""

import argparse
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

from mailindex import __version__
from mailindex.config import (
    DEFAULT_CONFIG_FILENAME,
    find_config,
    get_database_path,
    get_new_tags,
    load_config,
    validate_config,
)
from mailindex.database import DatabaseMode, IndexDatabase, Query
from mailindex.errors import AllocationError, ArgumentError, ConfigurationError, MailIndexError


class OutputMode(Enum):
    """What the count command counts."""
    MESSAGES = "messages"
    THREADS = "threads"


# Keywords accepted by count --output
OUTPUT_KEYWORDS: Dict[str, OutputMode] = {
    "threads": OutputMode.THREADS,
    "messages": OutputMode.MESSAGES,
}


COMMANDS = ("count", "index", "config")


@dataclass(frozen=True)
class ParsedOptions:
    """Options of the count command.

    Attributes:
        output: Selected counting unit
        opt_index: Index of the first search term in the argument list
    """
    output: OutputMode = OutputMode.MESSAGES
    opt_index: int = 0


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ArgumentError instead of exiting with status 2."""

    def error(self, message):
        raise ArgumentError(f"{self.prog}: {message}")


def _build_count_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="mailindex count",
        description="Count messages or threads matching a search query.",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-o", "--output",
        choices=list(OUTPUT_KEYWORDS),
        default="messages",
        help="Count matching messages (default) or threads",
    )
    parser.add_argument(
        "terms",
        nargs=argparse.REMAINDER,
        help="Search terms (default: every message)",
    )
    return parser


def _build_index_parser() -> argparse.ArgumentParser:
    return _ArgumentParser(
        prog="mailindex index",
        description="Add new messages under the database path to the index.",
    )


def _build_config_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="mailindex config",
        description="Read or edit the config file.",
    )
    actions = parser.add_subparsers(dest="action", required=True)
    get_parser = actions.add_parser("get", help="Print a config value")
    get_parser.add_argument("key", help="Dotted key, e.g. database.path")
    set_parser = actions.add_parser("set", help="Set a config value (no values removes it)")
    set_parser.add_argument("key", help="Dotted key, e.g. new.tags")
    set_parser.add_argument("values", nargs="*", help="Value(s) to store")
    return parser


def parse_count_arguments(args: Sequence[str]) -> ParsedOptions:
    """Parse count options.

    Options must come before the search terms: parsing stops at the first
    non-option argument. A leading '--' also ends the options, so a query
    may start with a negated term.

    Raises:
        ArgumentError: On an unknown option or an invalid --output keyword
    """
    args = list(args)
    namespace = _build_count_parser().parse_args(args)
    terms = namespace.terms
    if terms and terms[0] == "--":
        terms = terms[1:]
    return ParsedOptions(
        output=OUTPUT_KEYWORDS[namespace.output],
        opt_index=len(args) - len(terms),
    )


def query_string_from_args(args: Sequence[str]) -> str:
    """Join search terms into one query string; no terms means every message."""
    return " ".join(args)


def count(query: Query, output: OutputMode) -> int:
    """Run the counting operation selected by output."""
    if output == OutputMode.THREADS:
        return query.count_threads()
    return query.count_messages()


def cmd_count(
    database_path: Path,
    args: Sequence[str],
    options: ParsedOptions,
    verbose: bool = False,
) -> None:
    """Print the number of messages or threads matching a query.

    Args:
        database_path: Mail root holding the index
        args: Count arguments, options followed by search terms
        options: Result of parse_count_arguments(args)
        verbose: Print diagnostics to stderr
    """
    try:
        query_string = query_string_from_args(args[options.opt_index:])
    except MemoryError as e:
        raise AllocationError("Out of memory") from e

    if verbose:
        print(f"[verbose] Opening {database_path} read-only", file=sys.stderr, flush=True)

    with IndexDatabase.open(database_path, DatabaseMode.READ_ONLY) as db:
        try:
            query = db.create_query(query_string)
        except MemoryError as e:
            raise AllocationError("Out of memory") from e

        with query:
            if verbose:
                print(
                    f"[verbose] query={query_string!r} where={query.parsed.where_sql}",
                    file=sys.stderr,
                    flush=True,
                )
            result = count(query, options.output)

    print(result)


def _home(environ: Mapping[str, str]) -> Optional[Path]:
    return Path(environ["HOME"]) if environ.get("HOME") else None


def _load_settings(args: argparse.Namespace, environ: Mapping[str, str]) -> tuple:
    """Load config and resolve the database path.

    Returns:
        Tuple of (config, database_path)
    """
    home = _home(environ)
    config = load_config(
        args.config,
        environ=environ,
        home=home,
        required=args.database is None,
    )

    errors = validate_config(config)
    if errors:
        raise ConfigurationError("; ".join(errors))

    database_path = get_database_path(config, args.database)
    if args.verbose:
        print(f"[verbose] Database path: {database_path}", file=sys.stderr, flush=True)
    return config, database_path


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="mailindex",
        description="mailindex - Index your mail and count what matches.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Version: {__version__}

Commands:
  index                     Add new messages to the index
  config get KEY / config set KEY [VALUE...]
                            Read or edit the config file
  count [-o threads|messages] [search-terms...]
                            Count matching messages or threads

Examples:
  %(prog)s index
  %(prog)s count                                  Count every message
  %(prog)s count --output=threads tag:inbox       Count threads in inbox
  %(prog)s count from:alice@example.com invoice   Count messages
  %(prog)s count -- -tag:spam                     Query starting with negation
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: $MAILINDEX_CONFIG, ./config.yaml, ~/.mailindex.yaml)",
    )

    parser.add_argument(
        "--database",
        type=Path,
        help="Mail directory holding the index (overrides database.path)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Print diagnostics to stderr",
    )

    # One REMAINDER positional so '--' and option-like terms reach the command untouched
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        metavar="command [args]",
        help=f"Command to run: {', '.join(COMMANDS)}",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments without the program name (default: sys.argv[1:])
        environ: Environment mapping (default: os.environ)

    Returns:
        Process exit status: 0 on success, 1 on any failure
    """
    argv = sys.argv[1:] if argv is None else list(argv)
    environ = os.environ if environ is None else environ
    parser = _build_parser()

    try:
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return 1

        command, command_args = args.command[0], args.command[1:]
        if command not in COMMANDS:
            raise ArgumentError(
                f"{parser.prog}: unknown command '{command}' (choose from {', '.join(COMMANDS)})"
            )

        if command == "count":
            # Bad options are reported before the config or index is touched
            options = parse_count_arguments(command_args)
            _, database_path = _load_settings(args, environ)
            cmd_count(database_path, command_args, options, verbose=args.verbose)

        elif command == "index":
            _build_index_parser().parse_args(command_args)
            config, database_path = _load_settings(args, environ)
            from mailindex.commands import cmd_index
            cmd_index(database_path, get_new_tags(config), verbose=args.verbose)

        elif command == "config":
            config_args = _build_config_parser().parse_args(command_args)
            from mailindex.commands import cmd_config_get, cmd_config_set
            home = _home(environ)
            if config_args.action == "get":
                config = load_config(args.config, environ=environ, home=home)
                cmd_config_get(config, config_args.key)
            else:
                config_path = (
                    args.config
                    or find_config(None, environ, home)
                    or Path.cwd() / DEFAULT_CONFIG_FILENAME
                )
                cmd_config_set(config_path, config_args.key, config_args.values)

    except MailIndexError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nOperation interrupted by user.", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
