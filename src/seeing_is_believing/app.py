"""Command line entry point.

Evaluates a file in place and writes every event as one JSON object per
line to stdout. Meant for debugging integrations; rendering results next to
source is left to editors.

Usage:
    seeing-is-believing example.py
    seeing-is-believing example.py --program-file instrumented.py --timeout 5
"""

from __future__ import annotations

import argparse
import logging
import math
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .config import Config, get_config
from .errors import SeeingIsBelievingError
from .evaluate_by_moving_files import RunConfig, call

__all__ = ["main", "build_parser"]

logger = logging.getLogger(__name__)

# Process exit code when the program was killed for timing out (as timeout(1))
TIMEOUT_EXIT_CODE = 124

# Process exit code for setup/filesystem failures
ERROR_EXIT_CODE = 2


def build_parser(config: Config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seeing-is-believing",
        description="Evaluate a Python file in place and stream its events as JSON lines",
    )
    parser.add_argument("filename", help="path the program is evaluated at")
    parser.add_argument(
        "--program-file",
        help="read the program from this file instead of FILENAME",
    )
    parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=config.timeout_seconds,
        help="seconds before the program is killed, 0 for no limit (default: %(default)s)",
    )
    parser.add_argument(
        "-n", "--max-line-captures",
        type=int,
        default=None if math.isinf(config.max_line_captures) else int(config.max_line_captures),
        help="results recorded per line (default: unlimited)",
    )
    parser.add_argument(
        "--encoding",
        default=config.encoding,
        help="program and stdio encoding (default: %(default)s)",
    )
    parser.add_argument(
        "--input-file",
        help="file fed to the program's stdin",
    )
    parser.add_argument(
        "-I", "--load-path",
        action="append",
        default=[],
        help="directory added to the program's sys.path (repeatable)",
    )
    parser.add_argument(
        "-r", "--require",
        action="append",
        default=[],
        help="module imported before the program runs (repeatable)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _configure_logging(config: Config) -> None:
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.WARNING

    # Third-party loggers stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("seeing_is_believing").setLevel(log_level)


def _write_event(event: Any) -> None:
    sys.stdout.write(event.model_dump_json() + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    config = get_config()
    _configure_logging(config)
    args = build_parser(config).parse_args(argv)

    source = Path(args.program_file or args.filename)
    try:
        program = source.read_text(encoding=args.encoding)
        provided_input = Path(args.input_file).read_bytes() if args.input_file else b""
    except OSError as e:
        print(f"seeing-is-believing: {e}", file=sys.stderr)
        sys.exit(ERROR_EXIT_CODE)

    run_config = RunConfig(
        program=program,
        filename=args.filename,
        event_handler=_write_event,
        encoding=args.encoding,
        timeout_seconds=max(0.0, args.timeout),
        provided_input=provided_input,
        load_path_dirs=tuple(args.load_path),
        require_modules=tuple(args.require),
        max_line_captures=math.inf if args.max_line_captures is None else args.max_line_captures,
    )
    logger.debug(f"Evaluating {args.filename} timeout={run_config.timeout_seconds}")

    try:
        status = call(run_config)
    except SeeingIsBelievingError as e:
        print(f"seeing-is-believing: {e}", file=sys.stderr)
        sys.exit(ERROR_EXIT_CODE)

    sys.exit(TIMEOUT_EXIT_CODE if status is None else status)


if __name__ == "__main__":
    main()
