"""Child-side bootstrap.

Run by the orchestrator as::

    python -W ignore -m seeing_is_believing.the_matrix [-I DIR]... [-r MODULE]... FILENAME

It reads the run variables from the environment, connects back to the
orchestrator's event endpoint, records the preamble (versions, filename,
line count, capture cap), runs FILENAME as ``__main__`` and records an
uncaught exception if there is one. It then flushes the event stream and
exits with the status the program implies.

The program reaches the recorder through the ``__sib__`` global, which is
where instrumented code sends its ``record_result`` calls. Code that is
about to replace the process image (``os.exec*``) must call
``__sib__.finish()`` first, or pending events are lost.
"""

from __future__ import annotations

import argparse
import importlib
import os
import platform
import runpy
import socket
import sys
import time
from typing import IO, NoReturn

from . import __version__
from .event_stream.producer import EventStreamProducer
from .event_stream.tokens import RUN_VARIABLES_ENV, decode_run_variables

__all__ = ["RECORDER_NAME", "connect", "main", "run_program"]

# Global name the recorder is injected under
RECORDER_NAME = "__sib__"

EVENT_STREAM_HOST = "127.0.0.1"
CONNECT_TIMEOUT_SECONDS = 1.0
CONNECT_RETRY_INTERVAL = 0.1


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="seeing_is_believing.the_matrix")
    parser.add_argument("-I", dest="load_path", action="append", default=[],
                        help="directory to add to sys.path")
    parser.add_argument("-r", dest="require", action="append", default=[],
                        help="module to import before running the program")
    parser.add_argument("filename")
    return parser.parse_args(argv)


def connect(port: int, timeout: float = CONNECT_TIMEOUT_SECONDS) -> socket.socket:
    """Connect to the event endpoint, retrying while it refuses."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            return socket.create_connection((EVENT_STREAM_HOST, port))
        except ConnectionRefusedError:
            if time.monotonic() >= deadline:
                raise
            time.sleep(CONNECT_RETRY_INTERVAL)


def _trim_traceback(exception: BaseException, filename: str) -> BaseException:
    """Drop the bootstrap's own frames from the front of the traceback."""
    tb = exception.__traceback__
    while tb is not None and not _same_file(tb.tb_frame.f_code.co_filename, filename):
        tb = tb.tb_next
    if tb is None:
        return exception
    return exception.with_traceback(tb)


def _same_file(a: str, b: str) -> bool:
    return a == b or os.path.abspath(a) == os.path.abspath(b)


def run_program(producer: EventStreamProducer, filename: str, requires: list[str]) -> int:
    """Run ``filename`` as __main__ and return the exit status it implies."""
    try:
        for module in requires:
            importlib.import_module(module)
        runpy.run_path(filename, init_globals={RECORDER_NAME: producer}, run_name="__main__")
    except BaseException as e:
        if isinstance(e, SystemExit) and e.code is not None and not isinstance(e.code, int):
            print(e.code, file=sys.stderr)
        return producer.record_exception(None, _trim_traceback(e, filename))
    return 0


def _configure_stdio() -> None:
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.reconfigure(line_buffering=True)
        except (AttributeError, ValueError):
            pass


def _finish(producer: EventStreamProducer, event_stream: socket.socket, stream_file: IO[bytes]) -> None:
    producer.finish()
    for closeable in (stream_file, event_stream):
        try:
            closeable.close()
        except OSError:
            pass
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass


def main(argv: list[str] | None = None) -> NoReturn:
    args = _parse_args(argv)
    variables = decode_run_variables(os.environ[RUN_VARIABLES_ENV])

    event_stream = connect(variables["event_stream_port"])
    stream_file = event_stream.makefile("wb")
    producer = EventStreamProducer(stream_file)
    producer.record_runtime_version(platform.python_version())
    producer.record_sib_version(__version__)
    producer.record_filename(variables["filename"])
    producer.record_num_lines(variables["num_lines"])
    producer.record_max_line_captures(variables["max_line_captures"])
    if hasattr(os, "register_at_fork"):
        os.register_at_fork(after_in_child=producer.restart_after_fork)

    # Look like `python FILENAME` to the program
    sys.argv = [args.filename]
    sys.path[0] = os.path.dirname(os.path.abspath(args.filename))
    for directory in reversed(args.load_path):
        sys.path.insert(0, directory)
    _configure_stdio()

    status = run_program(producer, args.filename, args.require)
    _finish(producer, event_stream, stream_file)
    # Skip interpreter shutdown: the status is already decided and recorded
    os._exit(status & 0xFF if status >= 0 else 1)


if __name__ == "__main__":
    main()
