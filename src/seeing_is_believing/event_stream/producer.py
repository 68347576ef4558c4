"""Child-side event producer.

Turns recording calls into wire messages and hands them to a background
writer thread, so recording never blocks on the socket.

Wire format (one message per line, string fields are tokens)::

    sib_version <tok>
    runtime_version <tok>
    filename <tok>
    num_lines <int>
    max_line_captures <int|Infinity>
    result <line> <type-tok> <value-tok>
    maxed_result <line> <type-tok>
    exception
      line_number <int>
      class_name  <tok>
      message     <tok>
      backtrace   <tok>      (repeated, innermost frame first)
    end
    exitstatus <int>

Intended to be imported inside the child interpreter, so this module sticks
to the standard library.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import traceback
from collections import defaultdict
from typing import IO, Any, Callable, Final

from ..errors import RenderingStackExhausted
from .tokens import to_token

__all__ = [
    "EventStreamProducer",
    "NO_REPR_AVAILABLE",
    "UNKNOWN_LINE_NUMBER",
]

logger = logging.getLogger(__name__)

# Stands in for a value whose repr raised
NO_REPR_AVAILABLE: Final[str] = "<no repr available>"

# Line number for exceptions that can't be tied to the target file
UNKNOWN_LINE_NUMBER: Final[int] = -1

_STOP = object()


class _NullQueue:
    """Swallows everything once the writer thread is gone."""

    def put(self, item: Any) -> None:
        pass


def format_max_line_captures(value: float) -> str:
    return "Infinity" if math.isinf(value) else str(int(value))


class EventStreamProducer:
    """Records facts about a running program onto an event stream.

    Any number of threads may call the ``record_*`` methods; a single writer
    thread owns the stream. If the stream breaks (the parent went away), the
    remaining messages are discarded instead of raising into the program.

    Example:
        producer = EventStreamProducer(sock.makefile("wb"))
        producer.record_filename("/tmp/example.py")
        x = producer.record_result("inspect", 1, 1 + 1)
        producer.finish()

    Attributes:
        filename: Target file, used to attribute exceptions to a line
        max_line_captures: Results kept per (line, type) before truncating
        num_lines: Highest line number touched so far
    """

    def __init__(self, resultstream: IO[bytes]) -> None:
        self.filename: str | None = None
        self.max_line_captures: float = math.inf
        self.num_lines: int = 0
        self.version: str | None = None

        self._resultstream = resultstream
        self._recorded_results: dict[int, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._counts_lock = threading.Lock()
        self._finished = False
        self._start_writer()

    # Writer

    def _start_writer(self) -> None:
        self._queue: queue.Queue[Any] | _NullQueue = queue.Queue()
        self._writer_thread = threading.Thread(
            target=self._drain_queue,
            args=(self._queue,),
            daemon=True,
            name="sib_event_writer",
        )
        self._writer_thread.start()

    def _drain_queue(self, to_publish: queue.Queue[Any]) -> None:
        try:
            while True:
                line = to_publish.get()
                if line is _STOP:
                    break
                self._resultstream.write(line.encode("ascii") + b"\n")
                self._resultstream.flush()
        except (OSError, ValueError):
            # Parent closed its end (or the stream was closed under us)
            self._discard(to_publish)
        finally:
            try:
                self._resultstream.flush()
            except (OSError, ValueError):
                pass
            self._queue = _NullQueue()

    @staticmethod
    def _discard(to_publish: queue.Queue[Any]) -> None:
        while True:
            try:
                to_publish.get_nowait()
            except queue.Empty:
                return

    def _publish(self, line: str) -> None:
        self._queue.put(line)

    def restart_after_fork(self) -> None:
        """Give a freshly forked child its own writer thread.

        Threads don't survive ``fork``; the child keeps the shared stream and
        queues into a new writer.
        """
        self._counts_lock = threading.Lock()
        self._finished = False
        self._start_writer()

    # Preamble

    def record_sib_version(self, sib_version: str) -> None:
        self.version = sib_version
        self._publish(f"sib_version {to_token(sib_version)}")

    def record_runtime_version(self, runtime_version: str) -> None:
        self._publish(f"runtime_version {to_token(runtime_version)}")

    def record_filename(self, filename: str) -> None:
        self.filename = filename
        self._publish(f"filename {to_token(filename)}")

    def record_num_lines(self, num_lines: int) -> None:
        if self.num_lines < num_lines:
            self.num_lines = num_lines

    def record_max_line_captures(self, max_line_captures: float) -> None:
        self.max_line_captures = max_line_captures
        self._publish(f"max_line_captures {format_max_line_captures(max_line_captures)}")

    # Results

    def record_result(
        self,
        type: str,
        line_number: int,
        value: Any,
        render: Callable[[Any], str] | None = None,
    ) -> Any:
        """Record ``value`` as a result of ``line_number`` and return it.

        Only the first ``max_line_captures`` values per (line, type) are
        rendered and sent; the next one sends a single ``maxed_result`` and
        everything after that is dropped.

        Args:
            type: Capture kind (e.g. ``"inspect"``)
            line_number: 1-based line the value came from
            value: The value itself, returned unchanged
            render: Turns the value into a string (default ``repr``)

        Raises:
            RenderingStackExhausted: If rendering overflowed the stack
        """
        self.record_num_lines(line_number)
        with self._counts_lock:
            counts = self._recorded_results[line_number]
            count = counts[type]
            counts[type] = count + 1

        if count < self.max_line_captures:
            inspected = self._render(value, render or repr)
            self._publish(f"result {line_number} {to_token(type)} {to_token(inspected)}")
        elif count == self.max_line_captures:
            self._publish(f"maxed_result {line_number} {to_token(type)}")
        return value

    @staticmethod
    def _render(value: Any, render: Callable[[Any], str]) -> str:
        try:
            inspected = render(value)
        except RecursionError as e:
            # The original traceback ends inside the recorder; re-raise so the
            # failure is attributed to the value being rendered.
            raise RenderingStackExhausted(
                "Calling repr blew the stack (is it recursive without a base case?)"
            ) from e
        except Exception:
            return NO_REPR_AVAILABLE
        if not isinstance(inspected, str):
            return NO_REPR_AVAILABLE
        return inspected

    # Termination

    def record_exception(self, line_number: int | None, exception: BaseException) -> int:
        """Record an exception and return the exit status it implies."""
        frames = list(reversed(traceback.extract_tb(exception.__traceback__)))

        if line_number is not None:
            self.record_num_lines(line_number)
        elif self.filename:
            line_number = self._line_from_syntax_error(exception, self.filename)
            if line_number is None:
                line_number = self._line_from_frames(frames, self.filename)
        if line_number is None:
            line_number = UNKNOWN_LINE_NUMBER

        lines = [
            "exception",
            f"  line_number {line_number}",
            f"  class_name  {to_token(type(exception).__name__)}",
            f"  message     {to_token(_exception_message(exception))}",
        ]
        for frame in frames:
            entry = f'File "{frame.filename}", line {frame.lineno}, in {frame.name}'
            lines.append(f"  backtrace   {to_token(entry)}")
        lines.append("end")
        for line in lines:
            self._publish(line)

        return exit_status_for(exception)

    @staticmethod
    def _line_from_syntax_error(exception: BaseException, filename: str) -> int | None:
        # Compile errors carry the location in the exception, not the traceback
        if not isinstance(exception, SyntaxError) or not exception.filename:
            return None
        if filename not in exception.filename:
            return None
        return exception.lineno

    @staticmethod
    def _line_from_frames(frames: list[traceback.FrameSummary], filename: str) -> int | None:
        for frame in frames:
            if filename in frame.filename and frame.lineno is not None:
                return frame.lineno
        return None

    def record_exitstatus(self, status: int) -> None:
        self._publish(f"exitstatus {int(status)}")

    def finish(self) -> None:
        """Flush everything recorded so far and stop the writer.

        Blocks until the writer has drained. Safe to call more than once; call
        it before anything that replaces the process image.
        """
        if self._finished:
            return
        self._finished = True
        self._publish(f"num_lines {self.num_lines}")
        self._queue.put(_STOP)
        self._writer_thread.join()


def exit_status_for(exception: BaseException) -> int:
    """Conventional process exit status for an uncaught exception."""
    if isinstance(exception, SystemExit):
        code = exception.code
        if code is None:
            return 0
        if isinstance(code, int):
            return code
        return 1
    return 1


def _exception_message(exception: BaseException) -> str:
    try:
        return str(exception)
    except Exception:
        return NO_REPR_AVAILABLE
