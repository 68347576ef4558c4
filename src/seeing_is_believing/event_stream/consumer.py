"""Parent-side event consumer.

Merges three byte sources coming out of the child into one ordered sequence
of events:

- the event stream (wire messages written by ``EventStreamProducer``)
- the child's stdout
- the child's stderr

Each source is read by its own task and funnelled through a single FIFO
queue, so messages from the event stream are dispatched exactly in the order
they were written. Ordering across the three sources is best effort.

The sequence ends with a ``FinishedEvent`` once the event stream, stdout and
stderr are all closed and the run's terminal status (exit status or
timeout) has been reported by the orchestrator. Descendants of the child can
keep its stdout/stderr open after it is gone, so once the status is known and
the event stream has closed (or the run timed out), whatever is still open
is abandoned after a short grace period.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Callable

from ..errors import ProtocolViolation
from .events import (
    Event,
    EventStreamClosedEvent,
    ExceptionEvent,
    ExitStatusEvent,
    FilenameEvent,
    FinishedEvent,
    LineResultEvent,
    MaxLineCapturesEvent,
    NumLinesEvent,
    ProtocolViolationEvent,
    ResultsTruncatedEvent,
    RuntimeVersionEvent,
    SiBVersionEvent,
    StderrClosedEvent,
    StderrEvent,
    StdoutClosedEvent,
    StdoutEvent,
    TimeoutEvent,
)
from .tokens import from_token

__all__ = [
    "EventStreamConsumer",
    "RunResult",
    "parse_message",
]

logger = logging.getLogger(__name__)

# Read size for stdout/stderr passthrough
OUTPUT_CHUNK_SIZE = 4096

# Seconds streams may stay open once the run is otherwise over
DRAIN_GRACE_SECONDS = 0.5


@dataclass
class RunResult:
    """Everything the consumer has seen during one run.

    Attributes:
        events: Events in the order they were dispatched
        stdout: Raw bytes the child wrote to stdout
        stderr: Raw bytes the child wrote to stderr
        exitstatus: Final exit status (None until known, or if timed out)
        timed_out: Whether the run ended by timeout
    """

    events: list[Any] = field(default_factory=list)
    stdout: bytearray = field(default_factory=bytearray)
    stderr: bytearray = field(default_factory=bytearray)
    exitstatus: int | None = None
    timed_out: bool = False


@dataclass(frozen=True)
class _ProcessExited:
    status: int


# =============================================================================
# Wire parsing
# =============================================================================


def _int_field(line: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ProtocolViolation(line, f"expected an integer, got {value!r}") from None


def _token_field(line: str, token: str) -> str:
    try:
        return from_token(token)
    except ValueError as e:
        raise ProtocolViolation(line, str(e)) from None


def _fields(line: str, rest: str, count: int) -> list[str]:
    fields = rest.split()
    if len(fields) != count:
        raise ProtocolViolation(line, f"expected {count} field(s), got {len(fields)}")
    return fields


def _parse_max_line_captures(line: str, value: str) -> float:
    if value in ("Infinity", "inf"):
        return math.inf
    return _int_field(line, value)


_SINGLE_TOKEN_EVENTS: dict[str, Callable[..., Any]] = {
    "sib_version": SiBVersionEvent,
    "runtime_version": RuntimeVersionEvent,
    "filename": FilenameEvent,
}


def parse_message(line: str) -> Any:
    """Parse one single-line wire message into an event.

    Exception blocks span several lines and are handled by the consumer.

    Raises:
        ProtocolViolation: If the line is malformed or its keyword is unknown
    """
    keyword, _, rest = line.strip().partition(" ")

    if keyword in _SINGLE_TOKEN_EVENTS:
        (token,) = _fields(line, rest, 1)
        return _SINGLE_TOKEN_EVENTS[keyword](value=_token_field(line, token))

    if keyword == "num_lines":
        (value,) = _fields(line, rest, 1)
        return NumLinesEvent(value=_int_field(line, value))

    if keyword == "max_line_captures":
        (value,) = _fields(line, rest, 1)
        return MaxLineCapturesEvent(value=_parse_max_line_captures(line, value))

    if keyword == "result":
        line_number, type_token, value_token = _fields(line, rest, 3)
        return LineResultEvent(
            line_number=_int_field(line, line_number),
            type=_token_field(line, type_token),
            inspected=_token_field(line, value_token),
        )

    if keyword == "maxed_result":
        line_number, type_token = _fields(line, rest, 2)
        return ResultsTruncatedEvent(
            line_number=_int_field(line, line_number),
            type=_token_field(line, type_token),
        )

    if keyword == "exitstatus":
        (value,) = _fields(line, rest, 1)
        return ExitStatusEvent(value=_int_field(line, value))

    raise ProtocolViolation(line, f"unknown event {keyword!r}")


def parse_exception_block(lines: list[str]) -> ExceptionEvent:
    """Parse the indented body of an ``exception`` ... ``end`` block.

    Raises:
        ProtocolViolation: If a field is malformed or a required one is missing
    """
    line_number: int | None = None
    class_name: str | None = None
    message: str | None = None
    backtrace: list[str] = []

    for line in lines:
        key, _, rest = line.strip().partition(" ")
        if key == "line_number":
            (value,) = _fields(line, rest, 1)
            line_number = _int_field(line, value)
        elif key == "class_name":
            (token,) = _fields(line, rest, 1)
            class_name = _token_field(line, token)
        elif key == "message":
            (token,) = _fields(line, rest, 1)
            message = _token_field(line, token)
        elif key == "backtrace":
            (token,) = _fields(line, rest, 1)
            backtrace.append(_token_field(line, token))
        else:
            raise ProtocolViolation(line, f"unknown exception field {key!r}")

    if line_number is None or class_name is None or message is None:
        raise ProtocolViolation("\n".join(lines), "incomplete exception block")

    return ExceptionEvent(
        line_number=line_number,
        class_name=class_name,
        message=message,
        backtrace=tuple(backtrace),
    )


async def _read_line(reader: asyncio.StreamReader) -> bytes:
    """Read one line, however long; returns b"" at EOF."""
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await reader.readuntil(b"\n"))
            break
        except asyncio.IncompleteReadError as e:
            chunks.append(e.partial)
            break
        except asyncio.LimitOverrunError as e:
            chunks.append(await reader.readexactly(e.consumed))
    return b"".join(chunks)


# =============================================================================
# Consumer
# =============================================================================


class EventStreamConsumer:
    """Reconstructs the event sequence of one run.

    Example:
        consumer = EventStreamConsumer(
            events=event_reader, stdout=process.stdout, stderr=process.stderr
        )
        async for event in consumer:
            handle(event)

    Attributes:
        result: Accumulated events, raw output, and final status
    """

    def __init__(
        self,
        *,
        events: asyncio.StreamReader | None,
        stdout: asyncio.StreamReader | None,
        stderr: asyncio.StreamReader | None,
        encoding: str = "utf-8",
        drain_grace: float = DRAIN_GRACE_SECONDS,
    ) -> None:
        self.result = RunResult()
        self.encoding = encoding
        self.drain_grace = drain_grace

        self._events = events
        self._stdout = stdout
        self._stderr = stderr
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._readers: list[asyncio.Task[None]] = []
        self._started = False

        self._events_closed = False
        self._stdout_closed = False
        self._stderr_closed = False
        self._status_known = False
        self._process_status: int | None = None
        self._drain_timer: asyncio.TimerHandle | None = None

    @property
    def exitstatus(self) -> int | None:
        """Final exit status; None while unknown or after a timeout."""
        if self.result.timed_out:
            return None
        return self.result.exitstatus

    def process_exitstatus(self, status: int) -> None:
        """Report the child's exit code, as observed by the orchestrator.

        Dispatched as an ``ExitStatusEvent`` once every stream has closed,
        unless the event stream carried one.
        """
        self._queue.put_nowait(_ProcessExited(status))

    def process_timeout(self, seconds: float) -> None:
        """Report that the child was killed for exceeding ``seconds``."""
        self._queue.put_nowait(TimeoutEvent(seconds=seconds))

    def __aiter__(self) -> AsyncIterator[Event]:
        return self.each()

    async def each(self) -> AsyncIterator[Event]:
        """Yield events until the run is finished."""
        self._start()
        while not self._is_done():
            self._maybe_start_drain_timer()
            item = await self._queue.get()
            event = self._accept(item)
            if event is None:
                continue
            self.result.events.append(event)
            yield event

        if self._process_status is not None and self.result.exitstatus is None:
            self.result.exitstatus = self._process_status
            exited = ExitStatusEvent(value=self._process_status)
            self.result.events.append(exited)
            yield exited

        self._cancel_drain_timer()
        finished = FinishedEvent()
        self.result.events.append(finished)
        yield finished

    async def aclose(self) -> None:
        """Stop any reader tasks still running."""
        self._cancel_drain_timer()
        for task in self._readers:
            if not task.done():
                task.cancel()
        for task in self._readers:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Reader task ended with error: {e}")

    def _start(self) -> None:
        if self._started:
            return
        self._started = True

        if self._events is None:
            self._queue.put_nowait(EventStreamClosedEvent())
        else:
            self._readers.append(asyncio.create_task(self._read_events(self._events)))

        self._readers.append(
            asyncio.create_task(
                self._read_output(self._stdout, self.result.stdout, StdoutEvent, StdoutClosedEvent)
            )
        )
        self._readers.append(
            asyncio.create_task(
                self._read_output(self._stderr, self.result.stderr, StderrEvent, StderrClosedEvent)
            )
        )

    def _is_done(self) -> bool:
        return (
            self._events_closed
            and self._stdout_closed
            and self._stderr_closed
            and self._status_known
        )

    def _maybe_start_drain_timer(self) -> None:
        if self._drain_timer is not None or not self._status_known:
            return
        if self._events_closed or self.result.timed_out:
            self._drain_timer = asyncio.get_running_loop().call_later(
                self.drain_grace, self._abandon_readers
            )

    def _cancel_drain_timer(self) -> None:
        if self._drain_timer is not None:
            self._drain_timer.cancel()

    def _abandon_readers(self) -> None:
        """Stop reading streams still held open by the child's descendants.

        Each cancelled reader still queues its closed event.
        """
        for task in self._readers:
            if not task.done():
                logger.debug(f"Abandoning stream still open {self.drain_grace}s after the run ended")
                task.cancel()

    def _accept(self, item: Any) -> Any:
        """Update bookkeeping for a dequeued item; returns the event to dispatch."""
        if isinstance(item, _ProcessExited):
            self._status_known = True
            self._process_status = item.status
            return None

        if isinstance(item, ExitStatusEvent):
            self.result.exitstatus = item.value
        elif isinstance(item, TimeoutEvent):
            self.result.timed_out = True
            self._status_known = True
        elif isinstance(item, EventStreamClosedEvent):
            self._events_closed = True
        elif isinstance(item, StdoutClosedEvent):
            self._stdout_closed = True
        elif isinstance(item, StderrClosedEvent):
            self._stderr_closed = True
        return item

    # Readers

    async def _read_events(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                raw = await _read_line(reader)
                if not raw:
                    break
                line = raw.decode("ascii", errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                try:
                    if line.strip() == "exception":
                        event = await self._read_exception_block(reader)
                    else:
                        event = parse_message(line)
                except ProtocolViolation as e:
                    logger.warning(f"Protocol violation on event stream: {e}")
                    event = ProtocolViolationEvent(line=e.line, reason=e.reason)
                self._queue.put_nowait(event)
        except (ConnectionError, OSError) as e:
            logger.debug(f"Event stream read failed: {e}")
        finally:
            self._queue.put_nowait(EventStreamClosedEvent())

    async def _read_exception_block(self, reader: asyncio.StreamReader) -> ExceptionEvent:
        body: list[str] = []
        while True:
            raw = await _read_line(reader)
            if not raw:
                raise ProtocolViolation("\n".join(["exception", *body]), "unterminated exception block")
            line = raw.decode("ascii", errors="replace").rstrip("\r\n")
            if line.strip() == "end":
                return parse_exception_block(body)
            body.append(line)

    async def _read_output(
        self,
        stream: asyncio.StreamReader | None,
        buffer: bytearray,
        event_cls: type[StdoutEvent] | type[StderrEvent],
        closed_cls: type[StdoutClosedEvent] | type[StderrClosedEvent],
    ) -> None:
        decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        try:
            if stream is None:
                return
            while True:
                chunk = await stream.read(OUTPUT_CHUNK_SIZE)
                if not chunk:
                    break
                buffer.extend(chunk)
                text = decoder.decode(chunk)
                if text:
                    self._queue.put_nowait(event_cls(value=text))
            tail = decoder.decode(b"", final=True)
            if tail:
                self._queue.put_nowait(event_cls(value=tail))
        except (ConnectionError, OSError) as e:
            logger.debug(f"Output read failed: {e}")
        finally:
            self._queue.put_nowait(closed_cls())
