"""EventStreamConsumer tests.

Test coverage:
- Wire message parsing (including exception blocks and bad lines)
- Ordering of event stream messages
- stdout/stderr passthrough and raw byte accumulation
- End-of-run conditions (streams closed + exit status or timeout)
"""

from __future__ import annotations

import asyncio

import pytest

from seeing_is_believing.errors import ProtocolViolation
from seeing_is_believing.event_stream.consumer import (
    EventStreamConsumer,
    parse_exception_block,
    parse_message,
)
from seeing_is_believing.event_stream.events import (
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
    StderrEvent,
    StdoutClosedEvent,
    StdoutEvent,
    TimeoutEvent,
)
from seeing_is_believing.event_stream.tokens import to_token


# =============================================================================
# Helpers
# =============================================================================


def closed_reader(data: bytes = b"") -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    reader.feed_eof()
    return reader


def wire(*lines: str) -> bytes:
    return "".join(line + "\n" for line in lines).encode("ascii")


async def collect(consumer: EventStreamConsumer) -> list:
    return [event async for event in consumer]


def of_type(events: list, cls: type) -> list:
    return [e for e in events if isinstance(e, cls)]


def joined_output(events: list) -> str:
    return "".join(e.value for e in of_type(events, StdoutEvent))


# =============================================================================
# Parsing
# =============================================================================


class TestParseMessage:
    """Test single-line wire message parsing."""

    def test_result(self):
        event = parse_message(f"result 3 {to_token('inspect')} {to_token('[1, 2]')}")
        assert event == LineResultEvent(type="inspect", line_number=3, inspected="[1, 2]")

    def test_maxed_result(self):
        event = parse_message(f"maxed_result 9 {to_token('inspect')}")
        assert event == ResultsTruncatedEvent(type="inspect", line_number=9)

    def test_filename(self):
        assert parse_message(f"filename {to_token('/a b/c.py')}") == FilenameEvent(value="/a b/c.py")

    def test_num_lines_and_exitstatus(self):
        assert parse_message("num_lines 12") == NumLinesEvent(value=12)
        assert parse_message("exitstatus 3") == ExitStatusEvent(value=3)

    def test_max_line_captures(self):
        assert parse_message("max_line_captures 4") == MaxLineCapturesEvent(value=4)
        assert parse_message("max_line_captures Infinity").is_infinite

    def test_unknown_keyword_rejected(self):
        with pytest.raises(ProtocolViolation, match="unknown event"):
            parse_message("telemetry 1 2 3")

    def test_wrong_field_count_rejected(self):
        with pytest.raises(ProtocolViolation, match="expected 3 field"):
            parse_message("result 1")

    def test_bad_integer_rejected(self):
        with pytest.raises(ProtocolViolation, match="expected an integer"):
            parse_message("num_lines many")

    def test_bad_token_rejected(self):
        with pytest.raises(ProtocolViolation):
            parse_message("filename !!!")


class TestParseExceptionBlock:
    """Test exception block parsing."""

    def test_full_block(self):
        message = to_token("bad\nvalue")
        outer = to_token('File "a.py", line 3, in <module>')
        inner = to_token('File "b.py", line 1, in f')
        event = parse_exception_block(
            [
                "  line_number 3",
                f"  class_name  {to_token('ValueError')}",
                f"  message     {message}",
                f"  backtrace   {outer}",
                f"  backtrace   {inner}",
            ]
        )
        assert event == ExceptionEvent(
            line_number=3,
            class_name="ValueError",
            message="bad\nvalue",
            backtrace=('File "a.py", line 3, in <module>', 'File "b.py", line 1, in f'),
        )

    def test_incomplete_block_rejected(self):
        with pytest.raises(ProtocolViolation, match="incomplete"):
            parse_exception_block(["  line_number 3"])


# =============================================================================
# Consumer
# =============================================================================


class TestConsumer:
    """Test merging of the three sources."""

    @pytest.mark.asyncio
    async def test_events_keep_emission_order(self):
        lines = [f"result {i} {to_token('inspect')} {to_token(str(i))}" for i in range(1, 51)]
        consumer = EventStreamConsumer(
            events=closed_reader(wire(*lines)),
            stdout=closed_reader(),
            stderr=closed_reader(),
        )
        consumer.process_exitstatus(0)

        events = await collect(consumer)
        results = of_type(events, LineResultEvent)
        assert [r.line_number for r in results] == list(range(1, 51))
        assert isinstance(events[-1], FinishedEvent)
        assert consumer.exitstatus == 0

    @pytest.mark.asyncio
    async def test_stdout_and_stderr_passthrough(self):
        consumer = EventStreamConsumer(
            events=closed_reader(),
            stdout=closed_reader("héllo\n".encode("utf-8")),
            stderr=closed_reader(b"oops\n"),
        )
        consumer.process_exitstatus(0)

        events = await collect(consumer)
        assert "".join(e.value for e in of_type(events, StdoutEvent)) == "héllo\n"
        assert "".join(e.value for e in of_type(events, StderrEvent)) == "oops\n"
        assert bytes(consumer.result.stdout) == "héllo\n".encode("utf-8")
        assert bytes(consumer.result.stderr) == b"oops\n"

    @pytest.mark.asyncio
    async def test_split_multibyte_character(self):
        stdout = asyncio.StreamReader()
        consumer = EventStreamConsumer(events=closed_reader(), stdout=stdout, stderr=closed_reader())
        consumer.process_exitstatus(0)

        encoded = "✓".encode("utf-8")
        task = asyncio.create_task(collect(consumer))
        stdout.feed_data(encoded[:1])
        await asyncio.sleep(0.01)
        stdout.feed_data(encoded[1:])
        stdout.feed_eof()

        events = await task
        assert "".join(e.value for e in of_type(events, StdoutEvent)) == "✓"

    @pytest.mark.asyncio
    async def test_exception_block(self):
        data = wire(
            "exception",
            "  line_number 3",
            f"  class_name  {to_token('ZeroDivisionError')}",
            f"  message     {to_token('division by zero')}",
            "end",
            "num_lines 3",
        )
        consumer = EventStreamConsumer(events=closed_reader(data), stdout=closed_reader(), stderr=closed_reader())
        consumer.process_exitstatus(1)

        events = await collect(consumer)
        (exception,) = of_type(events, ExceptionEvent)
        assert exception.line_number == 3
        assert exception.class_name == "ZeroDivisionError"
        assert of_type(events, NumLinesEvent) == [NumLinesEvent(value=3)]

    @pytest.mark.asyncio
    async def test_malformed_line_is_reported_and_skipped(self):
        data = wire(
            "num_lines 1",
            "bogus line here",
            f"result 1 {to_token('inspect')} {to_token('1')}",
        )
        consumer = EventStreamConsumer(events=closed_reader(data), stdout=closed_reader(), stderr=closed_reader())
        consumer.process_exitstatus(0)

        events = await collect(consumer)
        (violation,) = of_type(events, ProtocolViolationEvent)
        assert violation.line == "bogus line here"
        assert len(of_type(events, LineResultEvent)) == 1

    @pytest.mark.asyncio
    async def test_unterminated_exception_block(self):
        data = wire("exception", "  line_number 3")
        consumer = EventStreamConsumer(events=closed_reader(data), stdout=closed_reader(), stderr=closed_reader())
        consumer.process_exitstatus(1)

        events = await collect(consumer)
        (violation,) = of_type(events, ProtocolViolationEvent)
        assert "unterminated" in violation.reason
        assert isinstance(events[-1], FinishedEvent)

    @pytest.mark.asyncio
    async def test_very_long_line(self):
        payload = "x" * 200_000
        data = wire(f"result 1 {to_token('inspect')} {to_token(payload)}")
        consumer = EventStreamConsumer(events=closed_reader(data), stdout=closed_reader(), stderr=closed_reader())
        consumer.process_exitstatus(0)

        events = await collect(consumer)
        (result,) = of_type(events, LineResultEvent)
        assert result.inspected == payload

    @pytest.mark.asyncio
    async def test_missing_event_stream(self):
        consumer = EventStreamConsumer(events=None, stdout=closed_reader(b"hi"), stderr=closed_reader())
        consumer.process_exitstatus(1)

        events = await collect(consumer)
        assert of_type(events, EventStreamClosedEvent)
        assert consumer.exitstatus == 1


class TestTermination:
    """Test end-of-run conditions."""

    @pytest.mark.asyncio
    async def test_waits_for_exit_status(self):
        consumer = EventStreamConsumer(events=closed_reader(), stdout=closed_reader(), stderr=closed_reader())
        task = asyncio.create_task(collect(consumer))

        await asyncio.sleep(0.05)
        assert not task.done()

        consumer.process_exitstatus(0)
        events = await asyncio.wait_for(task, timeout=1)
        assert of_type(events, ExitStatusEvent) == [ExitStatusEvent(value=0)]

    @pytest.mark.asyncio
    async def test_closed_stdout_does_not_end_run(self):
        events_reader = asyncio.StreamReader()
        consumer = EventStreamConsumer(events=events_reader, stdout=closed_reader(), stderr=closed_reader())
        consumer.process_exitstatus(0)
        task = asyncio.create_task(collect(consumer))

        await asyncio.sleep(0.05)
        assert not task.done()

        events_reader.feed_data(wire("num_lines 1"))
        events_reader.feed_eof()
        events = await asyncio.wait_for(task, timeout=1)
        assert of_type(events, NumLinesEvent)

    @pytest.mark.asyncio
    async def test_wire_exitstatus_takes_precedence(self):
        consumer = EventStreamConsumer(
            events=closed_reader(wire("exitstatus 5")),
            stdout=closed_reader(),
            stderr=closed_reader(),
        )
        consumer.process_exitstatus(0)

        events = await collect(consumer)
        assert of_type(events, ExitStatusEvent) == [ExitStatusEvent(value=5)]
        assert consumer.exitstatus == 5

    @pytest.mark.asyncio
    async def test_timeout(self):
        data = wire(f"result 1 {to_token('inspect')} {to_token('1')}")
        consumer = EventStreamConsumer(events=closed_reader(data), stdout=closed_reader(), stderr=closed_reader())
        consumer.process_timeout(2.5)

        events = await collect(consumer)
        assert of_type(events, TimeoutEvent) == [TimeoutEvent(seconds=2.5)]
        assert not of_type(events, ExitStatusEvent)
        assert of_type(events, LineResultEvent)
        assert consumer.exitstatus is None
        assert consumer.result.timed_out

    @pytest.mark.asyncio
    async def test_result_records_dispatched_events(self):
        consumer = EventStreamConsumer(
            events=closed_reader(wire("num_lines 2")),
            stdout=closed_reader(),
            stderr=closed_reader(),
        )
        consumer.process_exitstatus(0)

        events = await collect(consumer)
        assert consumer.result.events == events


class TestDrainGrace:
    """Test streams held open after the child is gone."""

    @pytest.mark.asyncio
    async def test_open_output_abandoned_after_event_stream_closes(self):
        stdout = asyncio.StreamReader()
        stdout.feed_data(b"partial")
        consumer = EventStreamConsumer(
            events=closed_reader(wire("num_lines 1")),
            stdout=stdout,
            stderr=closed_reader(),
            drain_grace=0.05,
        )
        consumer.process_exitstatus(0)

        events = await asyncio.wait_for(collect(consumer), timeout=2)
        assert joined_output(events) == "partial"
        assert of_type(events, StdoutClosedEvent)
        assert of_type(events, ExitStatusEvent) == [ExitStatusEvent(value=0)]
        assert isinstance(events[-1], FinishedEvent)
        await consumer.aclose()

    @pytest.mark.asyncio
    async def test_output_within_grace_is_kept(self):
        stdout = asyncio.StreamReader()
        consumer = EventStreamConsumer(
            events=closed_reader(),
            stdout=stdout,
            stderr=closed_reader(),
            drain_grace=5,
        )
        consumer.process_exitstatus(0)
        task = asyncio.create_task(collect(consumer))

        await asyncio.sleep(0.05)
        stdout.feed_data(b"late output")
        stdout.feed_eof()

        events = await asyncio.wait_for(task, timeout=2)
        assert joined_output(events) == "late output"

    @pytest.mark.asyncio
    async def test_timeout_abandons_open_event_stream(self):
        events_reader = asyncio.StreamReader()
        events_reader.feed_data(wire("num_lines 4"))
        consumer = EventStreamConsumer(
            events=events_reader,
            stdout=asyncio.StreamReader(),
            stderr=closed_reader(),
            drain_grace=0.05,
        )
        consumer.process_timeout(1)

        events = await asyncio.wait_for(collect(consumer), timeout=2)
        assert of_type(events, NumLinesEvent) == [NumLinesEvent(value=4)]
        assert of_type(events, EventStreamClosedEvent)
        assert consumer.exitstatus is None
        await consumer.aclose()

    @pytest.mark.asyncio
    async def test_exit_with_open_event_stream_keeps_waiting(self):
        events_reader = asyncio.StreamReader()
        consumer = EventStreamConsumer(
            events=events_reader,
            stdout=closed_reader(),
            stderr=closed_reader(),
            drain_grace=0.01,
        )
        consumer.process_exitstatus(0)
        task = asyncio.create_task(collect(consumer))

        await asyncio.sleep(0.1)
        assert not task.done()

        events_reader.feed_eof()
        await asyncio.wait_for(task, timeout=1)
