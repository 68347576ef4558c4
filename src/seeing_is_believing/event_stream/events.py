"""Typed events dispatched to the caller's event handler.

Every event is a frozen pydantic model tagged by ``event_name``. Events that
come off the wire keep the order the child produced them in; stdout/stderr
chunks and lifecycle events (closed streams, exit status, timeout) are
interleaved on a best-effort basis.
"""

from __future__ import annotations

import math
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "EventBase",
    "StdoutEvent",
    "StderrEvent",
    "SiBVersionEvent",
    "RuntimeVersionEvent",
    "FilenameEvent",
    "NumLinesEvent",
    "MaxLineCapturesEvent",
    "LineResultEvent",
    "ResultsTruncatedEvent",
    "ExceptionEvent",
    "ExitStatusEvent",
    "TimeoutEvent",
    "StdoutClosedEvent",
    "StderrClosedEvent",
    "EventStreamClosedEvent",
    "FinishedEvent",
    "ProtocolViolationEvent",
    "Event",
]


class EventBase(BaseModel):
    """Base class for all events."""

    model_config = ConfigDict(frozen=True, extra="ignore")


# Process output passthrough


class StdoutEvent(EventBase):
    event_name: Literal["stdout"] = "stdout"
    value: str


class StderrEvent(EventBase):
    event_name: Literal["stderr"] = "stderr"
    value: str


# Facts recorded by the child


class SiBVersionEvent(EventBase):
    event_name: Literal["sib_version"] = "sib_version"
    value: str


class RuntimeVersionEvent(EventBase):
    """Version of the interpreter the child runs under."""

    event_name: Literal["runtime_version"] = "runtime_version"
    value: str


class FilenameEvent(EventBase):
    event_name: Literal["filename"] = "filename"
    value: str


class NumLinesEvent(EventBase):
    """Highest line the child saw (or the source's line count, if larger)."""

    event_name: Literal["num_lines"] = "num_lines"
    value: int


class MaxLineCapturesEvent(EventBase):
    """Cap on results per (line, type); ``math.inf`` when unlimited."""

    event_name: Literal["max_line_captures"] = "max_line_captures"
    value: float = math.inf

    @property
    def is_infinite(self) -> bool:
        return math.isinf(self.value)


class LineResultEvent(EventBase):
    """A value captured on a line.

    Attributes:
        type: Capture kind chosen by the instrumentation (e.g. ``"inspect"``)
        line_number: 1-based source line
        inspected: Rendered value, or the "no repr available" marker
    """

    event_name: Literal["line_result"] = "line_result"
    type: str
    line_number: int
    inspected: str


class ResultsTruncatedEvent(EventBase):
    """The capture cap was hit for this (line, type); later values are dropped."""

    event_name: Literal["results_truncated"] = "results_truncated"
    type: str
    line_number: int


class ExceptionEvent(EventBase):
    """An exception recorded by the child.

    ``line_number`` is -1 when it could not be attributed to the target file.
    ``backtrace`` is innermost frame first.
    """

    event_name: Literal["exception"] = "exception"
    line_number: int
    class_name: str
    message: str
    backtrace: tuple[str, ...] = ()


# Lifecycle


class ExitStatusEvent(EventBase):
    event_name: Literal["exitstatus"] = "exitstatus"
    value: int


class TimeoutEvent(EventBase):
    """The child outlived its timeout and was killed."""

    event_name: Literal["timeout"] = "timeout"
    seconds: float


class StdoutClosedEvent(EventBase):
    event_name: Literal["stdout_closed"] = "stdout_closed"


class StderrClosedEvent(EventBase):
    event_name: Literal["stderr_closed"] = "stderr_closed"


class EventStreamClosedEvent(EventBase):
    event_name: Literal["event_stream_closed"] = "event_stream_closed"


class FinishedEvent(EventBase):
    """Always the last event of a run."""

    event_name: Literal["finished"] = "finished"


class ProtocolViolationEvent(EventBase):
    """A wire line that was malformed or used an unknown keyword.

    The line is skipped; the rest of the stream is still consumed.
    """

    event_name: Literal["protocol_violation"] = "protocol_violation"
    line: str
    reason: str


Event = Annotated[
    Union[
        StdoutEvent,
        StderrEvent,
        SiBVersionEvent,
        RuntimeVersionEvent,
        FilenameEvent,
        NumLinesEvent,
        MaxLineCapturesEvent,
        LineResultEvent,
        ResultsTruncatedEvent,
        ExceptionEvent,
        ExitStatusEvent,
        TimeoutEvent,
        StdoutClosedEvent,
        StderrClosedEvent,
        EventStreamClosedEvent,
        FinishedEvent,
        ProtocolViolationEvent,
    ],
    Field(discriminator="event_name"),
]
