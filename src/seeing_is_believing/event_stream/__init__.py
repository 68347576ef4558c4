"""Event stream between the child process and the orchestrator.

The child writes wire messages with ``EventStreamProducer``; the parent reads
them back, together with the child's stdout/stderr, with
``EventStreamConsumer``.

Submodules are imported on first use: the child only needs the producer and
must not pull the parent's dependencies into the program it runs.
"""

from __future__ import annotations

import importlib
from typing import Any

__all__ = [
    "EventStreamConsumer",
    "EventStreamProducer",
    "RunResult",
]

_LAZY_EXPORTS = {
    "EventStreamConsumer": ".consumer",
    "RunResult": ".consumer",
    "EventStreamProducer": ".producer",
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module = importlib.import_module(_LAZY_EXPORTS[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
