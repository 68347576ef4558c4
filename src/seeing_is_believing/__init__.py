"""seeing_is_believing - evaluate a program and report what each line did.

Runs an instrumented program in an isolated child process, in place of the
file it will eventually live at, and streams back captured results,
exceptions, stdout/stderr and the exit status as events.

Usage:
    from seeing_is_believing import RunConfig, call

    status = call(RunConfig(program=source, filename=path, event_handler=print))
"""

__version__ = "0.1.0"

import importlib
from typing import Any

from .errors import (
    ChildLaunchError,
    EvaluationFilesystemError,
    SeeingIsBelievingError,
    TempFileAlreadyExists,
)

# The child interpreter imports this package too; keep anyio/pydantic out of
# it until the orchestrator is actually used.
_LAZY_EXPORTS = {
    "EvaluateByMovingFiles": ".evaluate_by_moving_files",
    "RunConfig": ".evaluate_by_moving_files",
    "call": ".evaluate_by_moving_files",
}

__all__ = [
    "__version__",
    "ChildLaunchError",
    "EvaluateByMovingFiles",
    "EvaluationFilesystemError",
    "RunConfig",
    "SeeingIsBelievingError",
    "TempFileAlreadyExists",
    "call",
]


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module = importlib.import_module(_LAZY_EXPORTS[name], __name__)
        value = getattr(module, name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
