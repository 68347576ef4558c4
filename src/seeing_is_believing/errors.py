"""Exception hierarchy for seeing_is_believing.

Setup conflicts and filesystem failures abort a run and reach the caller.
Everything that goes wrong inside the user's program is reported as events
and exit status instead.
"""

from __future__ import annotations

__all__ = [
    "SeeingIsBelievingError",
    "TempFileAlreadyExists",
    "EvaluationFilesystemError",
    "ChildLaunchError",
    "ProtocolViolation",
    "RenderingStackExhausted",
]


class SeeingIsBelievingError(Exception):
    """Base exception for this package."""
    pass


class TempFileAlreadyExists(SeeingIsBelievingError):
    """The backup path for a target file is already occupied.

    Usually left behind by a run whose cleanup was interrupted. Nothing on
    disk has been touched when this is raised.

    Attributes:
        filename: The target file
        backup_filename: The occupied backup path
    """

    def __init__(self, filename: str, backup_filename: str) -> None:
        self.filename = filename
        self.backup_filename = backup_filename
        super().__init__(
            f"Trying to back up {filename!r} (so it can be evaluated in its place), "
            f"but the backup location {backup_filename!r} already exists. "
            "Move or delete it if it is not needed."
        )


class EvaluationFilesystemError(SeeingIsBelievingError):
    """Writing, renaming or deleting the target file failed.

    Attributes:
        filename: The path the operation was acting on
    """

    def __init__(self, filename: str, message: str) -> None:
        self.filename = filename
        super().__init__(f"{filename}: {message}")


class ChildLaunchError(SeeingIsBelievingError):
    """The child interpreter could not be started."""
    pass


class ProtocolViolation(SeeingIsBelievingError):
    """A line on the event stream could not be parsed.

    Attributes:
        line: The offending wire line (decoded leniently)
    """

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line!r}")


class RenderingStackExhausted(SeeingIsBelievingError, RecursionError):
    """Rendering a captured value overflowed the stack.

    Raised from inside the recorder so the traceback points at the user's
    value (usually a recursive ``__repr__``) rather than at the recorder.
    """
    pass
