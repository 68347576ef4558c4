"""Moves a target file aside so a program can be evaluated in its place.

The backup lives next to the target under a fixed name
(``seeing_is_believing_backup.<basename>``). Because the name is not
randomized, an existing backup means an earlier run never cleaned up, and
the swap refuses to start rather than overwrite it.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from types import TracebackType

from .errors import EvaluationFilesystemError, TempFileAlreadyExists

__all__ = [
    "BackupState",
    "BackupSwap",
    "backup_filename_for",
]

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "seeing_is_believing_backup."


class BackupState(Enum):
    """Where the swap is in its lifecycle."""

    NO_PRIOR_FILE = "no_prior_file"
    BACKED_UP = "backed_up"
    RESTORED = "restored"


def backup_filename_for(filename: str | os.PathLike[str]) -> str:
    """Backup path for ``filename``."""
    directory, basename = os.path.split(os.fspath(filename))
    return os.path.join(directory, BACKUP_PREFIX + basename)


class BackupSwap:
    """Context manager that puts ``program`` at ``filename`` for its duration.

    On exit, however it is reached, the original file is renamed back into
    place, or the placeholder is deleted if there was no original.

    Example:
        with BackupSwap("/work/example.py", "print(1)\\n"):
            run_child("/work/example.py")
        # /work/example.py is back to its old content

    Attributes:
        filename: Target path
        backup_filename: Sibling path the original is moved to
        state: Current BackupState
    """

    def __init__(self, filename: str | os.PathLike[str], program: str, encoding: str = "utf-8") -> None:
        self.filename = os.fspath(filename)
        self.backup_filename = backup_filename_for(self.filename)
        self.program = program
        self.encoding = encoding
        self.state: BackupState | None = None

    def __enter__(self) -> "BackupSwap":
        if os.path.exists(self.backup_filename):
            raise TempFileAlreadyExists(self.filename, self.backup_filename)

        try:
            self._backup_existing_file()
            self._write_program()
        except BaseException:
            self.restore()
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.restore()

    def _backup_existing_file(self) -> None:
        if not os.path.exists(self.filename):
            self.state = BackupState.NO_PRIOR_FILE
            return
        try:
            os.rename(self.filename, self.backup_filename)
        except OSError as e:
            raise EvaluationFilesystemError(self.filename, f"could not back up: {e}") from e
        self.state = BackupState.BACKED_UP
        logger.debug(f"Backed up {self.filename} to {self.backup_filename}")

    def _write_program(self) -> None:
        try:
            Path(self.filename).write_text(self.program, encoding=self.encoding)
        except (OSError, UnicodeError) as e:
            raise EvaluationFilesystemError(self.filename, f"could not write program: {e}") from e

    def restore(self) -> None:
        """Undo the swap. Only the first call does anything."""
        state, self.state = self.state, BackupState.RESTORED
        if state is None or state is BackupState.RESTORED:
            return

        try:
            if state is BackupState.BACKED_UP:
                os.replace(self.backup_filename, self.filename)
                logger.debug(f"Restored {self.filename} from backup")
            else:
                Path(self.filename).unlink(missing_ok=True)
                logger.debug(f"Removed placeholder {self.filename}")
        except OSError as e:
            raise EvaluationFilesystemError(self.filename, f"could not restore: {e}") from e
