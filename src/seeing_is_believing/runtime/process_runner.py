"""Process runner with process-group isolation and hard termination.

This module provides:
- Launching the child as a process group leader with piped stdio
- Feeding provided input to the child incrementally
- Killing the child's whole process group (no graceful phase)

Key design points:
- POSIX: start_new_session=True makes the child its own group leader
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- asyncio closes the parent's copies of the child's pipe ends after spawn,
  so the read ends see EOF as soon as every writer is gone
- process.wait() also waits for those pipes to close, which a background
  descendant can delay forever; wait_for_exit only waits for the child
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

import anyio

__all__ = [
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
    "ProvidedInput",
    "close_stdin",
    "wait_for_exit",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Seconds to wait for the child to be reaped after SIGKILL
DEFAULT_KILL_TIMEOUT = 1.0

# How often wait_for_exit checks whether the child is gone
EXIT_POLL_INTERVAL = 0.01

_EXHAUSTED = object()

ProvidedInput = Union[str, bytes, Iterable[Union[str, bytes]], AsyncIterable[Union[str, bytes]]]


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        env: Environment variables (None = inherit parent)
    """

    argv: list[str]
    env: Mapping[str, str] | None = None


@dataclass
class ProcessRunner:
    """Starts, feeds and kills isolated child processes.

    Example:
        runner = ProcessRunner()
        process = await runner.start(ProcessSpec(argv=["cat"]))
        await runner.feed_input(process, "hello", encoding="utf-8")
        await process.wait()
    """

    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def start(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the subprocess in its own process group with piped stdio.

        Raises:
            OSError: If the executable could not be spawned
        """
        kwargs = self._build_subprocess_kwargs(spec)
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )
        logger.debug(f"Started subprocess pid={process.pid} argv={spec.argv}")
        return process

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def feed_input(
        self,
        process: asyncio.subprocess.Process,
        provided_input: ProvidedInput,
        encoding: str = "utf-8",
    ) -> None:
        """Write ``provided_input`` to the child's stdin, then close it.

        Strings and bytes are written a character/byte at a time and
        iterables a chunk at a time, since the input may itself be a live
        stream. A child that exits without reading its input is not an error.
        """
        stdin = process.stdin
        if stdin is None:
            return

        try:
            async for unit in _iter_input(provided_input):
                data = unit.encode(encoding) if isinstance(unit, str) else bytes(unit)
                if not data:
                    continue
                stdin.write(data)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Child stopped reading stdin pid={process.pid}: {e}")
        finally:
            close_stdin(process)

    async def kill(self, process: asyncio.subprocess.Process) -> None:
        """SIGKILL the child's process group and wait for the child to be reaped.

        Also sweeps up group members left behind by a child that has already
        exited. Failures to find or signal the processes are ignored.
        """
        pid = process.pid
        try:
            if IS_WINDOWS:
                if process.returncode is None:
                    process.kill()
            else:
                self._posix_kill(process)

            if process.returncode is None:
                with anyio.move_on_after(self.kill_timeout):
                    await wait_for_exit(process)
                if process.returncode is None:
                    logger.warning(f"Subprocess did not exit after kill pid={pid}")
                else:
                    logger.debug(f"Subprocess killed pid={pid} returncode={process.returncode}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error killing subprocess pid={pid}: {e}")

    def _posix_kill(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGKILL to the process group on POSIX systems.

        The group id equals the child's pid (start_new_session), and stays
        valid after the child exits as long as other members remain.
        """
        try:
            os.killpg(process.pid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={process.pid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            if process.returncode is None:
                process.kill()


async def wait_for_exit(process: asyncio.subprocess.Process) -> int:
    """Wait for the child itself to exit and return its exit code.

    Returns as soon as the child is reaped, even if descendants still hold
    its stdout/stderr open.
    """
    while process.returncode is None:
        await anyio.sleep(EXIT_POLL_INTERVAL)
    return process.returncode


def close_stdin(process: asyncio.subprocess.Process) -> None:
    """Close the child's stdin if it is still open."""
    stdin = process.stdin
    if stdin is None or stdin.is_closing():
        return
    try:
        stdin.close()
    except (BrokenPipeError, ConnectionResetError):
        pass


async def _iter_input(provided_input: ProvidedInput) -> AsyncIterable[str | bytes]:
    if isinstance(provided_input, str):
        for char in provided_input:
            yield char
    elif isinstance(provided_input, (bytes, bytearray, memoryview)):
        for byte in bytes(provided_input):
            yield bytes((byte,))
    elif isinstance(provided_input, AsyncIterable):
        async for chunk in provided_input:
            yield chunk
    else:
        # Plain iterables may block (e.g. reading a pipe), so pull them off-loop
        iterator = iter(provided_input)
        while True:
            chunk = await anyio.to_thread.run_sync(
                next, iterator, _EXHAUSTED, abandon_on_cancel=True
            )
            if chunk is _EXHAUSTED:
                return
            yield chunk
