"""Evaluates a program by moving it into place and running it in a child.

The program is written over the target file (the original is moved aside
first), so the child sees the real path, directory and sibling files. The
child reports what it records over a local TCP connection, while its
stdout/stderr are captured through pipes.

Sequence for one run:
1. Refuse to start if the backup path is taken, back up the target, write
   the program in its place
2. Listen on an ephemeral port, start the child in its own process group
3. Accept the child's single event connection
4. Concurrently feed input, consume events/stdout/stderr, and wait for the
   child to exit (bounded by the timeout, which covers steps 3 and 4)
5. Tear down the child, streams and listener, then restore the target file
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
import math
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, NamedTuple

import anyio

from .backup import BackupSwap, backup_filename_for
from .errors import ChildLaunchError
from .event_stream.consumer import EventStreamConsumer
from .event_stream.tokens import RUN_VARIABLES_ENV, encode_run_variables
from .runtime.process_runner import (
    ProcessRunner,
    ProcessSpec,
    ProvidedInput,
    close_stdin,
    wait_for_exit,
)

__all__ = [
    "EvaluateByMovingFiles",
    "RunConfig",
    "call",
    "evaluate_by_moving_files",
]

logger = logging.getLogger(__name__)

# Module the child runs; it connects back and executes the target
CHILD_ENTRYPOINT = "seeing_is_believing.the_matrix"

# Directory holding this package, put on the child's PYTHONPATH
PACKAGE_PARENT_DIR = str(Path(__file__).resolve().parent.parent)

# Accepting the child's connection can trail the exit notification slightly
CONNECT_GRACE_SECONDS = 0.1


@dataclass(frozen=True)
class RunConfig:
    """Everything one run needs. Never mutated.

    Attributes:
        program: Source text to evaluate
        filename: Path the program is evaluated at
        event_handler: Called once per event, in order (may be async)
        encoding: Encoding for the program file and the child's stdio
        timeout_seconds: Kill the child after this long (0 = never)
        provided_input: Fed to the child's stdin (str, bytes, or an
            iterable/async iterable of chunks)
        load_path_dirs: Directories the child puts on sys.path
        require_modules: Modules the child imports before the program
        max_line_captures: Results recorded per (line, type); a
            non-negative int, or math.inf for no limit
    """

    program: str
    filename: str | os.PathLike[str]
    event_handler: Callable[[Any], Any]
    encoding: str = "utf-8"
    timeout_seconds: float = 0
    provided_input: ProvidedInput = ""
    load_path_dirs: tuple[str, ...] = ()
    require_modules: tuple[str, ...] = ()
    max_line_captures: int | float = math.inf

    def __post_init__(self) -> None:
        object.__setattr__(self, "filename", os.fspath(self.filename))
        object.__setattr__(self, "load_path_dirs", tuple(str(d) for d in self.load_path_dirs))
        object.__setattr__(self, "require_modules", tuple(self.require_modules))
        if self.timeout_seconds < 0:
            raise ValueError(f"timeout_seconds must be >= 0, got {self.timeout_seconds}")
        cap = self.max_line_captures
        if cap != math.inf and (isinstance(cap, bool) or not isinstance(cap, int) or cap < 0):
            raise ValueError(f"max_line_captures must be an int >= 0 or math.inf, got {cap!r}")

    @property
    def num_lines(self) -> int:
        return len(self.program.splitlines())


class EventConnection(NamedTuple):
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter


class EventServer:
    """Listening endpoint for the child's event stream.

    Accepts exactly one connection; any later ones are closed immediately.
    """

    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host
        self._server: asyncio.AbstractServer | None = None
        self._connection: asyncio.Future[EventConnection] | None = None

    async def start(self) -> int:
        """Start listening and return the OS-assigned port."""
        self._connection = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(self._on_connect, host=self.host, port=0)
        port = self._server.sockets[0].getsockname()[1]
        logger.debug(f"Event server listening on {self.host}:{port}")
        return port

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._connection is None or self._connection.done():
            logger.warning("Rejecting extra event stream connection")
            writer.close()
            return
        self._connection.set_result(EventConnection(reader, writer))

    async def accept(self, process: asyncio.subprocess.Process) -> EventConnection | None:
        """Wait for the child to connect.

        Returns None if the child exits without ever connecting.
        """
        if self._connection is None:
            raise RuntimeError("start() not called")
        exited = asyncio.ensure_future(wait_for_exit(process))
        try:
            await asyncio.wait({self._connection, exited}, return_when=asyncio.FIRST_COMPLETED)
            if not self._connection.done():
                await asyncio.wait({self._connection}, timeout=CONNECT_GRACE_SECONDS)
        finally:
            if not exited.done():
                exited.cancel()

        if self._connection.done():
            return self._connection.result()
        logger.debug(f"Child exited before connecting pid={process.pid}")
        return None

    async def close(self) -> None:
        if self._connection is not None:
            if self._connection.done() and not self._connection.cancelled():
                writer = self._connection.result().writer
                writer.close()
                try:
                    await writer.wait_closed()
                except (ConnectionError, OSError):
                    pass
            else:
                self._connection.cancel()

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()


class EvaluateByMovingFiles:
    """Runs one configured program and reports what it did.

    Example:
        config = RunConfig(
            program="print('hi')\\n",
            filename="/work/example.py",
            event_handler=events.append,
            timeout_seconds=5,
        )
        status = await EvaluateByMovingFiles(config).call()

    Attributes:
        config: The run configuration
        runner: Starts, feeds and kills the child
    """

    def __init__(self, config: RunConfig, runner: ProcessRunner | None = None) -> None:
        self.config = config
        self.runner = runner or ProcessRunner()

    @property
    def filename(self) -> str:
        return os.fspath(self.config.filename)

    @property
    def backup_filename(self) -> str:
        return backup_filename_for(self.filename)

    async def call(self) -> int | None:
        """Evaluate the program.

        Returns:
            The child's exit status, or None if it was killed for timing out

        Raises:
            TempFileAlreadyExists: If the backup path is already occupied
            EvaluationFilesystemError: If the target could not be swapped
            ChildLaunchError: If the child interpreter could not be started
        """
        with BackupSwap(self.filename, self.config.program, encoding=self.config.encoding):
            return await self._evaluate_file()

    # Child invocation

    def popen_args(self) -> list[str]:
        """Command line for the child interpreter."""
        load_path_flags = [flag for d in self.config.load_path_dirs for flag in ("-I", d)]
        require_flags = [flag for m in self.config.require_modules for flag in ("-r", m)]
        return [
            sys.executable,
            "-W", "ignore",  # child warnings would land in the captured stderr
            *(["-X", "utf8"] if self._is_utf8() else []),
            "-m", CHILD_ENTRYPOINT,
            *load_path_flags,
            *require_flags,
            self.filename,
        ]

    def child_env(self, event_stream_port: int) -> dict[str, str]:
        """Environment for the child: ours plus the run variables."""
        env = dict(os.environ)
        python_path = env.get("PYTHONPATH")
        env["PYTHONPATH"] = (
            PACKAGE_PARENT_DIR + os.pathsep + python_path if python_path else PACKAGE_PARENT_DIR
        )
        env["PYTHONIOENCODING"] = self.config.encoding
        env[RUN_VARIABLES_ENV] = encode_run_variables(
            {
                "event_stream_port": event_stream_port,
                "max_line_captures": self.config.max_line_captures,
                "num_lines": self.config.num_lines,
                "filename": self.filename,
            }
        )
        return env

    def _is_utf8(self) -> bool:
        try:
            return codecs.lookup(self.config.encoding).name == "utf-8"
        except LookupError:
            return False

    # Run

    def _deadline(self) -> float:
        if not self.config.timeout_seconds:
            return math.inf
        return anyio.current_time() + self.config.timeout_seconds

    async def _evaluate_file(self) -> int | None:
        server = EventServer()
        process: asyncio.subprocess.Process | None = None
        consumer: EventStreamConsumer | None = None
        feeder: asyncio.Task[None] | None = None
        dispatcher: asyncio.Task[None] | None = None

        try:
            port = await server.start()
            deadline = self._deadline()

            try:
                process = await self.runner.start(
                    ProcessSpec(argv=self.popen_args(), env=self.child_env(port))
                )
            except OSError as e:
                raise ChildLaunchError(f"Could not start {sys.executable}: {e}") from e

            connection: EventConnection | None = None
            with anyio.CancelScope(deadline=deadline):
                connection = await server.accept(process)

            consumer = EventStreamConsumer(
                events=connection.reader if connection else None,
                stdout=process.stdout,
                stderr=process.stderr,
                encoding=self.config.encoding,
            )
            feeder = asyncio.create_task(
                self.runner.feed_input(process, self.config.provided_input, self.config.encoding)
            )
            dispatcher = asyncio.create_task(self._dispatch_events(consumer))

            returncode: int | None = None
            with anyio.CancelScope(deadline=deadline):
                returncode = await wait_for_exit(process)

            if returncode is None:
                logger.debug(
                    f"Child timed out after {self.config.timeout_seconds}s pid={process.pid}"
                )
                consumer.process_timeout(self.config.timeout_seconds)
            else:
                consumer.process_exitstatus(returncode)
            # Hard kill on timeout; otherwise sweeps up leftover group members
            await self.runner.kill(process)

            await dispatcher
            return consumer.exitstatus

        finally:
            with anyio.CancelScope(shield=True):
                await self._teardown(server, process, consumer, feeder, dispatcher)

    async def _dispatch_events(self, consumer: EventStreamConsumer) -> None:
        handler = self.config.event_handler
        async for event in consumer:
            outcome = handler(event)
            if inspect.isawaitable(outcome):
                await outcome

    async def _teardown(
        self,
        server: EventServer,
        process: asyncio.subprocess.Process | None,
        consumer: EventStreamConsumer | None,
        feeder: asyncio.Task[None] | None,
        dispatcher: asyncio.Task[None] | None,
    ) -> None:
        for task in (feeder, dispatcher):
            await _finish_task(task)

        if consumer is not None:
            await consumer.aclose()

        if process is not None:
            if process.returncode is None:
                await self.runner.kill(process)
            close_stdin(process)

        try:
            await server.close()
        except Exception as e:
            logger.debug(f"Error closing event server: {e}")


async def _finish_task(task: asyncio.Task[None] | None) -> None:
    """Cancel a task if it is still running and collect its outcome."""
    if task is None:
        return
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Background task failed during teardown: {e}")


async def evaluate_by_moving_files(config: RunConfig) -> int | None:
    """Evaluate ``config.program`` at ``config.filename``; see EvaluateByMovingFiles."""
    return await EvaluateByMovingFiles(config).call()


def call(config: RunConfig) -> int | None:
    """Blocking wrapper around :func:`evaluate_by_moving_files`."""
    return asyncio.run(evaluate_by_moving_files(config))
