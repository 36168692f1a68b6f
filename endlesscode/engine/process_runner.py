"""Single-subprocess runner.

Owns one child process: its stdin, its stdout/stderr pipes and its
lifecycle state. stdout and stderr are exposed as independent
``OutputChannel``s of decoded text chunks. A chunk may hold several
lines or a partial line; consumers do their own line buffering.

Restarting is not this module's job; a runner runs exactly once.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from .errors import (
    ExecutableNotFoundError,
    ProcessAlreadyRunningError,
    ProcessNotRunningError,
    ProcessStartError,
    ProcessWriteError,
)

logger = logging.getLogger(__name__)

TERMINATE_POLL_INTERVAL = 0.1
TERMINATE_TIMEOUT = 5.0
READ_CHUNK_SIZE = 4096

CLAUDE_CLI_FLAGS = ("--print", "--output-format", "stream-json")


class ProcessStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATED = "terminated"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessState:
    status: ProcessStatus
    exit_code: int | None = None
    error: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    @property
    def is_finished(self) -> bool:
        return self.status in (ProcessStatus.TERMINATED, ProcessStatus.FAILED)

    def describe(self) -> str:
        if self.status is ProcessStatus.TERMINATED:
            return f"terminated({self.exit_code})"
        if self.status is ProcessStatus.FAILED:
            return f"failed({self.error})"
        return self.status.value


class OverflowPolicy(str, Enum):
    # Producer awaits free space: backpressure reaches the child's pipe.
    BLOCK = "block"
    # Oldest chunk is discarded: the producer never stalls.
    DROP_OLDEST = "drop_oldest"


class OutputChannel:
    """Bounded stream of text chunks with an explicit overflow policy.

    Iterate with ``async for`` or call ``receive()``; both end once the
    channel is closed and drained.
    """

    def __init__(
        self,
        name: str,
        maxsize: int = 1000,
        policy: OverflowPolicy = OverflowPolicy.BLOCK,
    ) -> None:
        self.name = name
        self.policy = policy
        self.dropped = 0
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, chunk: str) -> None:
        """Enqueue *chunk*; a no-op once closed (including while blocked)."""
        if self.policy is OverflowPolicy.DROP_OLDEST:
            while self._queue.full() and not self._closed:
                self._queue.get_nowait()
                self.dropped += 1
        else:
            while self._queue.full() and not self._closed:
                self._writable.clear()
                await self._writable.wait()
        if self._closed:
            return
        self._queue.put_nowait(chunk)
        self._readable.set()

    def close(self) -> None:
        self._closed = True
        self._readable.set()
        self._writable.set()

    async def receive(self) -> str | None:
        """Next chunk, or None once closed and empty."""
        while True:
            if not self._queue.empty():
                chunk = self._queue.get_nowait()
                self._writable.set()
                return chunk
            if self._closed:
                return None
            self._readable.clear()
            await self._readable.wait()

    def __aiter__(self) -> OutputChannel:
        return self

    async def __anext__(self) -> str:
        chunk = await self.receive()
        if chunk is None:
            raise StopAsyncIteration
        return chunk


class ProcessRunner:
    """Runs one subprocess and tracks its state.

    ``state`` is only ever written from inside the runner.
    """

    def __init__(
        self,
        executable_path: str,
        arguments: Sequence[str] = (),
        environment: Mapping[str, str] | None = None,
        working_directory: str | None = None,
        output_queue_size: int = 1000,
    ) -> None:
        self.executable_path = executable_path
        self.arguments = list(arguments)
        self.environment = dict(environment or {})
        self.working_directory = working_directory
        self.stdout = OutputChannel("stdout", output_queue_size, OverflowPolicy.BLOCK)
        self.stderr = OutputChannel("stderr", output_queue_size, OverflowPolicy.DROP_OLDEST)
        self._state = ProcessState(ProcessStatus.IDLE)
        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []
        self._monitor_task: asyncio.Task | None = None

    @classmethod
    def for_claude_cli(
        cls,
        cli_path: str,
        project_path: str,
        session_id: str | None = None,
        resume: bool = False,
        output_queue_size: int = 1000,
    ) -> ProcessRunner:
        arguments = list(CLAUDE_CLI_FLAGS)
        if session_id and resume:
            arguments += ["--resume", session_id]
        return cls(
            executable_path=cli_path,
            arguments=arguments,
            working_directory=project_path,
            output_queue_size=output_queue_size,
        )

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def _resolve_executable(self) -> str:
        path = self.executable_path
        if os.sep in path or (os.altsep and os.altsep in path):
            path = os.path.expanduser(path)
            if not os.path.exists(path):
                raise ExecutableNotFoundError(path)
            return path
        resolved = shutil.which(path)
        if resolved is None:
            raise ExecutableNotFoundError(path)
        return resolved

    async def start(self) -> None:
        if self._state.status is not ProcessStatus.IDLE:
            raise ProcessAlreadyRunningError(self._state.describe())
        executable = self._resolve_executable()

        env = os.environ.copy()
        env.update(self.environment)
        try:
            self._process = await asyncio.create_subprocess_exec(
                executable,
                *self.arguments,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_directory,
                env=env,
            )
        except OSError as exc:
            self._state = ProcessState(ProcessStatus.FAILED, error=str(exc))
            logger.error("Failed to spawn %s: %s", executable, exc)
            raise ProcessStartError(str(exc)) from exc

        self._state = ProcessState(ProcessStatus.RUNNING)
        logger.info(
            "Started process pid=%s exe=%s args=%s cwd=%s",
            self._process.pid, executable, self.arguments,
            self.working_directory,
        )
        self._readers = [
            asyncio.create_task(self._pump(self._process.stdout, self.stdout)),
            asyncio.create_task(self._pump(self._process.stderr, self.stderr)),
        ]
        self._monitor_task = asyncio.create_task(self._monitor(self._process))

    async def _pump(
        self, stream: asyncio.StreamReader | None, channel: OutputChannel
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await channel.put(tail)
                return
            text = decoder.decode(data)
            if text:
                await channel.put(text)

    async def _monitor(self, process: asyncio.subprocess.Process) -> None:
        try:
            exit_code = await process.wait()
            self._state = ProcessState(ProcessStatus.TERMINATED, exit_code=exit_code)
            logger.info("Process pid=%s exited with code %s", process.pid, exit_code)
            # Remaining buffered output is still delivered before close.
            await asyncio.gather(*self._readers, return_exceptions=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Process monitor for pid=%s failed", process.pid)
            self._state = ProcessState(ProcessStatus.FAILED, error=str(exc))
        finally:
            self.stdout.close()
            self.stderr.close()
            if self.stderr.dropped:
                logger.warning(
                    "pid=%s dropped %d stderr chunk(s) under backpressure",
                    process.pid, self.stderr.dropped,
                )

    async def write(self, text: str) -> None:
        process = self._process
        if not self._state.is_running or process is None or process.stdin is None:
            raise ProcessNotRunningError(self._state.describe())
        try:
            process.stdin.write(text.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ProcessWriteError(f"pipe closed: {exc}") from exc
        except OSError as exc:
            raise ProcessWriteError(str(exc)) from exc

    async def write_line(self, text: str) -> None:
        await self.write(text if text.endswith("\n") else text + "\n")

    async def terminate(self) -> None:
        """SIGTERM, poll for exit, then SIGKILL after TERMINATE_TIMEOUT."""
        process = self._process
        if process is None:
            return
        # Unblock readers stuck on a full channel; they discard the rest of
        # the pipe so it reaches EOF and the monitor's wait() can return.
        self.stdout.close()
        self.stderr.close()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            if not await self._poll_exit(process):
                logger.warning(
                    "pid=%s ignored SIGTERM for %.1fs, killing",
                    process.pid, TERMINATE_TIMEOUT,
                )
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await self._poll_exit(process)

        if self._monitor_task is None:
            return
        _, pending = await asyncio.wait({self._monitor_task}, timeout=TERMINATE_TIMEOUT)
        if pending:
            # A grandchild still holds the pipes open.
            logger.warning("pid=%s pipes still open after exit; abandoning readers", process.pid)
            for task in (*self._readers, self._monitor_task):
                task.cancel()
            await asyncio.wait({*self._readers, self._monitor_task})
            if not self._state.is_finished:
                self._state = ProcessState(
                    ProcessStatus.TERMINATED, exit_code=process.returncode
                )

    @staticmethod
    async def _poll_exit(process: asyncio.subprocess.Process) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + TERMINATE_TIMEOUT
        while process.returncode is None and loop.time() < deadline:
            await asyncio.sleep(TERMINATE_POLL_INTERVAL)
        return process.returncode is not None
