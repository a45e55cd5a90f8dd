"""Process execution engine.

Spawns a command through the configured shell in its own process group,
streams merged stdout/stderr as ``ShellOutputEvent``s, enforces the
inactivity timeout, terminates the whole group on cancellation and can
detach a running command into the background.

Example:
    service = ShellExecutionService()
    handle = await service.execute("ls -la", cwd, on_event=print)
    result = await handle.result
"""

import asyncio
import codecs
import contextlib
import os
import re
import secrets
import signal
import subprocess
import sys
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from agentic_shell.logging import Loggers
from agentic_shell.tools.registry import ErrorCode, ToolError
from agentic_shell.tools.shell.cancellation import CancellationToken, InactivityTimer
from agentic_shell.tools.shell.models import (
    BinaryDetectedEvent,
    BinaryProgressEvent,
    DataEvent,
    ExitEvent,
    ShellExecutionResult,
    ShellOutputEvent,
    TerminationCause,
)
from agentic_shell.tools.shell.profiles import (
    POSIX_SHELL_TYPES,
    ShellConfiguration,
    get_default_shell_configuration,
)
from agentic_shell.tools.shell.tokenizer import build_pid_report_wrapper, get_tokenizer

logger = Loggers.execution()

BACKGROUND_DELAY_MS = 200
OUTPUT_UPDATE_INTERVAL_MS = 1000
KILL_GRACE_MS = 200
OUTPUT_SETTLE_MS = 200
READ_CHUNK_SIZE = 4096
EXIT_POLL_INTERVAL_MS = 20
BINARY_SNIFF_BYTES = 4096

_PID_LINE = re.compile(r"^\d+$")

EventCallback = Callable[[ShellOutputEvent], None]


class UnhandledEventError(ToolError):
    """An output event of a kind the consumer does not know."""

    def __init__(self, event: object):
        super().__init__(
            f"An unhandled shell output event was found: {type(event).__name__}",
            error_code=ErrorCode.INTERNAL_ERROR,
            details={"event": repr(event)},
        )


def format_bytes(num_bytes: int) -> str:
    """Human-readable byte count, e.g. ``"1.5 KB"``."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    if num_bytes < 1024 * 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f} MB"
    return f"{num_bytes / (1024 * 1024 * 1024):.1f} GB"


def binary_output_marker(num_bytes: int) -> str:
    return f"[Binary output detected: {format_bytes(num_bytes)} received]"


async def wait_for_exit(process: asyncio.subprocess.Process) -> int:
    """Wait until the process itself has exited.

    Unlike ``Process.wait()`` this does not also wait for the output pipe
    to close, which children started with ``&`` keep open.
    """
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_INTERVAL_MS / 1000)
    return process.returncode


@dataclass
class ShellExecutionConfig:
    """Per-run execution settings.

    Attributes:
        shell: Invocation recipe.
        inactivity_timeout_ms: Cancel after this long without output (<= 0 disables).
        is_background: Detach after ``background_delay_ms``.
        background_delay_ms: Grace period before detaching.
        binary_progress_interval_ms: Minimum spacing of binary progress events.
        kill_grace_ms: Wait between SIGTERM and SIGKILL.
        env: Extra environment variables.
        pager: Pager forced for the child (avoids interactive pagers).
        discover_background_pids: Report pids left in the process group.
    """

    shell: ShellConfiguration = field(default_factory=get_default_shell_configuration)
    inactivity_timeout_ms: int = 300_000
    is_background: bool = False
    background_delay_ms: int = BACKGROUND_DELAY_MS
    binary_progress_interval_ms: int = OUTPUT_UPDATE_INTERVAL_MS
    kill_grace_ms: int = KILL_GRACE_MS
    env: Mapping[str, str] | None = None
    pager: str = "cat"
    discover_background_pids: bool = True


@dataclass
class ShellExecutionHandle:
    """A started run.

    Attributes:
        pid: Process id (and process-group id on POSIX); None if spawn failed.
        result: Task resolving to the final ShellExecutionResult.
        executed_command: The command text actually given to the shell.
    """

    pid: int | None
    result: "asyncio.Task[ShellExecutionResult]"
    executed_command: str


# =============================================================================
# Backends
# =============================================================================


class ExecutionBackend(ABC):
    """Platform-specific process spawning and termination."""

    #: Whether pids left in the process group can be enumerated via pgrep
    supports_pid_discovery: bool = False

    @abstractmethod
    async def spawn(
        self, argv: list[str], cwd: Path, env: Mapping[str, str]
    ) -> asyncio.subprocess.Process:
        """Start ``argv`` as the leader of a new process group."""

    @abstractmethod
    async def terminate(self, process: asyncio.subprocess.Process, grace_seconds: float) -> None:
        """Terminate the process and everything in its group."""


class PosixBackend(ExecutionBackend):
    """New session per command; the group is signaled with killpg."""

    supports_pid_discovery = True

    async def spawn(
        self, argv: list[str], cwd: Path, env: Mapping[str, str]
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )

    async def terminate(self, process: asyncio.subprocess.Process, grace_seconds: float) -> None:
        """SIGTERM the group, then SIGKILL it if the leader is still alive."""
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, signal.SIGTERM)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(wait_for_exit(process), timeout=grace_seconds)

        # Children may outlive the leader; the group id stays valid while they run
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(wait_for_exit(process), timeout=grace_seconds)


class WindowsBackend(ExecutionBackend):
    """New process group per command; the tree is killed with taskkill."""

    supports_pid_discovery = False

    async def spawn(
        self, argv: list[str], cwd: Path, env: Mapping[str, str]
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            creationflags=getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0),
        )

    async def terminate(self, process: asyncio.subprocess.Process, grace_seconds: float) -> None:
        if process.returncode is not None:
            return
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/pid", str(process.pid), "/T", "/F",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await killer.wait()
        except OSError as e:
            logger.warning("taskkill_failed", pid=process.pid, error=str(e))
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(wait_for_exit(process), timeout=grace_seconds)


def default_backend() -> ExecutionBackend:
    """Backend for the current platform."""
    if sys.platform == "win32":
        return WindowsBackend()
    return PosixBackend()


# =============================================================================
# Engine
# =============================================================================


class ShellExecutionService:
    """Runs shell commands and tracks the ones still attached."""

    def __init__(self, backend: ExecutionBackend | None = None):
        self.backend = backend or default_backend()
        self._active: dict[int, "_ShellRun"] = {}
        self._detached_tasks: set[asyncio.Task] = set()

    async def execute(
        self,
        command: str,
        cwd: Path | str,
        on_event: EventCallback,
        cancellation: CancellationToken | None = None,
        config: ShellExecutionConfig | None = None,
    ) -> ShellExecutionHandle:
        """Start ``command`` and return once it has been spawned.

        Args:
            command: Command text, without any shell wrapper.
            cwd: Working directory.
            on_event: Receives output events in the order produced.
            cancellation: Caller's cancellation token.
            config: Execution settings.

        Returns:
            Handle with the pid and a task for the final result. Spawn
            failures are reported through the result, never raised.
        """
        run = _ShellRun(
            service=self,
            command=command,
            cwd=Path(cwd),
            on_event=on_event,
            cancellation=cancellation,
            config=config or ShellExecutionConfig(),
        )
        pid = await run.start()
        if pid is not None:
            self._active[pid] = run
        task = asyncio.create_task(run.wait(), name=f"shell-run-{pid}")
        return ShellExecutionHandle(pid=pid, result=task, executed_command=run.executed_command)

    def background(self, pid: int) -> bool:
        """Detach a running command.

        Returns:
            False if no attached run has this pid.
        """
        run = self._active.get(pid)
        if run is None:
            return False
        run.request_background()
        return True

    def is_active(self, pid: int) -> bool:
        return pid in self._active

    async def wait_detached(self, timeout: float | None = None) -> None:
        """Wait for detached runs to finish draining their output."""
        if self._detached_tasks:
            await asyncio.wait(set(self._detached_tasks), timeout=timeout)

    def _release(self, pid: int | None) -> None:
        if pid is not None:
            self._active.pop(pid, None)

    def _track_detached(self, task: asyncio.Task) -> None:
        self._detached_tasks.add(task)
        task.add_done_callback(self._detached_done)

    def _detached_done(self, task: asyncio.Task) -> None:
        self._detached_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("detached_drain_failed", task=task.get_name(), error=str(error))


class _ShellRun:
    """State of a single process run."""

    def __init__(
        self,
        service: ShellExecutionService,
        command: str,
        cwd: Path,
        on_event: EventCallback,
        cancellation: CancellationToken | None,
        config: ShellExecutionConfig,
    ):
        self.service = service
        self.backend = service.backend
        self.command = command
        self.cwd = cwd
        self.on_event = on_event
        self.cancellation = cancellation
        self.config = config

        self.pid_file: Path | None = None
        if (
            config.discover_background_pids
            and self.backend.supports_pid_discovery
            and config.shell.shell in POSIX_SHELL_TYPES
        ):
            self.pid_file = Path(tempfile.gettempdir()) / f"shell_pgrep_{secrets.token_hex(6)}.tmp"
            self.executed_command = build_pid_report_wrapper(command, str(self.pid_file))
        else:
            self.executed_command = command

        self.process: asyncio.subprocess.Process | None = None
        self.spawn_error: OSError | None = None

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._text_parts: list[str] = []
        self._raw = bytearray()
        self._sniffed = 0
        self._is_binary = False
        self._last_progress = 0.0
        self._detached = False
        self._timer = InactivityTimer(config.inactivity_timeout_ms)
        self._background_requested = asyncio.Event()

    async def start(self) -> int | None:
        env = {
            **os.environ,
            **(self.config.env or {}),
            "PAGER": self.config.pager,
            "GIT_PAGER": self.config.pager,
        }
        argv = self.config.shell.build_argv(self.executed_command)
        try:
            self.process = await self.backend.spawn(argv, self.cwd, env)
        except OSError as e:
            logger.error("spawn_failed", command=self.command, error=str(e))
            self.spawn_error = e
            return None
        logger.debug("spawned", pid=self.process.pid, command=self.command, cwd=str(self.cwd))
        return self.process.pid

    def request_background(self) -> None:
        self._background_requested.set()

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def _emit(self, event: ShellOutputEvent) -> None:
        self.on_event(event)

    def _handle_chunk(self, chunk: bytes) -> None:
        if self._detached:
            return
        self._raw.extend(chunk)

        if not self._is_binary and self._sniffed < BINARY_SNIFF_BYTES:
            window = chunk[: BINARY_SNIFF_BYTES - self._sniffed]
            self._sniffed += len(window)
            if b"\x00" in window:
                self._is_binary = True
                self._emit(BinaryDetectedEvent())

        if self._is_binary:
            now = asyncio.get_running_loop().time()
            if (now - self._last_progress) * 1000 >= self.config.binary_progress_interval_ms:
                self._last_progress = now
                self._emit(BinaryProgressEvent(bytes_received=len(self._raw)))
        else:
            text = self._decoder.decode(chunk)
            if text:
                self._text_parts.append(text)
                self._emit(DataEvent(chunk=text))

        # Reset strictly after delivery
        self._timer.reset()

    async def _read_output(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        stream = self.process.stdout
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._handle_chunk(chunk)

        if not self._is_binary and not self._detached:
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._text_parts.append(tail)
                self._emit(DataEvent(chunk=tail))

    @property
    def output(self) -> str:
        if self._is_binary:
            return binary_output_marker(len(self._raw))
        return "".join(self._text_parts)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def wait(self) -> ShellExecutionResult:
        if self.process is None:
            self._remove_pid_file()
            return ShellExecutionResult(
                output="",
                exit_code=None,
                cause=TerminationCause.SPAWN_ERROR,
                error=self.spawn_error,
            )

        process = self.process
        loop = asyncio.get_running_loop()
        merged = CancellationToken.any_of(self.cancellation, self._timer.token)
        reader = asyncio.create_task(self._read_output())
        exit_waiter = asyncio.create_task(wait_for_exit(process))
        cancel_waiter = asyncio.create_task(merged.wait())
        background_waiter = asyncio.create_task(self._background_requested.wait())
        background_timer = None
        if self.config.is_background:
            background_timer = loop.call_later(
                self.config.background_delay_ms / 1000, self.request_background
            )

        self._timer.start()
        try:
            done, _ = await asyncio.wait(
                {exit_waiter, cancel_waiter, background_waiter, reader},
                return_when=asyncio.FIRST_COMPLETED,
            )
            while done == {reader} and reader.exception() is None:
                # EOF before exit: keep waiting for the process itself
                done, _ = await asyncio.wait(
                    {exit_waiter, cancel_waiter, background_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            if reader.done() and reader.exception() is not None:
                await self.backend.terminate(process, self.config.kill_grace_ms / 1000)
                raise reader.exception()

            if exit_waiter in done:
                return await self._finish_exited(reader)
            if cancel_waiter in done:
                return await self._finish_cancelled(merged, reader)
            return self._finish_backgrounded(reader, exit_waiter)
        finally:
            if background_timer is not None:
                background_timer.cancel()
            self._timer.cancel()
            merged.close()
            for task in (cancel_waiter, background_waiter):
                task.cancel()
            if exit_waiter.done() or not self._detached:
                exit_waiter.cancel()
            if not self._detached:
                reader.cancel()
            self.service._release(process.pid)

    async def _finish_exited(self, reader: asyncio.Task) -> ShellExecutionResult:
        process = self.process
        assert process is not None
        grace = OUTPUT_SETTLE_MS / 1000

        # Children started with & may keep the pipe open after the shell exits
        detached_reader = False
        try:
            await asyncio.wait_for(asyncio.shield(reader), timeout=grace)
        except asyncio.TimeoutError:
            detached_reader = True

        background_pids = self._collect_background_pids(aborted=False, backgrounded=False)

        if detached_reader:
            self._detach(reader, None)
            if background_pids and self._is_top_level_background_job():
                logger.info("implicitly_backgrounded", pid=process.pid, background_pids=background_pids)
                return self._result(
                    TerminationCause.BACKGROUNDED, exit_code=None, background_pids=background_pids
                )

        returncode = process.returncode
        if returncode is not None and returncode < 0:
            signal_name = _signal_name(-returncode)
            self._emit(ExitEvent(exit_code=None, signal=signal_name))
            return self._result(
                TerminationCause.SIGNALED,
                exit_code=None,
                signal=signal_name,
                background_pids=background_pids,
            )

        self._emit(ExitEvent(exit_code=returncode))
        logger.debug("exited", pid=process.pid, exit_code=returncode)
        return self._result(
            TerminationCause.EXITED, exit_code=returncode, background_pids=background_pids
        )

    async def _finish_cancelled(
        self, merged: CancellationToken, reader: asyncio.Task
    ) -> ShellExecutionResult:
        process = self.process
        assert process is not None
        fired = getattr(merged, "fired_source", None)
        cause = (
            TerminationCause.TIMED_OUT
            if fired is self._timer.token
            else TerminationCause.CANCELLED
        )
        logger.info("terminating", pid=process.pid, cause=cause.value)

        grace = self.config.kill_grace_ms / 1000
        await self.backend.terminate(process, grace)
        await _finalize_reader(reader, timeout=grace)
        self._collect_background_pids(aborted=True, backgrounded=False)

        returncode = process.returncode
        signal_name = _signal_name(-returncode) if returncode is not None and returncode < 0 else None
        self._emit(ExitEvent(exit_code=None, signal=signal_name))
        return self._result(cause, exit_code=None)

    def _finish_backgrounded(
        self, reader: asyncio.Task, exit_waiter: asyncio.Task
    ) -> ShellExecutionResult:
        assert self.process is not None
        logger.info("backgrounded", pid=self.process.pid)
        self._detach(reader, exit_waiter)
        return self._result(TerminationCause.BACKGROUNDED, exit_code=None)

    def _detach(self, reader: asyncio.Task, exit_waiter: asyncio.Task | None) -> None:
        """Stop tracking output; keep draining the pipe so the child never blocks."""
        self._detached = True
        self._timer.cancel()
        pid = self.process.pid if self.process else None
        self.service._track_detached(
            asyncio.create_task(self._drain_detached(reader, exit_waiter), name=f"shell-drain-{pid}")
        )

    async def _drain_detached(self, reader: asyncio.Task, exit_waiter: asyncio.Task | None) -> None:
        assert self.process is not None
        with contextlib.suppress(asyncio.CancelledError, OSError):
            await reader
        with contextlib.suppress(asyncio.CancelledError):
            if exit_waiter is not None:
                await exit_waiter
            else:
                await self.process.wait()
        # The wrapper writes its pid report only once the command has finished
        self._remove_pid_file()
        logger.debug("detached_run_finished", pid=self.process.pid)

    def _result(
        self,
        cause: TerminationCause,
        exit_code: int | None,
        signal: str | None = None,
        background_pids: tuple[int, ...] = (),
    ) -> ShellExecutionResult:
        return ShellExecutionResult(
            output=self.output,
            raw_output=bytes(self._raw),
            exit_code=exit_code,
            cause=cause,
            signal=signal,
            pid=self.process.pid if self.process else None,
            background_pids=background_pids,
            is_binary=self._is_binary,
        )

    def _is_top_level_background_job(self) -> bool:
        tokenizer = get_tokenizer(self.config.shell.shell)
        nodes = tokenizer.tokenize(self.command).nodes
        return bool(nodes) and nodes[-1].background

    # -------------------------------------------------------------------------
    # Background pid report
    # -------------------------------------------------------------------------

    def _collect_background_pids(self, aborted: bool, backgrounded: bool) -> tuple[int, ...]:
        """Read and delete the pid report file."""
        if self.pid_file is None:
            return ()

        pids: list[int] = []
        try:
            content = self.pid_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            if not aborted and not backgrounded:
                logger.error("missing_pgrep_output", path=str(self.pid_file))
            return ()
        finally:
            self._remove_pid_file()

        leader = self.process.pid if self.process else None
        for line in content.splitlines():
            line = line.strip()
            if not line:
                continue
            if not _PID_LINE.match(line):
                logger.error("pgrep_output_malformed", line=line)
                continue
            pid = int(line)
            if pid != leader:
                pids.append(pid)
        return tuple(pids)

    def _remove_pid_file(self) -> None:
        if self.pid_file is not None:
            with contextlib.suppress(FileNotFoundError):
                self.pid_file.unlink()


async def _finalize_reader(reader: asyncio.Task, timeout: float) -> None:
    """Wait for the reader to hit EOF, cancelling it if the pipe stays open."""
    try:
        await asyncio.wait_for(asyncio.shield(reader), timeout=timeout)
    except asyncio.TimeoutError:
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
