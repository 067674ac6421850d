"""Engine subprocess execution.

One OS process per job. ``ProcessRunner.run`` spawns ffmpeg, streams both
pipes, reports progress and returns a ``RunResult``. Running processes are
tracked by job key in a ``ProcessRegistry`` so they can be cancelled.
"""

import asyncio
import logging
import re
import signal
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from render_core.config import get_settings
from render_core.render.progress import ProgressParser, ProgressUpdate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Any]

_LINE_SPLIT = re.compile(r"[\r\n]+")
_READ_SIZE = 4096


class RunErrorKind(Enum):
    """Why a run did not succeed."""

    SPAWN = "spawn"
    EXIT = "exit"
    CANCELLED = "cancelled"


@dataclass
class RunResult:
    """Outcome of one engine invocation."""

    success: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr_tail: str = ""
    error_kind: Optional[RunErrorKind] = None
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.error_kind is RunErrorKind.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "stderr_tail": self.stderr_tail,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }


class _TextTail:
    """Keeps only the last ``limit`` characters written to it."""

    def __init__(self, limit: int):
        self.limit = limit
        self._parts: deque[str] = deque()
        self._size = 0

    def append(self, text: str) -> None:
        self._parts.append(text)
        self._size += len(text)
        while self._parts and self._size - len(self._parts[0]) >= self.limit:
            self._size -= len(self._parts.popleft())

    def value(self) -> str:
        return "".join(self._parts)[-self.limit:] if self.limit > 0 else ""


async def terminate_process(proc: asyncio.subprocess.Process, grace_period: float) -> None:
    """SIGTERM, wait ``grace_period`` seconds, then SIGKILL."""
    if proc.returncode is not None:
        return
    try:
        proc.send_signal(signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        logger.warning(f"[RUNNER] pid={proc.pid} ignored SIGTERM, sending SIGKILL")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


class ProcessRegistry:
    """Job key to running process. Entries live exactly as long as the process.

    A key is reserved before its process is spawned. Cancelling a reserved key
    marks it cancelled, and the runner kills the process as soon as it exists.
    """

    def __init__(self, grace_period: Optional[float] = None):
        self.grace_period = (
            grace_period if grace_period is not None else get_settings().process_cancel_grace_s
        )
        self._processes: dict[str, Optional[asyncio.subprocess.Process]] = {}
        self._cancelled: set[str] = set()

    def reserve(self, key: str) -> None:
        if key in self._processes:
            raise ValueError(f"A process is already running for job {key}")
        self._processes[key] = None
        self._cancelled.discard(key)

    def register(self, key: str, proc: asyncio.subprocess.Process) -> bool:
        """Attach ``proc`` to its reservation. False if the key was cancelled meanwhile."""
        if key in self._cancelled:
            return False
        if self._processes.get(key) is not None:
            raise ValueError(f"A process is already running for job {key}")
        self._processes[key] = proc
        return True

    def unregister(self, key: str) -> None:
        self._processes.pop(key, None)

    def was_cancelled(self, key: str) -> bool:
        return key in self._cancelled

    def clear_cancelled(self, key: str) -> None:
        self._cancelled.discard(key)

    def process(self, key: str) -> Optional[asyncio.subprocess.Process]:
        """The spawned process for ``key``; None while it is only reserved."""
        return self._processes.get(key)

    def keys(self) -> list[str]:
        return list(self._processes)

    def __contains__(self, key: object) -> bool:
        return key in self._processes

    def __len__(self) -> int:
        return len(self._processes)

    async def cancel(self, key: str) -> bool:
        """Terminate the process for ``key``. False when nothing was running."""
        if key not in self._processes:
            return False
        proc = self._processes.pop(key)
        self._cancelled.add(key)
        if proc is None:
            logger.info(f"[RUNNER] Cancelling job {key} before spawn")
            return True
        logger.info(f"[RUNNER] Cancelling job {key} (pid={proc.pid})")
        await terminate_process(proc, self.grace_period)
        return True

    async def cancel_all(self, prefix: str = "") -> list[str]:
        keys = [k for k in self._processes if k.startswith(prefix)]
        await asyncio.gather(*(self.cancel(k) for k in keys))
        return keys


async def _iter_lines(stream: Optional[asyncio.StreamReader]) -> AsyncIterator[str]:
    """Yield lines split on either ``\\r`` or ``\\n``."""
    if stream is None:
        return
    pending = ""
    while True:
        data = await stream.read(_READ_SIZE)
        if not data:
            break
        pending += data.decode("utf-8", errors="replace")
        parts = _LINE_SPLIT.split(pending)
        pending = parts.pop()
        for part in parts:
            if part:
                yield part
    if pending:
        yield pending


class ProcessRunner:
    """Runs engine commands and turns their exit into a ``RunResult``."""

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        *,
        stderr_tail_chars: Optional[int] = None,
    ):
        settings = get_settings()
        self.registry = registry or ProcessRegistry()
        self.stderr_tail_chars = (
            stderr_tail_chars if stderr_tail_chars is not None else settings.process_stderr_tail_chars
        )

    async def run(
        self,
        cmd: list[str],
        *,
        key: Optional[str] = None,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunResult:
        """
        Execute ``cmd`` to completion.

        Args:
            cmd: Full argument vector, binary first
            key: Registry key; required for cancellation through the registry
            duration: Expected output duration for percent/ETA computation
            on_progress: Called with each ProgressUpdate

        Returns:
            RunResult. Spawn failures, nonzero exits and cancellations are
            reported in the result, not raised.

        Raises:
            ValueError: If ``key`` is already in use
            asyncio.CancelledError: If the awaiting task is cancelled; the child
                is terminated first
        """
        if key is not None:
            self.registry.reserve(key)
        logger.debug(f"[RUNNER] {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            if key is not None:
                self.registry.unregister(key)
                self.registry.clear_cancelled(key)
            logger.error(f"[RUNNER] Failed to start {cmd[0]}: {e}")
            return RunResult(
                success=False,
                exit_code=None,
                error_kind=RunErrorKind.SPAWN,
                error=f"Failed to start {cmd[0]}: {e}",
            )
        except asyncio.CancelledError:
            if key is not None:
                self.registry.unregister(key)
            raise

        if key is not None and not self.registry.register(key, proc):
            # Cancelled while spawning.
            await terminate_process(proc, self.registry.grace_period)
            self.registry.clear_cancelled(key)
            return RunResult(
                success=False,
                exit_code=proc.returncode,
                error_kind=RunErrorKind.CANCELLED,
                error="Cancelled",
            )

        parser = ProgressParser(duration)
        stdout_lines: deque[str] = deque(maxlen=200)
        stderr_tail = _TextTail(self.stderr_tail_chars)

        async def pump_stdout() -> None:
            async for line in _iter_lines(proc.stdout):
                stdout_lines.append(line)
                update = parser.feed_stdout_line(line)
                if update is not None and on_progress:
                    on_progress(update)

        async def pump_stderr() -> None:
            async for line in _iter_lines(proc.stderr):
                stderr_tail.append(line + "\n")
                update = parser.feed_stderr_line(line)
                if update is not None and on_progress:
                    on_progress(update)

        try:
            await asyncio.gather(pump_stdout(), pump_stderr())
            exit_code = await proc.wait()
        except asyncio.CancelledError:
            await terminate_process(proc, self.registry.grace_period)
            raise
        finally:
            if key is not None:
                self.registry.unregister(key)

        stdout_text = "\n".join(stdout_lines)
        tail = stderr_tail.value().strip()

        if key is not None and self.registry.was_cancelled(key):
            self.registry.clear_cancelled(key)
            return RunResult(
                success=False,
                exit_code=exit_code,
                stdout=stdout_text,
                stderr_tail=tail,
                error_kind=RunErrorKind.CANCELLED,
                error="Cancelled",
            )

        if exit_code != 0:
            logger.error(f"[RUNNER] {cmd[0]} exited with code {exit_code}: {tail}")
            return RunResult(
                success=False,
                exit_code=exit_code,
                stdout=stdout_text,
                stderr_tail=tail,
                error_kind=RunErrorKind.EXIT,
                error=f"FFmpeg exited with code {exit_code}: {tail}",
            )

        return RunResult(success=True, exit_code=0, stdout=stdout_text, stderr_tail=tail)
