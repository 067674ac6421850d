"""
Pytest fixtures for render_core tests.

No test here needs a real ffmpeg: engine invocations go through FakeRunner,
which records every command and writes a placeholder output file. Runner
tests that need a real child process use the Python interpreter instead.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Callable, Optional

import pytest

from render_core.render.progress import ProgressUpdate
from render_core.render.runner import RunErrorKind, RunResult


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "subprocess: test spawns a real child process (the Python interpreter)"
    )


class FakeRegistry:
    """Registry stand-in that cancels FakeRunner jobs by key."""

    def __init__(self, runner: "FakeRunner"):
        self.runner = runner

    async def cancel(self, key: str) -> bool:
        if key not in self.runner.running:
            return False
        self.runner.cancelled_keys.add(key)
        self.runner.release(key)
        return True

    async def cancel_all(self, prefix: str = "") -> list[str]:
        keys = [k for k in self.runner.running if k.startswith(prefix)]
        for key in keys:
            await self.cancel(key)
        return keys


class FakeRunner:
    """Records commands instead of spawning ffmpeg.

    - ``block=True`` holds every job until ``release(key)`` or ``release_all()``
    - ``result_for(cmd, key)`` may return a RunResult to simulate failures
    - ``progress`` percents are reported before the job finishes
    """

    def __init__(
        self,
        *,
        block: bool = False,
        result_for: Optional[Callable[[list[str], Optional[str]], Optional[RunResult]]] = None,
        progress: tuple[float, ...] = (),
    ):
        self.block = block
        self.result_for = result_for
        self.progress = progress
        self.calls: list[dict] = []
        self.running: set[str] = set()
        self.max_running = 0
        self.cancelled_keys: set[str] = set()
        self.gates: dict[str, asyncio.Event] = {}
        self.registry = FakeRegistry(self)

    def release(self, key: str) -> None:
        self.gates.setdefault(key, asyncio.Event()).set()

    def release_all(self) -> None:
        for key in list(self.running):
            self.release(key)

    def keys(self) -> list[Optional[str]]:
        return [c["key"] for c in self.calls]

    async def run(self, cmd, *, key=None, duration=None, on_progress=None) -> RunResult:
        self.calls.append({"cmd": list(cmd), "key": key, "duration": duration})
        job = key or f"anon-{len(self.calls)}"
        self.running.add(job)
        self.max_running = max(self.max_running, len(self.running))
        try:
            for percent in self.progress:
                if on_progress:
                    on_progress(ProgressUpdate(out_time=(duration or 0) * percent / 100, percent=percent))
                await asyncio.sleep(0)
            if self.block:
                await self.gates.setdefault(job, asyncio.Event()).wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.running.discard(job)
            self.gates.pop(job, None)

        if job in self.cancelled_keys:
            self.cancelled_keys.discard(job)
            return RunResult(success=False, error_kind=RunErrorKind.CANCELLED, error="Cancelled")
        if self.result_for is not None:
            result = self.result_for(cmd, key)
            if result is not None:
                return result
        output = Path(cmd[-1])
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"fake media")
        return RunResult(success=True, exit_code=0)


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="render_core_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def blocking_runner() -> FakeRunner:
    return FakeRunner(block=True)


@pytest.fixture
def exit_failure() -> Callable[[int, str], RunResult]:
    """Factory for a nonzero-exit RunResult."""
    def make(code: int = 1, tail: str = "Invalid argument") -> RunResult:
        return RunResult(
            success=False,
            exit_code=code,
            stderr_tail=tail,
            error_kind=RunErrorKind.EXIT,
            error=f"FFmpeg exited with code {code}: {tail}",
        )
    return make


@pytest.fixture
def slow_ffmpeg(temp_output_dir) -> str:
    """Executable that ignores its arguments and sleeps for 3 seconds."""
    script = temp_output_dir / "slow-ffmpeg"
    script.write_text("#!/bin/sh\nexec sleep 3\n")
    script.chmod(0o755)
    return str(script)
