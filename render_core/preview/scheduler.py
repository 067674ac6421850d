"""Priority render queue with a concurrency cap.

Runs on a single event loop. Completing a job (cache update, slot release,
re-queue of a chunk that went stale meanwhile) and starting the next one
happen in one synchronous step, so no other coroutine can observe or modify
the queue in between.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from render_core.config import get_settings
from render_core.exceptions import ChunkNotFoundError
from render_core.preview.chunk_cache import Chunk, ChunkCache, ChunkStatus

logger = logging.getLogger(__name__)


class RenderPriority(Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass
class RenderTask:
    """A queued chunk render."""

    chunk_index: int
    priority: RenderPriority = RenderPriority.NORMAL
    queued_at: float = field(default_factory=time.monotonic)


@dataclass
class ChunkRenderResult:
    """What a worker reports back for one chunk."""

    index: int
    success: bool
    output_path: Optional[str] = None
    content_hash: Optional[str] = None
    is_complex: Optional[bool] = None
    error: Optional[str] = None
    cancelled: bool = False


ChunkWorker = Callable[[Chunk], Awaitable[ChunkRenderResult]]


class ChunkScheduler:
    """Pulls queued chunks into at most ``max_concurrent`` running jobs."""

    def __init__(
        self,
        cache: ChunkCache,
        worker: ChunkWorker,
        max_concurrent: Optional[int] = None,
        *,
        on_chunk_done: Optional[Callable[[Chunk], Any]] = None,
    ):
        self.cache = cache
        self.worker = worker
        self.max_concurrent = max_concurrent or get_settings().preview_max_concurrent_renders
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.on_chunk_done = on_chunk_done
        self._queue: list[RenderTask] = []
        self._active: dict[int, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def queue(self, index: int, priority: RenderPriority = RenderPriority.NORMAL) -> bool:
        """Queue a chunk. False when it is already queued or running."""
        if index in self._active or any(t.chunk_index == index for t in self._queue):
            return False
        task = RenderTask(chunk_index=index, priority=priority)
        if priority is RenderPriority.HIGH:
            high_count = sum(1 for t in self._queue if t.priority is RenderPriority.HIGH)
            self._queue.insert(high_count, task)
        elif priority is RenderPriority.NORMAL:
            position = next(
                (i for i, t in enumerate(self._queue) if t.priority is RenderPriority.LOW),
                len(self._queue),
            )
            self._queue.insert(position, task)
        else:
            self._queue.append(task)
        self._idle.clear()
        self._pump()
        return True

    def queue_many(self, indices: list[int], priority: RenderPriority = RenderPriority.NORMAL) -> list[int]:
        return [i for i in indices if self.queue(i, priority)]

    def reprioritize(self, index: int, priority: RenderPriority) -> bool:
        """Move an already queued chunk to ``priority``."""
        for task in self._queue:
            if task.chunk_index == index:
                if task.priority is priority:
                    return False
                self._queue.remove(task)
                self._idle.clear()
                return self.queue(index, priority)
        return False

    @property
    def queued_indices(self) -> list[int]:
        return [t.chunk_index for t in self._queue]

    @property
    def active_indices(self) -> list[int]:
        return list(self._active)

    def is_active(self, index: int) -> bool:
        return index in self._active

    def status(self) -> dict[str, int]:
        return {"queued": len(self._queue), "rendering": len(self._active)}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        while len(self._active) < self.max_concurrent and self._queue:
            task = self._queue.pop(0)
            try:
                chunk = self.cache.get(task.chunk_index)
            except ChunkNotFoundError:
                continue
            if chunk.status is ChunkStatus.VALID:
                continue
            self.cache.mark_rendering(chunk.index)
            logger.debug(f"[SCHEDULER] Starting chunk {chunk.index} ({task.priority.value})")
            self._active[chunk.index] = asyncio.create_task(self._run(chunk))
        if not self._queue and not self._active:
            self._idle.set()

    async def _run(self, chunk: Chunk) -> None:
        try:
            result = await self.worker(chunk)
        except asyncio.CancelledError:
            result = ChunkRenderResult(index=chunk.index, success=False, cancelled=True)
        except Exception as e:
            logger.exception(f"[SCHEDULER] Worker crashed on chunk {chunk.index}")
            result = ChunkRenderResult(index=chunk.index, success=False, error=str(e))
        self._complete(chunk, result)

    def _complete(self, chunk: Chunk, result: ChunkRenderResult) -> None:
        """Record the result, release the slot and start the next job."""
        if self._active.get(chunk.index) is asyncio.current_task():
            del self._active[chunk.index]

        try:
            current = self.cache.get(chunk.index)
        except ChunkNotFoundError:
            current = None

        if current is not chunk:
            # Partition changed while rendering; the window no longer exists.
            if result.output_path:
                Path(result.output_path).unlink(missing_ok=True)
            # The new window at this index could not be queued while the old job held the slot.
            if current is not None and current.status in (ChunkStatus.MISSING, ChunkStatus.STALE):
                self.queue(current.index, RenderPriority.NORMAL)
        elif result.cancelled:
            logger.info(f"[SCHEDULER] Chunk {chunk.index} cancelled")
        elif result.success and result.output_path:
            self.cache.mark_valid(
                chunk.index,
                result.output_path,
                content_hash=result.content_hash,
                is_complex=result.is_complex,
            )
            if chunk.status is ChunkStatus.STALE:
                self.queue(chunk.index, RenderPriority.NORMAL)
        else:
            self.cache.mark_error(
                chunk.index, result.error or "Render failed", content_hash=result.content_hash
            )

        if current is chunk and self.on_chunk_done:
            self.on_chunk_done(chunk)
        self._pump()

    def _forget_finished(self) -> None:
        # Jobs cancelled before their first step never reach _complete.
        for index, job in list(self._active.items()):
            if job.done():
                del self._active[index]

    async def cancel(self, index: int) -> bool:
        """Drop a queued chunk or cancel its running job."""
        for task in self._queue:
            if task.chunk_index == index:
                self._queue.remove(task)
                self._pump()
                return True
        job = self._active.get(index)
        if job is None:
            return False
        job.cancel()
        await asyncio.gather(job, return_exceptions=True)
        self._forget_finished()
        self._pump()
        return True

    async def cancel_all(self) -> None:
        """Clear the queue and cancel every running job. Statuses are left as they are."""
        self._queue.clear()
        jobs = list(self._active.values())
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        self._forget_finished()
        self._pump()

    async def wait_idle(self) -> None:
        """Return once nothing is queued or running."""
        await self._idle.wait()
