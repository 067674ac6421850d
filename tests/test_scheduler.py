"""Tests for the chunk render scheduler."""

import asyncio
import random

import pytest

from factories import SMALL_SETTINGS
from render_core.preview.chunk_cache import ChunkCache, ChunkStatus
from render_core.preview.scheduler import ChunkRenderResult, ChunkScheduler, RenderPriority


class GatedWorker:
    """Worker whose jobs wait until released by chunk index."""

    def __init__(self, *, block: bool = True, fail: set[int] | None = None):
        self.block = block
        self.fail = fail or set()
        self.calls: list[int] = []
        self.gates: dict[int, asyncio.Event] = {}

    def release(self, index: int) -> None:
        self.gates.setdefault(index, asyncio.Event()).set()

    async def __call__(self, chunk):
        self.calls.append(chunk.index)
        if self.block:
            await self.gates.setdefault(chunk.index, asyncio.Event()).wait()
            self.gates.pop(chunk.index, None)
        else:
            await asyncio.sleep(0)
        if chunk.index in self.fail:
            return ChunkRenderResult(index=chunk.index, success=False, error="FFmpeg exited with code 1")
        return ChunkRenderResult(
            index=chunk.index,
            success=True,
            output_path=f"/nonexistent/chunk-{chunk.index}.mp4",
            content_hash=f"hash-{chunk.index}",
        )


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def cache(temp_output_dir):
    cache = ChunkCache(temp_output_dir, 2.0, render_settings=SMALL_SETTINGS)
    cache.initialize(20.0)
    return cache


class TestQueueOrder:
    """Test priority ordering of the queue."""

    @pytest.mark.asyncio
    async def test_priorities_fifo_within_level(self, cache):
        worker = GatedWorker()
        scheduler = ChunkScheduler(cache, worker, 1)

        scheduler.queue(0)
        scheduler.queue(1, RenderPriority.LOW)
        scheduler.queue(2, RenderPriority.NORMAL)
        scheduler.queue(3, RenderPriority.HIGH)
        scheduler.queue(4, RenderPriority.HIGH)
        scheduler.queue(5, RenderPriority.NORMAL)

        assert scheduler.active_indices == [0]
        assert scheduler.queued_indices == [3, 4, 2, 5, 1]
        await scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_duplicate_queue_rejected(self, cache):
        scheduler = ChunkScheduler(cache, GatedWorker(), 1)
        assert scheduler.queue(0)
        assert scheduler.queue(1)
        assert not scheduler.queue(0)
        assert not scheduler.queue(1)
        await scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_reprioritize(self, cache):
        scheduler = ChunkScheduler(cache, GatedWorker(), 1)
        scheduler.queue_many([0, 1, 2, 3])

        assert scheduler.reprioritize(3, RenderPriority.HIGH)
        assert not scheduler.reprioritize(3, RenderPriority.HIGH)
        assert not scheduler.reprioritize(9, RenderPriority.HIGH)
        assert scheduler.queued_indices == [3, 1, 2]
        await scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_valid_chunks_are_skipped(self, cache):
        cache.mark_rendering(0)
        cache.mark_valid(0, "/nonexistent/chunk-0.mp4", "h")
        worker = GatedWorker(block=False)
        scheduler = ChunkScheduler(cache, worker, 1)

        scheduler.queue_many([0, 1])
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        assert worker.calls == [1]

    def test_invalid_concurrency(self, cache):
        with pytest.raises(ValueError):
            ChunkScheduler(cache, GatedWorker(), -1)


class TestExecution:
    """Test completion handling."""

    @pytest.mark.asyncio
    async def test_concurrency_cap_under_random_arrivals(self, cache):
        rng = random.Random(1234)
        running = 0
        peak = 0

        async def worker(chunk):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            assert sum(c.status is ChunkStatus.RENDERING for c in cache.chunks) <= 3
            await asyncio.sleep(rng.uniform(0, 0.003))
            running -= 1
            return ChunkRenderResult(index=chunk.index, success=True, output_path=f"/nonexistent/{chunk.index}.mp4")

        scheduler = ChunkScheduler(cache, worker, 3)
        priorities = list(RenderPriority)
        order = list(range(len(cache.chunks)))
        rng.shuffle(order)
        for index in order:
            scheduler.queue(index, rng.choice(priorities))
            if rng.random() < 0.5:
                cache.invalidate(rng.uniform(0, 18), rng.uniform(18, 20))
            await asyncio.sleep(rng.uniform(0, 0.002))

        await asyncio.wait_for(scheduler.wait_idle(), timeout=10)
        # Chunks invalidated after they finished are left stale until queued again.
        scheduler.queue_many([c.index for c in cache.needing_render()])
        await asyncio.wait_for(scheduler.wait_idle(), timeout=10)

        assert 1 <= peak <= 3
        assert all(c.status is ChunkStatus.VALID for c in cache.chunks)

    @pytest.mark.asyncio
    async def test_failure_marks_error(self, cache):
        worker = GatedWorker(block=False, fail={1})
        done = []
        scheduler = ChunkScheduler(cache, worker, 2, on_chunk_done=done.append)

        scheduler.queue_many([0, 1])
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        assert cache.get(0).status is ChunkStatus.VALID
        assert cache.get(1).status is ChunkStatus.ERROR
        assert cache.get(1).error == "FFmpeg exited with code 1"
        assert sorted(c.index for c in done) == [0, 1]

    @pytest.mark.asyncio
    async def test_worker_exception_marks_error(self, cache):
        async def worker(chunk):
            raise RuntimeError("compiler exploded")

        scheduler = ChunkScheduler(cache, worker, 1)
        scheduler.queue(0)
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        assert cache.get(0).status is ChunkStatus.ERROR
        assert cache.get(0).error == "compiler exploded"

    @pytest.mark.asyncio
    async def test_invalidated_while_rendering_is_requeued(self, cache):
        worker = GatedWorker()
        scheduler = ChunkScheduler(cache, worker, 1)
        scheduler.queue(0)
        await settle()

        cache.invalidate(0.0, 1.0)
        worker.release(0)
        await settle()

        assert worker.calls == [0, 0]
        assert cache.get(0).status is ChunkStatus.RENDERING

        worker.release(0)
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)
        assert cache.get(0).status is ChunkStatus.VALID

    @pytest.mark.asyncio
    async def test_partition_change_discards_result(self, cache, temp_output_dir):
        """Test that the old window's file is dropped and the new window is rendered."""
        windows = []

        async def worker(chunk):
            windows.append((chunk.start, chunk.end))
            await gate.wait()
            output = temp_output_dir / f"chunk-{chunk.index}-{len(windows)}.mp4"
            output.write_bytes(b"x")
            return ChunkRenderResult(index=chunk.index, success=True, output_path=str(output))

        gate = asyncio.Event()
        scheduler = ChunkScheduler(cache, worker, 1)
        scheduler.queue(9)
        await settle()

        cache.initialize(19.0)
        assert not scheduler.queue(9)
        gate.set()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        assert windows == [(18.0, 20.0), (18.0, 19.0)]
        assert not (temp_output_dir / "chunk-9-1.mp4").exists()
        assert cache.get(9).status is ChunkStatus.VALID
        assert cache.get(9).output_path == str(temp_output_dir / "chunk-9-2.mp4")

    @pytest.mark.asyncio
    async def test_removed_window_is_not_requeued(self, cache, temp_output_dir):
        async def worker(chunk):
            await gate.wait()
            return ChunkRenderResult(index=chunk.index, success=True, output_path=str(temp_output_dir / "old.mp4"))

        gate = asyncio.Event()
        scheduler = ChunkScheduler(cache, worker, 1)
        scheduler.queue(9)
        await settle()

        cache.initialize(17.0)
        gate.set()
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)

        assert len(cache.chunks) == 9
        assert scheduler.queued_indices == []


class TestCancellation:
    """Test cancelling queued and running chunks."""

    @pytest.mark.asyncio
    async def test_cancel_queued(self, cache):
        scheduler = ChunkScheduler(cache, GatedWorker(), 1)
        scheduler.queue_many([0, 1])

        assert await scheduler.cancel(1)
        assert scheduler.queued_indices == []
        assert cache.get(1).status is ChunkStatus.MISSING
        await scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_cancel_running_leaves_status(self, cache):
        worker = GatedWorker()
        scheduler = ChunkScheduler(cache, worker, 1)
        scheduler.queue(0)
        await settle()

        assert await scheduler.cancel(0)
        assert cache.get(0).status is ChunkStatus.RENDERING
        assert not scheduler.is_active(0)

        # A cancelled chunk can be admitted again.
        worker.block = False
        assert scheduler.queue(0)
        await asyncio.wait_for(scheduler.wait_idle(), timeout=5)
        assert cache.get(0).status is ChunkStatus.VALID

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, cache):
        scheduler = ChunkScheduler(cache, GatedWorker(), 1)
        assert not await scheduler.cancel(3)

    @pytest.mark.asyncio
    async def test_cancel_all(self, cache):
        scheduler = ChunkScheduler(cache, GatedWorker(), 2)
        scheduler.queue_many([0, 1, 2, 3])
        await settle()

        await scheduler.cancel_all()

        assert scheduler.status() == {"queued": 0, "rendering": 0}
        await asyncio.wait_for(scheduler.wait_idle(), timeout=1)
