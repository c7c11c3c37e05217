"""Per-device ordered queues drained by a bounded worker pool.

Each active device gets one lightweight asyncio task (an actor) that drains
its own bounded deque strictly in enqueue order. A pool-wide semaphore caps how
many records are processed at once; the synchronous pipeline runs in a worker
thread so the event loop never blocks on storage or HTTP. Actors are reaped
after an idle timeout and recreated on the next message.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from ..observability import PipelineCounters, pipeline_counters
from .records import TelemetryRecord


logger = logging.getLogger("carbonwatch.queues")


@dataclass
class _DeviceActor:
    device_id: str
    queue: deque[TelemetryRecord] = field(default_factory=deque)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    processed: int = 0


class DeviceQueuePool:
    def __init__(
        self,
        processor: Callable[[TelemetryRecord], object],
        *,
        max_workers: int = 8,
        capacity: int = 100,
        idle_timeout_s: float = 300.0,
        counters: PipelineCounters = pipeline_counters,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._processor = processor
        self.max_workers = max_workers
        self.capacity = capacity
        self.idle_timeout_s = idle_timeout_s
        self._counters = counters

        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread_id: int | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._actors: dict[str, _DeviceActor] = {}
        self._closed = False

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._loop_thread_id = threading.get_ident()
        self._semaphore = asyncio.Semaphore(self.max_workers)
        self._closed = False
        logger.info(
            "device_queue_pool_started",
            extra={
                "fields": {
                    "max_workers": self.max_workers,
                    "capacity": self.capacity,
                    "idle_timeout_s": self.idle_timeout_s,
                }
            },
        )

    def submit(self, record: TelemetryRecord) -> None:
        """Enqueue a record. Safe to call from any thread."""

        loop = self._loop
        if loop is None:
            raise RuntimeError("DeviceQueuePool.start() has not been awaited")
        if threading.get_ident() == self._loop_thread_id:
            self._enqueue(record)
        else:
            loop.call_soon_threadsafe(self._enqueue, record)

    def _enqueue(self, record: TelemetryRecord) -> None:
        if self._closed:
            self._counters.incr("refused_after_close")
            return

        actor = self._actors.get(record.device_id)
        if actor is None:
            actor = _DeviceActor(device_id=record.device_id)
            self._actors[record.device_id] = actor
            actor.task = asyncio.get_running_loop().create_task(
                self._run_actor(actor), name=f"device-queue:{record.device_id}"
            )
            self._counters.incr("device_actors_started")

        if len(actor.queue) >= self.capacity:
            dropped = actor.queue.popleft()
            self._counters.incr("queue_overflow_dropped")
            logger.warning(
                "queue_overflow_dropped",
                extra={
                    "fields": {
                        "device_id": record.device_id,
                        "dropped_ts": dropped.timestamp.isoformat(),
                        "capacity": self.capacity,
                    }
                },
            )

        actor.queue.append(record)
        actor.idle.clear()
        actor.wakeup.set()

    async def _run_actor(self, actor: _DeviceActor) -> None:
        assert self._semaphore is not None
        while True:
            while actor.queue:
                record = actor.queue.popleft()
                async with self._semaphore:
                    try:
                        await asyncio.to_thread(self._processor, record)
                    except Exception:
                        self._counters.incr("processing_errors")
                        logger.exception(
                            "record_processing_failed",
                            extra={"fields": {"device_id": actor.device_id, "category": record.category}},
                        )
                actor.processed += 1

            actor.wakeup.clear()
            actor.idle.set()
            try:
                await asyncio.wait_for(actor.wakeup.wait(), timeout=self.idle_timeout_s)
            except asyncio.TimeoutError:
                if actor.queue:
                    continue
                # No await between the check and removal: _enqueue cannot interleave.
                if self._actors.get(actor.device_id) is actor:
                    del self._actors[actor.device_id]
                self._counters.incr("device_actors_reaped")
                logger.debug("device_actor_reaped", extra={"fields": {"device_id": actor.device_id}})
                return

    @property
    def active_devices(self) -> list[str]:
        return sorted(self._actors)

    def pending(self) -> int:
        return sum(len(a.queue) for a in self._actors.values())

    async def drain(self) -> None:
        """Wait until every device queue is empty and nothing is in flight."""

        while True:
            waiting = [a.idle.wait() for a in list(self._actors.values()) if not a.idle.is_set()]
            if not waiting:
                return
            await asyncio.gather(*waiting)

    async def close(self) -> None:
        await self.drain()
        self._closed = True
        tasks = [a.task for a in self._actors.values() if a.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._actors.clear()
        logger.info("device_queue_pool_closed")
