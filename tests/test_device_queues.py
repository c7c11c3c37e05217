from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone

from carbonwatch.app.services.device_queues import DeviceQueuePool
from carbonwatch.app.services.records import TelemetryRecord


T0 = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def _record(device_id: str, seq: int) -> TelemetryRecord:
    return TelemetryRecord(
        device_id=device_id,
        category="energy",
        timestamp=T0 + timedelta(seconds=seq),
        fields={"seq": seq},
    )


def test_records_of_one_device_are_processed_in_order(counters) -> None:
    seen: dict[str, list[int]] = {}
    lock = threading.Lock()

    def processor(record: TelemetryRecord) -> None:
        # Uneven work so out-of-order processing would show up.
        time.sleep(0.002 * (record.fields["seq"] % 3))
        with lock:
            seen.setdefault(record.device_id, []).append(record.fields["seq"])

    async def scenario() -> None:
        pool = DeviceQueuePool(processor, max_workers=4, capacity=100, counters=counters)
        await pool.start()
        for seq in range(20):
            for device_id in ("meter-1", "meter-2", "meter-3"):
                pool.submit(_record(device_id, seq))
        await pool.drain()
        await pool.close()

    asyncio.run(scenario())

    assert seen == {d: list(range(20)) for d in ("meter-1", "meter-2", "meter-3")}
    assert counters.get("device_actors_started") == 3


def test_one_device_never_runs_concurrently_with_itself(counters) -> None:
    active: dict[str, int] = {}
    overlaps: list[str] = []
    lock = threading.Lock()

    def processor(record: TelemetryRecord) -> None:
        with lock:
            active[record.device_id] = active.get(record.device_id, 0) + 1
            if active[record.device_id] > 1:
                overlaps.append(record.device_id)
        time.sleep(0.001)
        with lock:
            active[record.device_id] -= 1

    async def scenario() -> None:
        pool = DeviceQueuePool(processor, max_workers=8, counters=counters)
        await pool.start()
        for seq in range(10):
            pool.submit(_record("meter-1", seq))
            pool.submit(_record("meter-2", seq))
        await pool.close()

    asyncio.run(scenario())
    assert overlaps == []


def test_overflow_drops_the_oldest_queued_record(counters) -> None:
    processed: list[int] = []

    async def scenario() -> None:
        pool = DeviceQueuePool(lambda r: processed.append(r.fields["seq"]), capacity=2, counters=counters)
        await pool.start()
        # No await in between: the actor has not started draining yet.
        for seq in range(5):
            pool.submit(_record("meter-1", seq))
        assert pool.pending() == 2
        await pool.close()

    asyncio.run(scenario())

    assert processed == [3, 4]
    assert counters.get("queue_overflow_dropped") == 3


def test_processing_errors_are_contained(counters) -> None:
    processed: list[int] = []

    def processor(record: TelemetryRecord) -> None:
        if record.fields["seq"] == 1:
            raise RuntimeError("boom")
        processed.append(record.fields["seq"])

    async def scenario() -> None:
        pool = DeviceQueuePool(processor, counters=counters)
        await pool.start()
        for seq in range(3):
            pool.submit(_record("meter-1", seq))
        await pool.close()

    asyncio.run(scenario())

    assert processed == [0, 2]
    assert counters.get("processing_errors") == 1


def test_idle_actors_are_reaped_and_recreated(counters) -> None:
    processed: list[int] = []

    async def scenario() -> None:
        pool = DeviceQueuePool(lambda r: processed.append(r.fields["seq"]), idle_timeout_s=0.05, counters=counters)
        await pool.start()
        pool.submit(_record("meter-1", 0))
        await pool.drain()
        assert pool.active_devices == ["meter-1"]

        await asyncio.sleep(0.2)
        assert pool.active_devices == []

        pool.submit(_record("meter-1", 1))
        await pool.drain()
        await pool.close()

    asyncio.run(scenario())

    assert processed == [0, 1]
    assert counters.get("device_actors_reaped") == 1
    assert counters.get("device_actors_started") == 2


def test_submit_from_another_thread(counters) -> None:
    processed: list[int] = []

    async def scenario() -> None:
        pool = DeviceQueuePool(lambda r: processed.append(r.fields["seq"]), counters=counters)
        await pool.start()

        def producer() -> None:
            for seq in range(5):
                pool.submit(_record("meter-1", seq))

        await asyncio.to_thread(producer)
        # Let the call_soon_threadsafe callbacks run before draining.
        await asyncio.sleep(0.01)
        await pool.close()

    asyncio.run(scenario())
    assert processed == [0, 1, 2, 3, 4]


def test_records_after_close_are_refused(counters) -> None:
    async def scenario() -> None:
        pool = DeviceQueuePool(lambda r: None, counters=counters)
        await pool.start()
        await pool.close()
        pool.submit(_record("meter-1", 0))

    asyncio.run(scenario())
    assert counters.get("refused_after_close") == 1
