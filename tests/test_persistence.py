from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from carbonwatch.app.models import Device, TelemetryPoint
from carbonwatch.app.services.records import TelemetryRecord
from carbonwatch.app.services.retry import RetryPolicy
from carbonwatch.app.services.persistence import TelemetryWriter


T0 = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def _record(device_id: str = "meter-1", ts: datetime = T0, **fields) -> TelemetryRecord:
    return TelemetryRecord(device_id=device_id, category="energy", timestamp=ts, fields=fields or {"power": 1.0})


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def test_redelivered_point_replaces_instead_of_duplicating(session_factory, seed_devices, counters) -> None:
    writer = TelemetryWriter(session_factory, counters=counters)

    first = writer.write(_record(power=100.0))
    second = writer.write(_record(power=250.0))

    assert first is not None and first.inserted is True
    assert second is not None and second.inserted is False

    with session_factory() as session:
        rows = session.execute(select(TelemetryPoint)).scalars().all()
    assert len(rows) == 1
    assert rows[0].fields == {"power": 250.0}
    assert counters.get("points_written") == 1
    assert counters.get("points_replaced") == 1


def test_same_timestamp_different_category_is_a_separate_point(session_factory, seed_devices, counters) -> None:
    writer = TelemetryWriter(session_factory, counters=counters)
    writer.write(_record())
    writer.write(
        TelemetryRecord(device_id="meter-1", category="carbon", timestamp=T0, fields={"carbon_emission": 2.0})
    )

    with session_factory() as session:
        assert len(session.execute(select(TelemetryPoint)).scalars().all()) == 2


def test_heartbeat_follows_processing_order(session_factory, seed_devices, counters) -> None:
    writer = TelemetryWriter(session_factory, counters=counters)

    writer.write(_record(ts=T0 + timedelta(minutes=5)))
    # A late (older) record still moves last_seen_at: processing order, not max.
    outcome = writer.write(_record(ts=T0))

    assert outcome is not None and outcome.heartbeat_updated is True
    with session_factory() as session:
        device = session.get(Device, "meter-1")
        assert _aware(device.last_seen_at) == T0


def test_status_report_replaces_device_status(session_factory, seed_devices, counters) -> None:
    writer = TelemetryWriter(session_factory, counters=counters)
    writer.write(TelemetryRecord(device_id="meter-1", category="status", timestamp=T0, fields={"status": "online"}))
    writer.write(_record(ts=T0 + timedelta(minutes=1)))

    with session_factory() as session:
        device = session.get(Device, "meter-1")
        # Telemetry moves the heartbeat but leaves the reported status alone.
        assert device.status == "online"
        assert _aware(device.last_seen_at) == T0 + timedelta(minutes=1)


def test_storage_failure_is_retried_then_dropped(counters) -> None:
    calls = {"n": 0}
    sleeps: list[float] = []

    @contextmanager
    def broken_factory():
        calls["n"] += 1
        raise OperationalError("INSERT", {}, Exception("database is locked"))
        yield  # pragma: no cover

    writer = TelemetryWriter(
        broken_factory,
        policy=RetryPolicy(max_attempts=3, base_delay_s=0.1),
        sleep=sleeps.append,
        counters=counters,
    )

    assert writer.write(_record()) is None
    assert calls["n"] == 3
    assert sleeps == [0.1, 0.2]
    assert counters.get("persistence_dropped") == 1
    assert counters.get("points_written") == 0
