from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import SessionFactory, db_session
from ..errors import PersistenceError
from ..models import Device, TelemetryPoint
from ..observability import PipelineCounters, pipeline_counters
from .records import TelemetryRecord, WriteOutcome
from .retry import RetryExecutor, RetryPolicy


logger = logging.getLogger("carbonwatch.persistence")


def _dialect_insert(session: Session, model: type[TelemetryPoint]):
    dialect = (session.bind.dialect.name if session.bind is not None else "").strip().lower()
    if dialect == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def upsert_point(session: Session, record: TelemetryRecord, *, now: datetime) -> bool:
    """Insert or replace the point keyed by (device, category, ts). Returns True when new."""

    existing = session.execute(
        select(TelemetryPoint.id).where(
            TelemetryPoint.device_id == record.device_id,
            TelemetryPoint.category == record.category,
            TelemetryPoint.ts == record.timestamp,
        )
    ).first()

    stmt = _dialect_insert(session, TelemetryPoint).values(
        id=str(uuid.uuid4()),
        device_id=record.device_id,
        category=record.category,
        ts=record.timestamp,
        fields=dict(record.fields),
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["device_id", "category", "ts"],
        set_={"fields": stmt.excluded.fields, "updated_at": stmt.excluded.updated_at},
    )
    session.execute(stmt)
    return existing is None


def touch_heartbeat(session: Session, device_id: str, ts: datetime, *, status: str | None = None) -> bool:
    """Set last_seen_at to the record timestamp, in processing order (not max).

    A status report also replaces the stored device status.
    """

    values: dict = {"last_seen_at": ts}
    if status is not None:
        values["status"] = status
    result = session.execute(update(Device).where(Device.device_id == device_id).values(**values))
    return bool(result.rowcount)


class TelemetryWriter:
    """Idempotent telemetry persistence plus device heartbeat.

    Storage errors are retried under the persistence RetryPolicy. When retries
    are exhausted the point is dropped and counted; `write` then returns None
    so the device queue moves on.
    """

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
        counters: PipelineCounters = pipeline_counters,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        executor_kwargs = {"sleep": sleep} if sleep is not None else {}
        self._retry = RetryExecutor(policy or RetryPolicy(), **executor_kwargs)
        self._counters = counters
        self._clock = clock

    def _write_once(self, record: TelemetryRecord) -> WriteOutcome:
        try:
            with self._session_factory() as session:
                inserted = upsert_point(session, record, now=self._clock())
                status = str(record.fields.get("status")) if record.category == "status" else None
                heartbeat = touch_heartbeat(session, record.device_id, record.timestamp, status=status)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{type(exc).__name__}: {exc}") from exc
        return WriteOutcome(inserted=inserted, heartbeat_updated=heartbeat)

    def write(self, record: TelemetryRecord) -> WriteOutcome | None:
        try:
            outcome = self._retry.call(
                lambda: self._write_once(record),
                retry_on=(PersistenceError,),
                op="telemetry_write",
            )
        except PersistenceError as exc:
            self._counters.incr("persistence_dropped")
            logger.error(
                "telemetry_point_dropped",
                extra={
                    "fields": {
                        "device_id": record.device_id,
                        "category": record.category,
                        "ts": record.timestamp.isoformat(),
                        "error": str(exc),
                    }
                },
            )
            return None

        self._counters.incr("points_written" if outcome.inserted else "points_replaced")
        if not outcome.heartbeat_updated:
            logger.debug("heartbeat_skipped_unknown_device", extra={"fields": {"device_id": record.device_id}})
        return outcome
