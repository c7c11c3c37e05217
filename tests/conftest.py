from __future__ import annotations

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

# Settings are loaded at import time; pin a hermetic environment first.
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./carbonwatch-test.sqlite3")
os.environ.setdefault("AUTO_MIGRATE", "false")
os.environ.setdefault("AUTHZ_ENABLED", "false")
os.environ.setdefault("MQTT_ENABLED", "false")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from carbonwatch.app.db import Base
import carbonwatch.app.models  # noqa: F401  (register models)
from carbonwatch.app.models import Device, DeviceType
from carbonwatch.app.observability import PipelineCounters


def _sqlite_engine(path: Path) -> Engine:
    engine = create_engine(f"sqlite+pysqlite:///{path}", connect_args={"check_same_thread": False})

    # pysqlite's implicit transaction handling breaks SAVEPOINT; take over BEGIN.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def engine(tmp_path: Path) -> Iterator[Engine]:
    engine = _sqlite_engine(tmp_path / "carbonwatch.sqlite3")
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine):
    maker = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def factory() -> Iterator[Session]:
        session = maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return factory


@pytest.fixture()
def counters() -> PipelineCounters:
    return PipelineCounters()


@pytest.fixture()
def seed_devices(session_factory):
    """Catalog with one meter type and a few devices (one without a type)."""

    now = datetime.now(timezone.utc)
    with session_factory() as session:
        session.add(
            DeviceType(
                id="dt-elec-meter",
                name="Electricity meter",
                category="energy",
                data_schema={
                    "required": {"energy_consumption": "number", "power": "number"},
                    "optional": {"voltage": "number"},
                },
                created_at=now,
                updated_at=now,
            )
        )
        session.add(
            DeviceType(
                id="dt-carbon-sensor",
                name="Carbon sensor",
                category="carbon",
                data_schema={"carbon_emission": "number"},
                created_at=now,
                updated_at=now,
            )
        )
        session.flush()
        session.add(Device(device_id="meter-1", display_name="Meter 1", device_type_id="dt-elec-meter"))
        session.add(Device(device_id="meter-2", display_name="Meter 2", device_type_id="dt-elec-meter"))
        session.add(Device(device_id="sensor-1", display_name="Sensor 1", device_type_id="dt-carbon-sensor"))
        session.add(Device(device_id="untyped-1", display_name="Untyped 1", device_type_id=None))
    return ["meter-1", "meter-2", "sensor-1", "untyped-1"]
