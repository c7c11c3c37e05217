"""Read-only lookups against the device registry and authorization collaborators.

The pipeline only depends on the two protocols; the SQL implementations read
the tables those collaborators own.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

from sqlalchemy import select

from ..db import SessionFactory, db_session
from ..errors import UnknownDeviceError
from ..models import Device, DeviceAccessGrant
from .records import DeviceTypeSchema
from .validation import schema_from_json


logger = logging.getLogger("carbonwatch.registry")


class DeviceRegistry(Protocol):
    def get_device_type_schema(self, device_id: str) -> DeviceTypeSchema | None:
        """Schema of the device's type, or None for a registered device without one.

        Raises UnknownDeviceError when the device is not registered.
        """
        ...


class AuthorizationDirectory(Protocol):
    def get_authorized_users(self, device_id: str) -> list[str]: ...


class SqlDeviceRegistry:
    def __init__(self, session_factory: SessionFactory = db_session) -> None:
        self._session_factory = session_factory

    def get_device_type_schema(self, device_id: str) -> DeviceTypeSchema | None:
        with self._session_factory() as session:
            device = session.get(Device, device_id)
            if device is None:
                raise UnknownDeviceError(f"device {device_id} is not registered")
            if device.device_type is None:
                return None
            dt = device.device_type
            try:
                return schema_from_json(dt.id, dt.data_schema)
            except ValueError:
                # A broken catalog entry must not stall ingestion for the device.
                logger.error(
                    "device_type_schema_invalid",
                    extra={"fields": {"device_id": device_id, "device_type_id": dt.id}},
                )
                return None


class SqlAuthorizationDirectory:
    """Users granted access to a device, plus globally authorized users (admins)."""

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        *,
        always_authorized: Iterable[str] = (),
    ) -> None:
        self._session_factory = session_factory
        self._always = sorted({u.strip().lower() for u in always_authorized if u and u.strip()})

    def get_authorized_users(self, device_id: str) -> list[str]:
        with self._session_factory() as session:
            rows = session.execute(
                select(DeviceAccessGrant.user_id).where(DeviceAccessGrant.device_id == device_id)
            ).scalars()
            users = {u.lower() for u in rows}
        users.update(self._always)
        return sorted(users)
