from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    UniqueConstraint,
    ForeignKey,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def json_type() -> JSON:
    # Keep PostgreSQL JSONB in production while remaining portable for SQLite-based tests.
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


ALERT_STATUSES = ("active", "acknowledged", "resolved")
OPEN_ALERT_STATUSES = ("active", "acknowledged")
CHANNELS = ("email", "sms", "discord")


class DeviceType(Base):
    """Device type catalog owned by the device registry.

    `data_schema` is either a flat `{field: type}` mapping (all fields required)
    or `{"required": {...}, "optional": {...}}`.
    """

    __tablename__ = "device_types"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    data_schema: Mapped[dict] = mapped_column(json_type(), nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    devices: Mapped[list["Device"]] = relationship(back_populates="device_type")


class Device(Base):
    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    device_type_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("device_types.id"), nullable=True
    )

    # Last-communication timestamp; consumed by offline detection elsewhere.
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Latest value reported on the device status topic.
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    device_type: Mapped["DeviceType | None"] = relationship(back_populates="devices")


class TelemetryPoint(Base):
    __tablename__ = "telemetry_points"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    fields: Mapped[dict] = mapped_column(json_type(), nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        # At-least-once delivery upstream: a redelivered reading replaces the row.
        UniqueConstraint("device_id", "category", "ts", name="uq_telemetry_device_category_ts"),
        Index("ix_telemetry_device_ts", "device_id", "ts"),
    )


class AlertRule(Base):
    __tablename__ = "alert_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_type: Mapped[str] = mapped_column(String(16), nullable=False)
    # NULL means the rule applies to every device of the data type.
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    conditions: Mapped[list] = mapped_column(json_type(), nullable=False, default=list)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    cooldown_s: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_alert_rules_data_type", "data_type"),
        Index("ix_alert_rules_device_id", "device_id"),
    )


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # NULL for system alerts (DATA_FORMAT_ERROR); those are never deduplicated.
    rule_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(64), nullable=False, default="THRESHOLD")
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)

    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    description: Mapped[str] = mapped_column(String(1024), nullable=False)
    data: Mapped[dict] = mapped_column(json_type(), nullable=False, default=dict)

    # Consecutive non-matching evaluations while open (hysteresis).
    clear_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    resolution: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    audit_entries: Mapped[list["AlertAuditEntry"]] = relationship(back_populates="alert")

    __table_args__ = (
        # At most one open (active/acknowledged) alert per rule/device pair.
        Index(
            "uq_alerts_open_rule_device",
            "rule_id",
            "device_id",
            unique=True,
            sqlite_where=text("status != 'resolved'"),
            postgresql_where=text("status != 'resolved'"),
        ),
        Index("ix_alerts_rule_device_created", "rule_id", "device_id", "created_at"),
        Index("ix_alerts_device_created", "device_id", "created_at"),
        Index("ix_alerts_status_created", "status", "created_at"),
        Index("ix_alerts_created_id", "created_at", "id"),
    )


class AlertAuditEntry(Base):
    __tablename__ = "alert_audit"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    alert_id: Mapped[str] = mapped_column(String(36), ForeignKey("alerts.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    note: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    alert: Mapped["Alert"] = relationship(back_populates="audit_entries")

    __table_args__ = (Index("ix_alert_audit_alert_created", "alert_id", "created_at"),)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    channels: Mapped[list[str]] = mapped_column(json_type(), nullable=False, default=list)
    severity_filters: Mapped[list[str]] = mapped_column(json_type(), nullable=False, default=lambda: ["all"])
    # Channel -> address (email), phone number (sms) or webhook URL (discord).
    contacts: Mapped[dict] = mapped_column(json_type(), nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    alert_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    event: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_notification_logs_alert_id", "alert_id"),
        Index("ix_notification_logs_user_id", "user_id"),
    )


class DeviceAccessGrant(Base):
    __tablename__ = "device_access_grants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    device_id: Mapped[str] = mapped_column(String(128), ForeignKey("devices.device_id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False)
    access_role: Mapped[str] = mapped_column(String(16), nullable=False, default="viewer")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("device_id", "user_id", name="uq_device_access_grants_device_user"),
        Index("ix_device_access_grants_user", "user_id"),
    )
