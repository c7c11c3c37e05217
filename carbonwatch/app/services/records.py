"""Value objects passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal, Mapping


Category = Literal["energy", "carbon", "status"]
ScalarType = Literal["number", "string", "boolean"]
AlertEventKind = Literal["created", "acknowledged", "resolved"]


@dataclass(frozen=True)
class TelemetryRecord:
    device_id: str
    category: Category
    timestamp: datetime
    fields: Mapping[str, Any]
    # Decoded message body as received; kept for forensic alerts.
    raw: Mapping[str, Any] = field(default_factory=dict)
    topic: str = ""

    def with_fields(self, fields: Mapping[str, Any], *, timestamp: datetime | None = None) -> "TelemetryRecord":
        return replace(self, fields=dict(fields), timestamp=timestamp or self.timestamp)


@dataclass(frozen=True)
class DeviceTypeSchema:
    type_id: str
    required_fields: Mapping[str, ScalarType] = field(default_factory=dict)
    optional_fields: Mapping[str, ScalarType] = field(default_factory=dict)


@dataclass(frozen=True)
class WriteOutcome:
    inserted: bool
    heartbeat_updated: bool


@dataclass(frozen=True)
class AlertEvent:
    """An alert creation or state transition, published after commit."""

    kind: AlertEventKind
    alert_id: str
    rule_id: str | None
    alert_type: str
    device_id: str
    severity: str
    status: str
    description: str
    occurred_at: datetime
    actor: str | None = None
    resolution: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)


def event_from_alert(alert: Any, *, kind: AlertEventKind, occurred_at: datetime, actor: str | None = None) -> AlertEvent:
    return AlertEvent(
        kind=kind,
        alert_id=alert.id,
        rule_id=alert.rule_id,
        alert_type=alert.alert_type,
        device_id=alert.device_id,
        severity=alert.severity,
        status=alert.status,
        description=alert.description,
        occurred_at=occurred_at,
        actor=actor,
        resolution=alert.resolution,
        data=dict(alert.data or {}),
    )
