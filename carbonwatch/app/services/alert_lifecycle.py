from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import SessionFactory, db_session
from ..errors import InvalidTransitionError, NotFoundError
from ..models import OPEN_ALERT_STATUSES, Alert, AlertAuditEntry
from ..observability import PipelineCounters, pipeline_counters, record_alert_transition_metric
from .records import AlertEvent, event_from_alert


logger = logging.getLogger("carbonwatch.alerts")

DATA_FORMAT_ERROR = "DATA_FORMAT_ERROR"
THRESHOLD = "THRESHOLD"
DEVICE_STATUS_ABNORMAL = "DEVICE_STATUS_ABNORMAL"

ABNORMAL_STATUS_SEVERITY = {"error": "critical", "warning": "medium"}

# Resolution recorded on open alerts when their rule is switched off.
RULE_DISABLED = "rule-disabled"

EventSink = Callable[[AlertEvent], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def write_audit(
    session: Session,
    alert: Alert,
    *,
    action: str,
    actor: str,
    from_status: str | None,
    at: datetime,
    note: str | None = None,
) -> None:
    session.add(
        AlertAuditEntry(
            alert_id=alert.id,
            action=action,
            actor=actor,
            from_status=from_status,
            to_status=alert.status,
            note=note,
            created_at=at,
        )
    )


def resolve_alert(session: Session, alert: Alert, *, actor: str, resolution: str, at: datetime) -> None:
    """Move an open alert to resolved. Callers check the current status."""

    previous = alert.status
    alert.status = "resolved"
    alert.resolution = resolution
    alert.resolved_by = actor
    alert.resolved_at = at
    alert.updated_at = at
    write_audit(session, alert, action="resolve", actor=actor, from_status=previous, at=at, note=resolution)


def resolve_open_alerts(session: Session, rule_id: str, *, actor: str, resolution: str, at: datetime) -> list[AlertEvent]:
    alerts = session.execute(
        select(Alert).where(Alert.rule_id == rule_id, Alert.status.in_(OPEN_ALERT_STATUSES)).with_for_update()
    ).scalars().all()
    events: list[AlertEvent] = []
    for alert in alerts:
        resolve_alert(session, alert, actor=actor, resolution=resolution, at=at)
        events.append(event_from_alert(alert, kind="resolved", occurred_at=at, actor=actor))
    return events


def publish(sink: EventSink | None, events: Sequence[AlertEvent]) -> None:
    """Hand committed events to the sink; sink failures never affect alert state."""

    for event in events:
        record_alert_transition_metric(state=event.kind, alert_type=event.alert_type, severity=event.severity)
        if sink is None:
            continue
        try:
            sink(event)
        except Exception:
            logger.exception(
                "alert_event_sink_failed",
                extra={"fields": {"alert_id": event.alert_id, "kind": event.kind}},
            )


class AlertLifecycleManager:
    """Operator-driven alert transitions.

    active -> acknowledged -> resolved, or active -> resolved. Resolved is
    terminal; a later breach always creates a new alert row.
    """

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        *,
        event_sink: EventSink | None = None,
        counters: PipelineCounters = pipeline_counters,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.event_sink = event_sink
        self._counters = counters
        self._clock = clock

    def _load_for_update(self, session: Session, alert_id: str) -> Alert:
        alert = session.execute(select(Alert).where(Alert.id == alert_id).with_for_update()).scalar_one_or_none()
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        return alert

    def acknowledge(self, alert_id: str, user_id: str) -> Alert:
        now = self._clock()
        with self._session_factory() as session:
            alert = self._load_for_update(session, alert_id)
            if alert.status != "active":
                raise InvalidTransitionError(f"cannot acknowledge alert in status '{alert.status}'")

            alert.status = "acknowledged"
            alert.acknowledged_by = user_id
            alert.acknowledged_at = now
            alert.updated_at = now
            write_audit(session, alert, action="acknowledge", actor=user_id, from_status="active", at=now)
            event = event_from_alert(alert, kind="acknowledged", occurred_at=now, actor=user_id)

        logger.info("alert_acknowledged", extra={"fields": {"alert_id": alert_id, "user_id": user_id}})
        publish(self.event_sink, [event])
        return alert

    def resolve(self, alert_id: str, user_id: str, resolution_text: str) -> Alert:
        now = self._clock()
        with self._session_factory() as session:
            alert = self._load_for_update(session, alert_id)
            if alert.status not in OPEN_ALERT_STATUSES:
                raise InvalidTransitionError(f"alert {alert_id} is already resolved")

            resolve_alert(session, alert, actor=user_id, resolution=resolution_text, at=now)
            event = event_from_alert(alert, kind="resolved", occurred_at=now, actor=user_id)

        logger.info("alert_resolved", extra={"fields": {"alert_id": alert_id, "user_id": user_id}})
        publish(self.event_sink, [event])
        return alert

    def open_data_format_alert(
        self,
        device_id: str,
        payload: Mapping[str, Any],
        errors: Sequence[str],
        *,
        category: str | None = None,
        at: datetime | None = None,
    ) -> Alert:
        """Record a schema violation as a high-severity system alert (never deduplicated)."""

        now = at or self._clock()
        with self._session_factory() as session:
            alert = Alert(
                rule_id=None,
                alert_type=DATA_FORMAT_ERROR,
                device_id=device_id,
                severity="high",
                status="active",
                description=f"Telemetry from {device_id} failed schema validation: {'; '.join(errors)}"[:1024],
                data={"category": category, "payload": dict(payload), "errors": list(errors)},
                created_at=now,
                updated_at=now,
            )
            session.add(alert)
            session.flush()
            write_audit(session, alert, action="create", actor="system", from_status=None, at=now)
            event = event_from_alert(alert, kind="created", occurred_at=now, actor="system")

        self._counters.incr("data_format_alerts")
        logger.warning(
            "data_format_alert_opened",
            extra={"fields": {"alert_id": alert.id, "device_id": device_id, "errors": list(errors)}},
        )
        publish(self.event_sink, [event])
        return alert

    def raise_device_status_alert(
        self,
        device_id: str,
        status: str,
        *,
        message: str = "",
        at: datetime | None = None,
    ) -> Alert | None:
        """Open a DEVICE_STATUS_ABNORMAL alert for an `error` or `warning` status report.

        One open alert per device: a repeated report refreshes it (escalating
        the severity if needed) and returns None. Other statuses are ignored.
        """

        severity = ABNORMAL_STATUS_SEVERITY.get(status)
        if severity is None:
            return None

        now = at or self._clock()
        data = {"status": status, "message": message}
        description = f"Device {device_id} reported status '{status}'"
        if message:
            description = f"{description}: {message}"[:1024]
        with self._session_factory() as session:
            alert = session.execute(
                select(Alert)
                .where(
                    Alert.device_id == device_id,
                    Alert.alert_type == DEVICE_STATUS_ABNORMAL,
                    Alert.status.in_(OPEN_ALERT_STATUSES),
                )
                .order_by(Alert.created_at.desc())
                .limit(1)
                .with_for_update()
            ).scalar_one_or_none()

            if alert is not None:
                alert.data = data
                alert.updated_at = now
                if severity == "critical":
                    alert.severity = severity
                created = None
            else:
                alert = Alert(
                    rule_id=None,
                    alert_type=DEVICE_STATUS_ABNORMAL,
                    device_id=device_id,
                    severity=severity,
                    status="active",
                    description=description,
                    data=data,
                    created_at=now,
                    updated_at=now,
                )
                session.add(alert)
                session.flush()
                write_audit(session, alert, action="create", actor="system", from_status=None, at=now)
                created = event_from_alert(alert, kind="created", occurred_at=now, actor="system")

        if created is None:
            self._counters.incr("device_status_alerts_refreshed")
            return None

        self._counters.incr("device_status_alerts")
        logger.warning(
            "device_status_alert_opened",
            extra={"fields": {"alert_id": alert.id, "device_id": device_id, "status": status}},
        )
        publish(self.event_sink, [created])
        return alert

    def resolve_open_alerts_for_rule(self, session: Session, rule_id: str, *, actor: str, resolution: str) -> list[AlertEvent]:
        """Resolve every open alert of a rule inside the caller's transaction.

        The caller publishes the returned events after commit.
        """

        return resolve_open_alerts(session, rule_id, actor=actor, resolution=resolution, at=self._clock())
