"""Threshold rule evaluation against freshly persisted telemetry.

For each candidate rule the check-and-create of an alert runs in its own
transaction. The partial unique index on open (rule_id, device_id) alerts is
the authority for the one-open-alert invariant: a concurrent insert that
loses the race surfaces as an IntegrityError inside a SAVEPOINT and is
treated as a suppression.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import SessionFactory, db_session
from ..errors import RuleEvaluationError
from ..models import OPEN_ALERT_STATUSES, Alert, AlertRule
from ..observability import PipelineCounters, pipeline_counters
from .alert_lifecycle import (
    RULE_DISABLED,
    THRESHOLD,
    EventSink,
    publish,
    resolve_alert,
    resolve_open_alerts,
    write_audit,
)
from .conditions import Comparison, CompiledRuleCache, ConditionGroup, ConditionParseError
from .records import AlertEvent, TelemetryRecord, event_from_alert


logger = logging.getLogger("carbonwatch.rules")

AUTO_RECOVERED = "auto-recovered"


def _aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class RuleSnapshot:
    """Detached copy of the rule columns the evaluator needs."""

    id: str
    name: str
    severity: str
    cooldown_s: int
    conditions: list
    updated_at: datetime | None
    consecutive_failures: int

    @classmethod
    def from_row(cls, rule: AlertRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            name=rule.name,
            severity=rule.severity,
            cooldown_s=int(rule.cooldown_s or 0),
            conditions=list(rule.conditions or []),
            updated_at=rule.updated_at,
            consecutive_failures=int(rule.consecutive_failures or 0),
        )


@dataclass
class EvaluationReport:
    matched: list[str] = field(default_factory=list)
    events: list[AlertEvent] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    disabled: list[str] = field(default_factory=list)


def _describe(rule: RuleSnapshot, compiled: ConditionGroup, fields: dict[str, Any]) -> str:
    parts: list[str] = []

    def walk(node) -> None:
        if isinstance(node, Comparison):
            if node.field in fields:
                parts.append(f"{node.field}={fields[node.field]} ({node.op} {node.threshold})")
            return
        for child in node.children:
            walk(child)

    walk(compiled)
    detail = ", ".join(parts) if parts else "conditions met"
    return f"{rule.name}: {detail}"[:1024]


class RuleEvaluator:
    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        *,
        cache: CompiledRuleCache | None = None,
        hysteresis_clear_count: int = 1,
        max_consecutive_failures: int = 5,
        event_sink: EventSink | None = None,
        counters: PipelineCounters = pipeline_counters,
    ) -> None:
        if hysteresis_clear_count < 1:
            raise ValueError("hysteresis_clear_count must be >= 1")
        self._session_factory = session_factory
        self.cache = cache or CompiledRuleCache()
        self.hysteresis_clear_count = hysteresis_clear_count
        self.max_consecutive_failures = max_consecutive_failures
        self.event_sink = event_sink
        self._counters = counters

    def candidate_rules(self, record: TelemetryRecord) -> list[RuleSnapshot]:
        with self._session_factory() as session:
            rows = session.execute(
                select(AlertRule)
                .where(
                    AlertRule.is_active.is_(True),
                    AlertRule.data_type == record.category,
                    or_(AlertRule.device_id == record.device_id, AlertRule.device_id.is_(None)),
                )
                .order_by(AlertRule.created_at, AlertRule.id)
            ).scalars().all()
            return [RuleSnapshot.from_row(r) for r in rows]

    def evaluate(self, record: TelemetryRecord) -> EvaluationReport:
        report = EvaluationReport()

        for rule in self.candidate_rules(record):
            try:
                compiled = self.cache.get(rule.id, rule.updated_at, rule.conditions)
                matched = compiled.evaluate(record.fields)
            except (RuleEvaluationError, ConditionParseError) as exc:
                self._record_failure(rule, exc, report)
                continue

            try:
                with self._session_factory() as session:
                    events = self._apply(session, rule, compiled, record, matched)
            except SQLAlchemyError:
                # Storage trouble is not the rule's fault; do not count it against the rule.
                self._counters.incr("rule_storage_errors")
                logger.exception(
                    "rule_apply_failed",
                    extra={"fields": {"rule_id": rule.id, "device_id": record.device_id}},
                )
                continue

            if matched:
                report.matched.append(rule.id)
            report.events.extend(events)
            if rule.consecutive_failures:
                self._reset_failures(rule)

        publish(self.event_sink, report.events)
        return report

    def _find_open_alert(self, session: Session, rule_id: str, device_id: str) -> Alert | None:
        return session.execute(
            select(Alert)
            .where(
                Alert.rule_id == rule_id,
                Alert.device_id == device_id,
                Alert.status.in_(OPEN_ALERT_STATUSES),
            )
            .with_for_update()
        ).scalar_one_or_none()

    def _apply(
        self,
        session: Session,
        rule: RuleSnapshot,
        compiled: ConditionGroup,
        record: TelemetryRecord,
        matched: bool,
    ) -> list[AlertEvent]:
        now = record.timestamp
        open_alert = self._find_open_alert(session, rule.id, record.device_id)

        if not matched:
            if open_alert is None:
                return []
            open_alert.clear_streak = int(open_alert.clear_streak or 0) + 1
            if open_alert.clear_streak < self.hysteresis_clear_count:
                return []
            resolve_alert(session, open_alert, actor="system", resolution=AUTO_RECOVERED, at=now)
            self._counters.incr("alerts_auto_resolved")
            logger.info(
                "alert_auto_resolved",
                extra={"fields": {"alert_id": open_alert.id, "rule_id": rule.id, "device_id": record.device_id}},
            )
            return [event_from_alert(open_alert, kind="resolved", occurred_at=now, actor="system")]

        snapshot = {
            "category": record.category,
            "timestamp": record.timestamp.isoformat(),
            "fields": dict(record.fields),
        }

        if open_alert is not None:
            # Still breaching: refresh the snapshot, never duplicate.
            open_alert.data = snapshot
            open_alert.updated_at = now
            open_alert.clear_streak = 0
            self._counters.incr("alerts_deduplicated")
            return []

        if rule.cooldown_s > 0:
            last_created = session.execute(
                select(Alert.created_at)
                .where(Alert.rule_id == rule.id, Alert.device_id == record.device_id)
                .order_by(Alert.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            last_created = _aware(last_created)
            if last_created is not None and now - last_created < timedelta(seconds=rule.cooldown_s):
                self._counters.incr("alerts_suppressed_cooldown")
                logger.debug(
                    "alert_suppressed_cooldown",
                    extra={"fields": {"rule_id": rule.id, "device_id": record.device_id}},
                )
                return []

        alert = Alert(
            rule_id=rule.id,
            alert_type=THRESHOLD,
            device_id=record.device_id,
            severity=rule.severity,
            status="active",
            description=_describe(rule, compiled, dict(record.fields)),
            data=snapshot,
            clear_streak=0,
            created_at=now,
            updated_at=now,
        )
        try:
            with session.begin_nested():
                session.add(alert)
                session.flush()
        except IntegrityError:
            self._counters.incr("alerts_conflict_suppressed")
            logger.info(
                "alert_insert_conflict_suppressed",
                extra={"fields": {"rule_id": rule.id, "device_id": record.device_id}},
            )
            return []

        write_audit(session, alert, action="create", actor="system", from_status=None, at=now)
        self._counters.incr("alerts_created")
        logger.info(
            "alert_created",
            extra={
                "fields": {
                    "alert_id": alert.id,
                    "rule_id": rule.id,
                    "device_id": record.device_id,
                    "severity": rule.severity,
                }
            },
        )
        return [event_from_alert(alert, kind="created", occurred_at=now, actor="system")]

    def _reset_failures(self, rule: RuleSnapshot) -> None:
        with self._session_factory() as session:
            session.execute(
                update(AlertRule)
                .where(AlertRule.id == rule.id)
                .values(consecutive_failures=0, last_error=None)
            )

    def _record_failure(self, rule: RuleSnapshot, exc: Exception, report: EvaluationReport) -> None:
        message = f"{type(exc).__name__}: {exc}"[:1024]
        report.failures[rule.id] = message
        self._counters.incr("rule_evaluation_errors")

        resolved: list[AlertEvent] = []
        with self._session_factory() as session:
            row = session.get(AlertRule, rule.id, with_for_update=True)
            if row is None:
                return
            row.consecutive_failures = int(row.consecutive_failures or 0) + 1
            row.last_error = message
            failures = row.consecutive_failures
            disable = row.is_active and failures >= self.max_consecutive_failures
            if disable:
                now = datetime.now(timezone.utc)
                row.is_active = False
                row.updated_at = now
                # Disabled rules are not evaluated; their open alerts close here.
                resolved = resolve_open_alerts(session, rule.id, actor="system", resolution=RULE_DISABLED, at=now)

        logger.warning(
            "rule_evaluation_failed",
            extra={"fields": {"rule_id": rule.id, "consecutive_failures": failures, "error": message}},
        )
        if disable:
            report.disabled.append(rule.id)
            self.cache.discard(rule.id)
            self._counters.incr("rules_auto_disabled")
            report.events.extend(resolved)
            logger.error(
                "rule_auto_disabled",
                extra={
                    "fields": {
                        "rule_id": rule.id,
                        "rule_name": rule.name,
                        "consecutive_failures": failures,
                        "last_error": message,
                        "alerts_resolved": len(resolved),
                    }
                },
            )
