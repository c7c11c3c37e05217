from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from carbonwatch.app.models import Alert, AlertAuditEntry, AlertRule
from carbonwatch.app.services.alert_lifecycle import RULE_DISABLED
from carbonwatch.app.services.records import TelemetryRecord
from carbonwatch.app.services.rule_evaluator import AUTO_RECOVERED, RuleEvaluator


T0 = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)
POWER_OVER_5000 = [{"field": "power", "operator": ">", "threshold": 5000}]


def _add_rule(
    session_factory,
    *,
    conditions=POWER_OVER_5000,
    cooldown_s: int = 0,
    device_id: str | None = None,
    severity: str = "critical",
    data_type: str = "energy",
    rule_id: str = "rule-1",
) -> str:
    with session_factory() as session:
        session.add(
            AlertRule(
                id=rule_id,
                name="Power spike",
                data_type=data_type,
                device_id=device_id,
                conditions=conditions,
                severity=severity,
                cooldown_s=cooldown_s,
                created_at=T0 - timedelta(days=1),
                updated_at=T0 - timedelta(days=1),
            )
        )
    return rule_id


def _record(power, *, at: timedelta = timedelta(0), device_id: str = "meter-1") -> TelemetryRecord:
    return TelemetryRecord(device_id=device_id, category="energy", timestamp=T0 + at, fields={"power": power})


def _alerts(session_factory) -> list[Alert]:
    with session_factory() as session:
        return list(session.execute(select(Alert).order_by(Alert.created_at)).scalars().all())


def _evaluator(session_factory, counters, events=None, **kwargs) -> RuleEvaluator:
    sink = events.append if events is not None else None
    return RuleEvaluator(session_factory, event_sink=sink, counters=counters, **kwargs)


def test_breach_creates_one_alert_with_audit_and_event(session_factory, counters) -> None:
    _add_rule(session_factory)
    events: list = []
    report = _evaluator(session_factory, counters, events).evaluate(_record(6000.0))

    alerts = _alerts(session_factory)
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.status == "active"
    assert alert.severity == "critical"
    assert alert.alert_type == "THRESHOLD"
    assert alert.data["fields"] == {"power": 6000.0}
    assert "power=6000.0" in alert.description

    assert report.matched == ["rule-1"]
    assert [e.kind for e in events] == ["created"]
    with session_factory() as session:
        audit = session.execute(select(AlertAuditEntry)).scalars().all()
        assert [(a.action, a.to_status) for a in audit] == [("create", "active")]


def test_repeated_breach_refreshes_the_open_alert(session_factory, counters) -> None:
    _add_rule(session_factory)
    evaluator = _evaluator(session_factory, counters)

    evaluator.evaluate(_record(6000.0))
    evaluator.evaluate(_record(7000.0, at=timedelta(seconds=30)))

    alerts = _alerts(session_factory)
    assert len(alerts) == 1
    assert alerts[0].data["fields"] == {"power": 7000.0}
    assert counters.get("alerts_created") == 1
    assert counters.get("alerts_deduplicated") == 1


def test_cooldown_suppresses_then_allows_a_new_alert(session_factory, counters) -> None:
    _add_rule(session_factory, cooldown_s=300)
    evaluator = _evaluator(session_factory, counters)

    evaluator.evaluate(_record(6000.0))                                # t0: alert A
    evaluator.evaluate(_record(100.0, at=timedelta(seconds=60)))       # recovered
    evaluator.evaluate(_record(6000.0, at=timedelta(seconds=120)))     # within cooldown
    assert len(_alerts(session_factory)) == 1
    assert counters.get("alerts_suppressed_cooldown") == 1

    evaluator.evaluate(_record(6000.0, at=timedelta(seconds=400)))     # past cooldown: alert B
    alerts = _alerts(session_factory)
    assert [a.status for a in alerts] == ["resolved", "active"]
    assert alerts[0].resolution == AUTO_RECOVERED


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def test_power_spike_cooldown_scenario(session_factory, counters) -> None:
    _add_rule(session_factory, cooldown_s=300)
    events: list = []
    evaluator = _evaluator(session_factory, counters, events)

    evaluator.evaluate(_record(6000.0))
    first_id = _alerts(session_factory)[0].id

    # Still breaching one minute later: A1 is refreshed, no second alert.
    evaluator.evaluate(_record(6200.0, at=timedelta(seconds=60)))
    alerts = _alerts(session_factory)
    assert [a.id for a in alerts] == [first_id]
    assert alerts[0].data["fields"] == {"power": 6200.0}
    assert _aware(alerts[0].updated_at) == T0 + timedelta(seconds=60)
    assert _aware(alerts[0].created_at) == T0

    evaluator.evaluate(_record(4000.0, at=timedelta(seconds=120)))
    alerts = _alerts(session_factory)
    assert [(a.status, a.resolution) for a in alerts] == [("resolved", AUTO_RECOVERED)]

    evaluator.evaluate(_record(6500.0, at=timedelta(seconds=400)))
    alerts = _alerts(session_factory)
    assert [(a.status, a.data["fields"]) for a in alerts] == [
        ("resolved", {"power": 6200.0}),
        ("active", {"power": 6500.0}),
    ]
    assert alerts[1].id != first_id
    assert [e.kind for e in events] == ["created", "resolved", "created"]
    assert counters.get("alerts_suppressed_cooldown") == 0


def test_hysteresis_needs_n_clear_readings(session_factory, counters) -> None:
    _add_rule(session_factory)
    events: list = []
    evaluator = _evaluator(session_factory, counters, events, hysteresis_clear_count=2)

    evaluator.evaluate(_record(6000.0))
    evaluator.evaluate(_record(100.0, at=timedelta(seconds=10)))
    assert _alerts(session_factory)[0].status == "active"

    # A breach in between resets the streak.
    evaluator.evaluate(_record(6000.0, at=timedelta(seconds=20)))
    evaluator.evaluate(_record(100.0, at=timedelta(seconds=30)))
    assert _alerts(session_factory)[0].status == "active"

    evaluator.evaluate(_record(100.0, at=timedelta(seconds=40)))
    alert = _alerts(session_factory)[0]
    assert alert.status == "resolved"
    assert alert.resolved_by == "system"
    assert [e.kind for e in events] == ["created", "resolved"]


def test_acknowledged_alert_also_auto_resolves(session_factory, counters) -> None:
    _add_rule(session_factory)
    evaluator = _evaluator(session_factory, counters)
    evaluator.evaluate(_record(6000.0))
    with session_factory() as session:
        session.execute(select(Alert)).scalar_one().status = "acknowledged"

    evaluator.evaluate(_record(100.0, at=timedelta(seconds=10)))
    assert _alerts(session_factory)[0].status == "resolved"


def test_rules_are_scoped_by_device_and_data_type(session_factory, counters) -> None:
    _add_rule(session_factory, device_id="meter-2", rule_id="rule-meter-2")
    _add_rule(session_factory, data_type="carbon", rule_id="rule-carbon")
    evaluator = _evaluator(session_factory, counters)

    report = evaluator.evaluate(_record(6000.0, device_id="meter-1"))
    assert report.matched == []
    assert _alerts(session_factory) == []

    report = evaluator.evaluate(_record(6000.0, device_id="meter-2"))
    assert report.matched == ["rule-meter-2"]


def test_each_device_gets_its_own_open_alert(session_factory, counters) -> None:
    _add_rule(session_factory)
    evaluator = _evaluator(session_factory, counters)

    evaluator.evaluate(_record(6000.0, device_id="meter-1"))
    evaluator.evaluate(_record(6000.0, device_id="meter-2"))

    assert sorted(a.device_id for a in _alerts(session_factory)) == ["meter-1", "meter-2"]


def test_failing_rule_is_disabled_after_k_consecutive_failures(session_factory, counters) -> None:
    _add_rule(session_factory)
    evaluator = _evaluator(session_factory, counters, max_consecutive_failures=3)

    for i in range(3):
        report = evaluator.evaluate(_record("n/a", at=timedelta(seconds=i)))
        assert "rule-1" in report.failures

    assert report.disabled == ["rule-1"]
    with session_factory() as session:
        rule = session.get(AlertRule, "rule-1")
        assert rule.is_active is False
        assert rule.consecutive_failures == 3
        assert "cannot compare" in (rule.last_error or "")
    assert counters.get("rules_auto_disabled") == 1

    # Disabled rules are no longer candidates.
    assert evaluator.evaluate(_record(6000.0, at=timedelta(seconds=10))).matched == []


def test_success_resets_the_failure_count(session_factory, counters) -> None:
    _add_rule(session_factory)
    evaluator = _evaluator(session_factory, counters, max_consecutive_failures=3)

    evaluator.evaluate(_record("n/a"))
    evaluator.evaluate(_record("n/a", at=timedelta(seconds=1)))
    evaluator.evaluate(_record(10.0, at=timedelta(seconds=2)))

    with session_factory() as session:
        rule = session.get(AlertRule, "rule-1")
        assert rule.consecutive_failures == 0
        assert rule.last_error is None
        assert rule.is_active is True


def test_one_broken_rule_does_not_block_the_others(session_factory, counters) -> None:
    _add_rule(session_factory, rule_id="rule-broken", conditions=[{"field": "power", "operator": "~", "threshold": 1}])
    _add_rule(session_factory, rule_id="rule-ok")

    report = _evaluator(session_factory, counters).evaluate(_record(6000.0))

    assert report.matched == ["rule-ok"]
    assert "rule-broken" in report.failures
    assert [a.rule_id for a in _alerts(session_factory)] == ["rule-ok"]


def test_partial_unique_index_rejects_a_second_open_alert(session_factory, counters) -> None:
    _add_rule(session_factory)
    _evaluator(session_factory, counters).evaluate(_record(6000.0))

    with pytest.raises(IntegrityError):
        with session_factory() as session:
            session.add(
                Alert(
                    rule_id="rule-1",
                    device_id="meter-1",
                    severity="critical",
                    status="active",
                    description="duplicate",
                    created_at=T0,
                    updated_at=T0,
                )
            )


class _RacingEvaluator(RuleEvaluator):
    """Misses the open alert, as when another worker commits one after our lookup."""

    def _find_open_alert(self, session, rule_id, device_id):
        return None


def test_concurrent_open_alert_is_suppressed_not_duplicated(session_factory, counters) -> None:
    _add_rule(session_factory)
    _evaluator(session_factory, counters).evaluate(_record(6000.0))

    events: list = []
    racing = _RacingEvaluator(session_factory, event_sink=events.append, counters=counters)
    report = racing.evaluate(_record(6500.0, at=timedelta(seconds=10)))

    assert report.matched == ["rule-1"]
    assert report.events == []
    assert events == []
    alerts = _alerts(session_factory)
    assert len(alerts) == 1
    assert alerts[0].data["fields"] == {"power": 6000.0}
    assert counters.get("alerts_conflict_suppressed") == 1
    assert counters.get("alerts_created") == 1
    assert counters.get("rule_storage_errors") == 0


def test_auto_disabled_rule_resolves_its_open_alerts(session_factory, counters) -> None:
    _add_rule(session_factory)
    events: list = []
    evaluator = _evaluator(session_factory, counters, events, max_consecutive_failures=2)
    evaluator.evaluate(_record(6000.0))

    evaluator.evaluate(_record("n/a", at=timedelta(seconds=1)))
    report = evaluator.evaluate(_record("n/a", at=timedelta(seconds=2)))

    assert report.disabled == ["rule-1"]
    alert = _alerts(session_factory)[0]
    assert alert.status == "resolved"
    assert alert.resolution == RULE_DISABLED
    assert alert.resolved_by == "system"
    assert [e.kind for e in events] == ["created", "resolved"]
