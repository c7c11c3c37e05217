from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import select

from carbonwatch.app.errors import NotificationDeliveryError
from carbonwatch.app.models import Device, DeviceAccessGrant, NotificationLog, NotificationPreference
from carbonwatch.app.services import notifications
from carbonwatch.app.services.notifications import (
    DiscordWebhookAdapter,
    EmailSmtpAdapter,
    NotificationDispatcher,
    format_message,
    wants_severity,
)
from carbonwatch.app.services.records import AlertEvent
from carbonwatch.app.services.registry import SqlAuthorizationDirectory
from carbonwatch.app.services.retry import RetryPolicy


NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


class FakeAdapter:
    """Fails `failures` times (retryable unless told otherwise), then succeeds."""

    def __init__(self, failures: int = 0, *, retryable: bool = True) -> None:
        self.failures = failures
        self.retryable = retryable
        self.calls: list[tuple[str, str | None]] = []

    def deliver(self, message, contact, *, timeout_s) -> None:
        self.calls.append((message.subject, contact))
        if len(self.calls) <= self.failures:
            raise NotificationDeliveryError("HTTP 503", error_class="HTTP_503", retryable=self.retryable)


class StaticDirectory:
    def __init__(self, users: list[str]) -> None:
        self.users = users

    def get_authorized_users(self, device_id: str) -> list[str]:
        return list(self.users)


def _event(severity: str = "critical", kind: str = "created") -> AlertEvent:
    return AlertEvent(
        kind=kind,  # type: ignore[arg-type]
        alert_id="alert-1",
        rule_id="rule-1",
        alert_type="THRESHOLD",
        device_id="meter-1",
        severity=severity,
        status="active",
        description="Power spike: power=6000.0 (> 5000)",
        occurred_at=NOW,
    )


def _prefs(session_factory, *rows: dict[str, Any]) -> None:
    with session_factory() as session:
        for row in rows:
            session.add(NotificationPreference(**row))


def _logs(session_factory) -> list[tuple[str, str, int, str]]:
    with session_factory() as session:
        rows = session.execute(
            select(NotificationLog).order_by(NotificationLog.user_id, NotificationLog.channel, NotificationLog.attempt)
        ).scalars()
        return [(r.user_id, r.channel, r.attempt, r.status) for r in rows]


def _dispatcher(session_factory, counters, adapters, users, **kwargs) -> NotificationDispatcher:
    return NotificationDispatcher(
        session_factory,
        authorization=StaticDirectory(users),
        adapters=adapters,
        policy=kwargs.pop("policy", RetryPolicy(max_attempts=3, base_delay_s=0.5)),
        sleep=lambda _: None,
        counters=counters,
        **kwargs,
    )


def test_wants_severity() -> None:
    assert wants_severity(["all"], "low")
    assert wants_severity(None, "critical")
    assert wants_severity(["high", "critical"], "CRITICAL")
    assert not wants_severity(["critical"], "medium")


def test_format_message_mentions_severity_device_and_resolution() -> None:
    event = AlertEvent(**{**_event().__dict__, "kind": "resolved", "actor": "ops@example.com", "resolution": "fixed"})
    message = format_message(event)
    assert message.subject == "[CRITICAL] THRESHOLD alert resolved on meter-1"
    assert "by ops@example.com" in message.body
    assert "resolution: fixed" in message.body


def test_audience_respects_severity_filters_and_authorization(session_factory, counters) -> None:
    _prefs(
        session_factory,
        {"user_id": "a@example.com", "channels": ["discord"], "severity_filters": ["critical"]},
        {"user_id": "b@example.com", "channels": ["discord"], "severity_filters": ["all"]},
        {"user_id": "outsider@example.com", "channels": ["discord"], "severity_filters": ["all"]},
    )
    discord = FakeAdapter()
    dispatcher = _dispatcher(session_factory, counters, {"discord": discord}, ["a@example.com", "b@example.com"])
    try:
        critical = dispatcher.dispatch(_event("critical"))
        medium = dispatcher.dispatch(_event("medium"))
    finally:
        dispatcher.shutdown()

    assert sorted(o.user_id for o in critical) == ["a@example.com", "b@example.com"]
    assert [o.user_id for o in medium] == ["b@example.com"]
    assert len(discord.calls) == 3


def test_each_subscribed_channel_is_a_separate_delivery(session_factory, counters) -> None:
    _prefs(
        session_factory,
        {
            "user_id": "a@example.com",
            "channels": ["discord", "sms"],
            "severity_filters": ["all"],
            "contacts": {"discord": "https://discord.test/hook", "sms": "+15550100"},
        },
    )
    discord, sms = FakeAdapter(), FakeAdapter()
    dispatcher = _dispatcher(session_factory, counters, {"discord": discord, "sms": sms}, ["a@example.com"])
    try:
        outcomes = dispatcher.dispatch(_event())
    finally:
        dispatcher.shutdown()

    assert sorted((o.channel, o.delivered) for o in outcomes) == [("discord", True), ("sms", True)]
    assert sms.calls[0][1] == "+15550100"
    assert counters.get("notifications_sent") == 2


def test_every_retry_attempt_is_logged(session_factory, counters) -> None:
    _prefs(session_factory, {"user_id": "a@example.com", "channels": ["discord"], "severity_filters": ["all"]})
    dispatcher = _dispatcher(session_factory, counters, {"discord": FakeAdapter(failures=2)}, ["a@example.com"])
    try:
        [outcome] = dispatcher.dispatch(_event())
    finally:
        dispatcher.shutdown()

    assert outcome.delivered is True
    assert outcome.attempts == 3
    assert _logs(session_factory) == [
        ("a@example.com", "discord", 1, "failed"),
        ("a@example.com", "discord", 2, "failed"),
        ("a@example.com", "discord", 3, "sent"),
    ]


def test_exhausted_retries_leave_failed_rows_and_count(session_factory, counters) -> None:
    _prefs(session_factory, {"user_id": "a@example.com", "channels": ["discord"], "severity_filters": ["all"]})
    dispatcher = _dispatcher(session_factory, counters, {"discord": FakeAdapter(failures=10)}, ["a@example.com"])
    try:
        [outcome] = dispatcher.dispatch(_event())
    finally:
        dispatcher.shutdown()

    assert outcome.delivered is False
    assert [row[3] for row in _logs(session_factory)] == ["failed", "failed", "failed"]
    assert counters.get("notifications_failed") == 1
    with session_factory() as session:
        error = session.execute(select(NotificationLog.error).limit(1)).scalar_one()
    assert error.startswith("HTTP_503")


def test_missing_contact_is_one_failed_attempt(session_factory, counters) -> None:
    _prefs(session_factory, {"user_id": "a@example.com", "channels": ["email"], "severity_filters": ["all"]})
    adapters = {"email": EmailSmtpAdapter(host="smtp.invalid")}
    dispatcher = _dispatcher(session_factory, counters, adapters, ["a@example.com"])
    try:
        [outcome] = dispatcher.dispatch(_event())
    finally:
        dispatcher.shutdown()

    assert outcome.delivered is False
    assert outcome.attempts == 1
    assert _logs(session_factory) == [("a@example.com", "email", 1, "failed")]


def test_no_audience_means_no_deliveries(session_factory, counters) -> None:
    _prefs(session_factory, {"user_id": "a@example.com", "channels": ["discord"], "severity_filters": ["all"]})
    discord = FakeAdapter()
    dispatcher = _dispatcher(session_factory, counters, {"discord": discord}, [])
    try:
        assert dispatcher.dispatch(_event()) == []
    finally:
        dispatcher.shutdown()
    assert discord.calls == []


def test_submit_runs_dispatch_in_the_background(session_factory, counters) -> None:
    _prefs(session_factory, {"user_id": "a@example.com", "channels": ["discord"], "severity_filters": ["all"]})
    dispatcher = _dispatcher(session_factory, counters, {"discord": FakeAdapter()}, ["a@example.com"])
    try:
        outcomes = dispatcher.submit(_event()).result(timeout=5)
    finally:
        dispatcher.shutdown()
    assert [o.delivered for o in outcomes] == [True]


def test_sql_directory_merges_grants_with_admins(session_factory) -> None:
    with session_factory() as session:
        session.add(Device(device_id="meter-1", display_name="Meter 1"))
        session.flush()
        session.add(DeviceAccessGrant(device_id="meter-1", user_id="Owner@Example.com"))

    directory = SqlAuthorizationDirectory(session_factory, always_authorized=["admin@example.com"])
    assert directory.get_authorized_users("meter-1") == ["admin@example.com", "owner@example.com"]
    assert directory.get_authorized_users("meter-2") == ["admin@example.com"]


def test_discord_adapter_posts_content(monkeypatch) -> None:
    sent: dict[str, Any] = {}

    def fake_post(url, json=None, timeout=None, **kwargs):
        sent.update(url=url, json=json, timeout=timeout)
        return SimpleNamespace(status_code=204)

    monkeypatch.setattr(notifications.requests, "post", fake_post)
    DiscordWebhookAdapter(default_webhook_url="https://discord.test/default").deliver(
        format_message(_event()), None, timeout_s=2.0
    )
    assert sent["url"] == "https://discord.test/default"
    assert sent["json"]["content"].startswith("[CRITICAL]")
    assert sent["timeout"] == 2.0


@pytest.mark.parametrize("status_code,retryable", [(500, True), (429, True), (404, False)])
def test_discord_adapter_classifies_http_errors(monkeypatch, status_code: int, retryable: bool) -> None:
    monkeypatch.setattr(
        notifications.requests, "post", lambda *a, **k: SimpleNamespace(status_code=status_code)
    )
    with pytest.raises(NotificationDeliveryError) as err:
        DiscordWebhookAdapter().deliver(format_message(_event()), "https://discord.test/hook", timeout_s=1.0)
    assert err.value.retryable is retryable
    assert err.value.error_class == f"HTTP_{status_code}"
