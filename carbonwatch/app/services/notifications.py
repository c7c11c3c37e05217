from __future__ import annotations

import logging
import smtplib
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Callable, Mapping, Protocol, Sequence

import requests
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings
from ..db import SessionFactory, db_session
from ..errors import NotificationDeliveryError
from ..models import CHANNELS, NotificationLog, NotificationPreference
from ..observability import PipelineCounters, pipeline_counters, record_notification_attempt_metric
from .records import AlertEvent
from .registry import AuthorizationDirectory
from .retry import RetryExecutor, RetryPolicy


logger = logging.getLogger("carbonwatch.notifications")


@dataclass(frozen=True)
class NotificationMessage:
    subject: str
    body: str


@dataclass(frozen=True)
class Recipient:
    user_id: str
    channels: tuple[str, ...]
    contacts: Mapping[str, str]


@dataclass(frozen=True)
class DeliveryOutcome:
    user_id: str
    channel: str
    delivered: bool
    attempts: int
    error: str | None = None


class ChannelAdapter(Protocol):
    def deliver(self, message: NotificationMessage, contact: str | None, *, timeout_s: float | None) -> None: ...


def format_message(event: AlertEvent) -> NotificationMessage:
    verb = {"created": "raised", "acknowledged": "acknowledged", "resolved": "resolved"}.get(event.kind, event.kind)
    subject = f"[{event.severity.upper()}] {event.alert_type} alert {verb} on {event.device_id}"
    lines = [subject, event.description]
    if event.actor and event.kind != "created":
        lines.append(f"by {event.actor}")
    if event.resolution:
        lines.append(f"resolution: {event.resolution}")
    lines.append(f"alert id: {event.alert_id}")
    return NotificationMessage(subject=subject, body="\n".join(lines))


def _http_error(channel: str, response: requests.Response) -> NotificationDeliveryError:
    code = response.status_code
    retryable = code >= 500 or code == 429
    return NotificationDeliveryError(
        f"{channel} endpoint returned HTTP {code}",
        error_class=f"HTTP_{code}",
        retryable=retryable,
    )


class DiscordWebhookAdapter:
    """Posts `{"content": ...}` to the user's webhook, or the shared default one."""

    def __init__(self, *, default_webhook_url: str | None = None) -> None:
        self.default_webhook_url = default_webhook_url

    def deliver(self, message: NotificationMessage, contact: str | None, *, timeout_s: float | None) -> None:
        url = (contact or self.default_webhook_url or "").strip()
        if not url:
            raise NotificationDeliveryError(
                "no discord webhook configured", error_class="MISSING_CONTACT", retryable=False
            )
        try:
            response = requests.post(url, json={"content": message.body[:2000]}, timeout=timeout_s)
        except requests.RequestException as exc:
            raise NotificationDeliveryError(str(exc), error_class=type(exc).__name__) from exc
        if not 200 <= response.status_code < 300:
            raise _http_error("discord", response)


class SmsGatewayAdapter:
    def __init__(self, *, gateway_url: str | None, token: str | None = None) -> None:
        self.gateway_url = gateway_url
        self.token = token

    def deliver(self, message: NotificationMessage, contact: str | None, *, timeout_s: float | None) -> None:
        if not self.gateway_url:
            raise NotificationDeliveryError(
                "SMS gateway not configured", error_class="CHANNEL_NOT_CONFIGURED", retryable=False
            )
        if not contact:
            raise NotificationDeliveryError(
                "no phone number on file", error_class="MISSING_CONTACT", retryable=False
            )
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = requests.post(
                self.gateway_url,
                json={"to": contact, "message": message.subject},
                headers=headers,
                timeout=timeout_s,
            )
        except requests.RequestException as exc:
            raise NotificationDeliveryError(str(exc), error_class=type(exc).__name__) from exc
        if not 200 <= response.status_code < 300:
            raise _http_error("sms", response)


class EmailSmtpAdapter:
    def __init__(
        self,
        *,
        host: str | None,
        port: int = 587,
        sender: str = "alerts@carbonwatch.local",
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password

    def deliver(self, message: NotificationMessage, contact: str | None, *, timeout_s: float | None) -> None:
        if not self.host:
            raise NotificationDeliveryError(
                "SMTP not configured", error_class="CHANNEL_NOT_CONFIGURED", retryable=False
            )
        if not contact:
            raise NotificationDeliveryError(
                "no email address on file", error_class="MISSING_CONTACT", retryable=False
            )

        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = contact
        msg.set_content(message.body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=timeout_s or 10.0) as smtp:
                if self.username:
                    smtp.starttls()
                    smtp.login(self.username, self.password or "")
                smtp.send_message(msg)
        except smtplib.SMTPRecipientsRefused as exc:
            raise NotificationDeliveryError(str(exc), error_class="RECIPIENT_REFUSED", retryable=False) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationDeliveryError(str(exc), error_class=type(exc).__name__) from exc


def adapters_from_settings(settings: Settings) -> dict[str, ChannelAdapter]:
    return {
        "discord": DiscordWebhookAdapter(default_webhook_url=settings.discord_webhook_url),
        "sms": SmsGatewayAdapter(gateway_url=settings.sms_gateway_url, token=settings.sms_gateway_token),
        "email": EmailSmtpAdapter(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_sender,
            username=settings.smtp_username,
            password=settings.smtp_password,
        ),
    }


def wants_severity(filters: Sequence[str] | None, severity: str) -> bool:
    normalized = {str(f).strip().lower() for f in (filters or ["all"])}
    return "all" in normalized or severity.lower() in normalized


class NotificationDispatcher:
    """Fan alert events out to subscribed, authorized users.

    One delivery task per (user, channel) runs on a thread pool; each task
    retries under the notification RetryPolicy and logs every attempt to
    notification_logs. Nothing here reads or writes alert rows.
    """

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        *,
        authorization: AuthorizationDirectory,
        adapters: Mapping[str, ChannelAdapter],
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 8,
        counters: PipelineCounters = pipeline_counters,
    ) -> None:
        self._session_factory = session_factory
        self.authorization = authorization
        self.adapters = dict(adapters)
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._counters = counters
        self._delivery_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify-delivery")
        # Separate pool so a queued dispatch never waits on its own delivery slots.
        self._dispatch_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify-dispatch")

    def audience(self, event: AlertEvent) -> list[Recipient]:
        authorized = {u.lower() for u in self.authorization.get_authorized_users(event.device_id)}
        if not authorized:
            return []

        with self._session_factory() as session:
            prefs = session.execute(
                select(NotificationPreference).order_by(NotificationPreference.user_id)
            ).scalars().all()
            out: list[Recipient] = []
            for pref in prefs:
                if pref.user_id.lower() not in authorized:
                    continue
                if not wants_severity(pref.severity_filters, event.severity):
                    continue
                channels = tuple(c for c in (pref.channels or []) if c in CHANNELS)
                if channels:
                    out.append(Recipient(user_id=pref.user_id, channels=channels, contacts=dict(pref.contacts or {})))
        return out

    def submit(self, event: AlertEvent) -> Future:
        """Schedule dispatch in the background; used as the pipeline's event sink."""

        return self._dispatch_pool.submit(self._dispatch_contained, event)

    def _dispatch_contained(self, event: AlertEvent) -> list[DeliveryOutcome]:
        try:
            return self.dispatch(event)
        except Exception:
            logger.exception("notification_dispatch_failed", extra={"fields": {"alert_id": event.alert_id}})
            return []

    def dispatch(self, event: AlertEvent) -> list[DeliveryOutcome]:
        recipients = self.audience(event)
        if not recipients:
            logger.debug("notification_no_audience", extra={"fields": {"alert_id": event.alert_id}})
            return []

        message = format_message(event)
        futures = [
            self._delivery_pool.submit(self._deliver, event, message, recipient, channel)
            for recipient in recipients
            for channel in recipient.channels
        ]
        wait(futures)
        outcomes = [f.result() for f in futures]
        logger.info(
            "notification_dispatched",
            extra={
                "fields": {
                    "alert_id": event.alert_id,
                    "event": event.kind,
                    "deliveries": len(outcomes),
                    "delivered": sum(1 for o in outcomes if o.delivered),
                }
            },
        )
        return outcomes

    def _deliver(
        self, event: AlertEvent, message: NotificationMessage, recipient: Recipient, channel: str
    ) -> DeliveryOutcome:
        adapter = self.adapters.get(channel)
        contact = recipient.contacts.get(channel)
        attempts = 0

        def on_attempt(attempt: int, exc: BaseException | None) -> None:
            nonlocal attempts
            attempts = attempt
            self._log_attempt(event, recipient.user_id, channel, attempt, exc)

        def attempt_once() -> None:
            if adapter is None:
                raise NotificationDeliveryError(
                    f"no adapter for channel {channel}", error_class="CHANNEL_NOT_CONFIGURED", retryable=False
                )
            adapter.deliver(message, contact, timeout_s=self.policy.per_attempt_timeout_s)

        executor = RetryExecutor(self.policy, sleep=self._sleep, clock=self._clock)
        try:
            executor.call(
                attempt_once,
                retry_on=(NotificationDeliveryError,),
                on_attempt=on_attempt,
                op=f"notify:{channel}",
            )
        except NotificationDeliveryError as exc:
            self._counters.incr("notifications_failed")
            return DeliveryOutcome(recipient.user_id, channel, delivered=False, attempts=attempts, error=str(exc))
        except Exception as exc:
            # Unexpected adapter bug: log the attempt and contain it.
            self._log_attempt(event, recipient.user_id, channel, attempts + 1, exc)
            self._counters.incr("notifications_failed")
            logger.exception("notification_adapter_crashed", extra={"fields": {"channel": channel}})
            return DeliveryOutcome(recipient.user_id, channel, delivered=False, attempts=attempts + 1, error=str(exc))

        self._counters.incr("notifications_sent")
        return DeliveryOutcome(recipient.user_id, channel, delivered=True, attempts=attempts)

    def _log_attempt(
        self, event: AlertEvent, user_id: str, channel: str, attempt: int, exc: BaseException | None
    ) -> None:
        status = "sent" if exc is None else "failed"
        record_notification_attempt_metric(channel=channel, status=status)
        error = None
        if exc is not None:
            error_class = getattr(exc, "error_class", type(exc).__name__)
            error = f"{error_class}: {exc}"[:1024]
        try:
            with self._session_factory() as session:
                session.add(
                    NotificationLog(
                        alert_id=event.alert_id,
                        user_id=user_id,
                        channel=channel,
                        event=event.kind,
                        attempt=attempt,
                        status=status,
                        error=error,
                    )
                )
        except SQLAlchemyError:
            logger.exception(
                "notification_log_write_failed",
                extra={"fields": {"alert_id": event.alert_id, "user_id": user_id, "channel": channel}},
            )

    def shutdown(self, wait: bool = True) -> None:
        self._dispatch_pool.shutdown(wait=wait)
        self._delivery_pool.shutdown(wait=wait)
