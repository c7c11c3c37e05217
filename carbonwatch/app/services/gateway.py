from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import DecodeError
from ..observability import PipelineCounters, pipeline_counters
from .records import Category, TelemetryRecord


logger = logging.getLogger("carbonwatch.gateway")


# Topic prefix -> category. The device id is always the last path segment.
TOPIC_PATTERNS: dict[tuple[str, str], Category] = {
    ("telemetry", "energy"): "energy",
    ("telemetry", "carbon"): "carbon",
    ("device", "status"): "status",
}

SUBSCRIPTIONS: tuple[str, ...] = (
    "telemetry/energy/+",
    "telemetry/carbon/+",
    "device/status/+",
)

# Envelope keys that are not telemetry fields.
_RESERVED_KEYS = {"timestamp", "deviceId", "device_id"}

# Epoch numbers above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 100_000_000_000


def parse_topic(topic: str) -> tuple[Category, str]:
    parts = (topic or "").split("/")
    if len(parts) != 3 or not parts[2].strip():
        raise DecodeError(f"unrecognized topic: {topic!r}")
    category = TOPIC_PATTERNS.get((parts[0], parts[1]))
    if category is None:
        raise DecodeError(f"unrecognized topic: {topic!r}")
    return category, parts[2].strip()


def parse_timestamp(raw: Any) -> datetime:
    """Accept ISO-8601 strings (naive means UTC) or epoch seconds/milliseconds."""

    if isinstance(raw, bool):
        raise DecodeError(f"invalid timestamp: {raw!r}")
    if isinstance(raw, (int, float)):
        seconds = raw / 1000.0 if abs(raw) >= _EPOCH_MS_THRESHOLD else float(raw)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise DecodeError(f"invalid timestamp: {raw!r}") from exc
    if isinstance(raw, str) and raw.strip():
        value = raw.strip()
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(value)
        except ValueError as exc:
            raise DecodeError(f"invalid timestamp: {raw!r}") from exc
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    raise DecodeError(f"invalid timestamp: {raw!r}")


def decode_message(topic: str, payload: bytes | str, *, received_at: datetime | None = None) -> TelemetryRecord:
    category, device_id = parse_topic(topic)

    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        body = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"undecodable body on {topic}: {exc}") from exc

    if not isinstance(body, dict):
        raise DecodeError(f"body on {topic} must be a JSON object")

    if body.get("timestamp") is not None:
        ts = parse_timestamp(body["timestamp"])
    else:
        ts = received_at or datetime.now(timezone.utc)

    fields = {k: v for k, v in body.items() if k not in _RESERVED_KEYS}
    return TelemetryRecord(
        device_id=device_id,
        category=category,
        timestamp=ts,
        fields=fields,
        raw=body,
        topic=topic,
    )


class IngestionGateway:
    """Decode transport messages and route them to per-device queues.

    The gateway is paused while the transport is disconnected: messages that
    still arrive (e.g. from the HTTP fallback) are refused and counted, while
    queued work keeps draining.
    """

    def __init__(
        self,
        sink: Callable[[TelemetryRecord], Any],
        *,
        counters: PipelineCounters = pipeline_counters,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._sink = sink
        self._counters = counters
        self._clock = clock
        self._accepting = threading.Event()
        self._accepting.set()

    @property
    def paused(self) -> bool:
        return not self._accepting.is_set()

    def pause(self, reason: str = "transport_disconnected") -> None:
        if not self.paused:
            logger.warning("gateway_paused", extra={"fields": {"reason": reason}})
        self._accepting.clear()

    def resume(self) -> None:
        if self.paused:
            logger.info("gateway_resumed")
        self._accepting.set()

    def handle_message(self, topic: str, payload: bytes | str) -> bool:
        """Route one message. Returns True when the record was enqueued."""

        self._counters.incr("messages_received")

        if self.paused:
            self._counters.incr("refused_while_paused")
            return False

        try:
            record = decode_message(topic, payload, received_at=self._clock())
        except DecodeError as exc:
            self._counters.incr("decode_errors")
            logger.warning(
                "decode_failed",
                extra={"fields": {"topic": topic, "error": str(exc), "bytes": len(payload or b"")}},
            )
            return False

        self._sink(record)
        self._counters.incr("messages_routed")
        return True
