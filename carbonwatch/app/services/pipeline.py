from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from ..errors import UnknownDeviceError, ValidationError
from ..observability import PipelineCounters, pipeline_counters
from .alert_lifecycle import AlertLifecycleManager
from .persistence import TelemetryWriter
from .records import TelemetryRecord
from .registry import DeviceRegistry
from .rule_evaluator import RuleEvaluator
from .validation import validate_record


logger = logging.getLogger("carbonwatch.pipeline")


Outcome = Literal["stored", "invalid", "dropped"]


@dataclass(frozen=True)
class ProcessResult:
    outcome: Outcome
    inserted: bool = False
    alerts_emitted: int = 0


class TelemetryPipeline:
    """Validate -> persist -> evaluate for one record.

    Records from devices missing in the registry are dropped before validation.

    Runs synchronously on a worker thread; the device queue pool guarantees
    that calls for one device never overlap.
    """

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        writer: TelemetryWriter,
        evaluator: RuleEvaluator,
        lifecycle: AlertLifecycleManager,
        counters: PipelineCounters = pipeline_counters,
    ) -> None:
        self.registry = registry
        self.writer = writer
        self.evaluator = evaluator
        self.lifecycle = lifecycle
        self._counters = counters

    def process(self, record: TelemetryRecord) -> ProcessResult:
        try:
            schema = self.registry.get_device_type_schema(record.device_id)
        except UnknownDeviceError:
            self._counters.incr("unknown_device_dropped")
            logger.warning(
                "telemetry_unknown_device",
                extra={"fields": {"device_id": record.device_id, "category": record.category}},
            )
            return ProcessResult(outcome="dropped")

        try:
            normalized = validate_record(record, schema)
        except ValidationError as exc:
            self._counters.incr("validation_failures")
            logger.warning(
                "telemetry_validation_failed",
                extra={
                    "fields": {
                        "device_id": record.device_id,
                        "category": record.category,
                        "errors": exc.errors,
                    }
                },
            )
            self.lifecycle.open_data_format_alert(
                record.device_id,
                record.raw or dict(record.fields),
                exc.errors,
                category=record.category,
                at=record.timestamp,
            )
            return ProcessResult(outcome="invalid", alerts_emitted=1)

        outcome = self.writer.write(normalized)
        if outcome is None:
            return ProcessResult(outcome="dropped")

        report = self.evaluator.evaluate(normalized)
        emitted = len(report.events)
        if normalized.category == "status":
            status_alert = self.lifecycle.raise_device_status_alert(
                normalized.device_id,
                str(normalized.fields["status"]),
                message=str(normalized.fields.get("message") or ""),
                at=normalized.timestamp,
            )
            emitted += int(status_alert is not None)

        self._counters.incr("records_processed")
        return ProcessResult(outcome="stored", inserted=outcome.inserted, alerts_emitted=emitted)
