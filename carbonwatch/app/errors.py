"""Pipeline error taxonomy.

Every error here is contained by the stage that raises it: the process never
terminates because of one. Operator-facing errors (NotFoundError,
InvalidTransitionError) are surfaced synchronously by the HTTP API and never
retried.
"""

from __future__ import annotations

from typing import Sequence


class PipelineError(Exception):
    code = "PIPELINE_ERROR"


class TransportConnectionError(PipelineError):
    code = "TRANSPORT_UNAVAILABLE"


class DecodeError(PipelineError):
    code = "DECODE_ERROR"


class ValidationError(PipelineError):
    code = "VALIDATION_ERROR"

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class PersistenceError(PipelineError):
    code = "PERSISTENCE_ERROR"


class RuleEvaluationError(PipelineError):
    code = "RULE_EVALUATION_ERROR"


class NotificationDeliveryError(PipelineError):
    code = "NOTIFICATION_DELIVERY_FAILED"

    def __init__(self, message: str, *, error_class: str | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.error_class = error_class or "DELIVERY_FAILED"
        self.retryable = retryable


class NotFoundError(PipelineError):
    code = "NOT_FOUND"


class InvalidTransitionError(PipelineError):
    code = "INVALID_TRANSITION"


class UnknownDeviceError(PipelineError):
    code = "UNKNOWN_DEVICE"
