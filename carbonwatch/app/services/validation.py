from __future__ import annotations

from datetime import timezone
from typing import Any, Mapping

from ..errors import ValidationError
from .records import DeviceTypeSchema, TelemetryRecord


# Status messages are checked against this instead of the device type schema.
STATUS_SCHEMA = DeviceTypeSchema(type_id="builtin:status", required_fields={"status": "string"})

EMPTY_SCHEMA = DeviceTypeSchema(type_id="builtin:empty")

SCALAR_TYPES = ("number", "string", "boolean")


def _matches(value: Any, expected: str) -> bool:
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    return False


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def schema_from_json(type_id: str, raw: Mapping[str, Any] | None) -> DeviceTypeSchema:
    """Build a schema from `device_types.data_schema`.

    Two layouts are accepted: a flat `{field: type}` mapping where every field
    is required, or `{"required": {...}, "optional": {...}}`.
    """

    raw = raw or {}
    if "required" in raw or "optional" in raw:
        required = dict(raw.get("required") or {})
        optional = dict(raw.get("optional") or {})
    else:
        required = dict(raw)
        optional = {}

    for name, t in list(required.items()) + list(optional.items()):
        if t not in SCALAR_TYPES:
            raise ValueError(f"device type {type_id}: field {name!r} has unsupported type {t!r}")

    return DeviceTypeSchema(type_id=type_id, required_fields=required, optional_fields=optional)


def validate_record(record: TelemetryRecord, schema: DeviceTypeSchema | None) -> TelemetryRecord:
    """Check a record against its schema and return the normalized record.

    Extra fields pass through untouched. Declared numbers become floats and
    the timestamp is converted to UTC.
    """

    if record.category == "status":
        schema = STATUS_SCHEMA
    elif schema is None:
        schema = EMPTY_SCHEMA

    errors: list[str] = []
    fields = dict(record.fields)

    for name, expected in schema.required_fields.items():
        if name not in fields or fields[name] is None:
            errors.append(f"missing required field '{name}'")
        elif not _matches(fields[name], expected):
            errors.append(f"field '{name}' expected {expected}, got {_type_name(fields[name])}")

    for name, expected in schema.optional_fields.items():
        if name in fields and fields[name] is not None and not _matches(fields[name], expected):
            errors.append(f"field '{name}' expected {expected}, got {_type_name(fields[name])}")

    if errors:
        raise ValidationError(errors)

    declared = {**schema.optional_fields, **schema.required_fields}
    for name, expected in declared.items():
        if expected == "number" and name in fields and fields[name] is not None:
            fields[name] = float(fields[name])

    return record.with_fields(fields, timestamp=record.timestamp.astimezone(timezone.utc))
