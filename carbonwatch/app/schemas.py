from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .services.conditions import ConditionParseError, parse_conditions


Severity = Literal["low", "medium", "high", "critical"]
Category = Literal["energy", "carbon", "status"]
AlertStatus = Literal["active", "acknowledged", "resolved"]


def ok(data: Any, message: str | None = None) -> dict[str, Any]:
    return {"success": True, "data": data, "message": message}


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    rule_id: Optional[str]
    alert_type: str
    device_id: str
    severity: str
    status: str
    description: str
    data: Dict[str, Any] = Field(default_factory=dict)
    resolution: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ResolveIn(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=1024)


# ---------------------------------------------------------------------------
# Alert rules
# ---------------------------------------------------------------------------


def _check_conditions(v: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    try:
        parse_conditions(v)
    except ConditionParseError as exc:
        raise ValueError(str(exc)) from exc
    return v


class AlertRuleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = Field(None, max_length=4096)
    data_type: Category
    device_id: Optional[str] = Field(None, min_length=1, max_length=128)
    conditions: List[Dict[str, Any]] = Field(..., min_length=1)
    severity: Severity = "medium"
    cooldown_s: int = Field(0, ge=0, le=7 * 24 * 3600)
    is_active: bool = True

    @field_validator("conditions")
    @classmethod
    def _validate_conditions(cls, v: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return _check_conditions(v)


NULLABLE_RULE_FIELDS = frozenset({"device_id", "description"})


class AlertRuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=256)
    description: Optional[str] = Field(None, max_length=4096)
    data_type: Optional[Category] = None
    device_id: Optional[str] = Field(None, min_length=1, max_length=128)
    conditions: Optional[List[Dict[str, Any]]] = Field(None, min_length=1)
    severity: Optional[Severity] = None
    cooldown_s: Optional[int] = Field(None, ge=0, le=7 * 24 * 3600)
    is_active: Optional[bool] = None

    @field_validator("conditions")
    @classmethod
    def _validate_conditions(cls, v: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
        return None if v is None else _check_conditions(v)

    @model_validator(mode="after")
    def _reject_explicit_nulls(self) -> "AlertRuleUpdate":
        # Only device_id and description may be cleared; null device_id makes the rule global.
        nulls = sorted(
            name
            for name in self.model_fields_set - NULLABLE_RULE_FIELDS
            if getattr(self, name) is None
        )
        if nulls:
            raise ValueError(f"fields cannot be null: {', '.join(nulls)}")
        return self


class AlertRuleOut(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    name: str
    description: Optional[str]
    data_type: str
    device_id: Optional[str]
    conditions: List[Dict[str, Any]]
    severity: str
    cooldown_s: int
    is_active: bool
    consecutive_failures: int
    last_error: Optional[str]
    created_at: datetime
    updated_at: datetime
