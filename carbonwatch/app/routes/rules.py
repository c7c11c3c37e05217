from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, status

from ..auth.principal import Principal
from ..auth.rbac import require_operator_role, require_viewer_role
from ..errors import NotFoundError
from ..models import AlertRule
from ..runtime import PipelineRuntime
from ..schemas import AlertRuleIn, AlertRuleOut, AlertRuleUpdate, Category, ok
from ..services.alert_lifecycle import RULE_DISABLED, publish
from ..services.records import AlertEvent
from .deps import get_runtime

router = APIRouter(prefix="/api/v1", tags=["alert-rules"])

logger = logging.getLogger("carbonwatch.rules")

RULE_DELETED = "rule-deleted"


def _out(rule: AlertRule) -> dict:
    return AlertRuleOut.model_validate(rule).model_dump(mode="json")


def _get_rule(session, rule_id: str) -> AlertRule:
    rule = session.get(AlertRule, rule_id)
    if rule is None:
        raise NotFoundError(f"alert rule {rule_id} not found")
    return rule


@router.get("/alert-rules")
def list_rules(
    data_type: Category | None = None,
    device_id: str | None = None,
    active_only: bool = False,
    limit: int = Query(500, ge=1, le=1000),
    runtime: PipelineRuntime = Depends(get_runtime),
    _: Principal = Depends(require_viewer_role),
) -> dict:
    with runtime.session_factory() as session:
        q = session.query(AlertRule)
        if data_type:
            q = q.filter(AlertRule.data_type == data_type)
        if device_id:
            q = q.filter(AlertRule.device_id == device_id)
        if active_only:
            q = q.filter(AlertRule.is_active.is_(True))
        rows = q.order_by(AlertRule.created_at.desc(), AlertRule.id.desc()).limit(limit).all()
        return ok([_out(r) for r in rows])


@router.post("/alert-rules", status_code=status.HTTP_201_CREATED)
def create_rule(
    body: AlertRuleIn,
    runtime: PipelineRuntime = Depends(get_runtime),
    principal: Principal = Depends(require_operator_role),
) -> dict:
    now = datetime.now(timezone.utc)
    with runtime.session_factory() as session:
        rule = AlertRule(**body.model_dump(), created_at=now, updated_at=now)
        session.add(rule)
        session.flush()
        out = _out(rule)

    logger.info("rule_created", extra={"fields": {"rule_id": out["id"], "actor": principal.email}})
    return ok(out, "Alert rule created")


@router.get("/alert-rules/{rule_id}")
def get_rule(
    rule_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
    _: Principal = Depends(require_viewer_role),
) -> dict:
    with runtime.session_factory() as session:
        return ok(_out(_get_rule(session, rule_id)))


def _close_if_disabled(
    runtime: PipelineRuntime, session, rule: AlertRule, was_active: bool, actor: str
) -> list[AlertEvent]:
    if not was_active or rule.is_active:
        return []
    return runtime.lifecycle.resolve_open_alerts_for_rule(session, rule.id, actor=actor, resolution=RULE_DISABLED)


@router.patch("/alert-rules/{rule_id}")
def update_rule(
    rule_id: str,
    body: AlertRuleUpdate,
    runtime: PipelineRuntime = Depends(get_runtime),
    principal: Principal = Depends(require_operator_role),
) -> dict:
    changes = body.model_dump(exclude_unset=True)
    with runtime.session_factory() as session:
        rule = _get_rule(session, rule_id)
        was_active = rule.is_active
        for key, value in changes.items():
            setattr(rule, key, value)
        if "conditions" in changes:
            # A fixed rule gets a clean slate.
            rule.consecutive_failures = 0
            rule.last_error = None
        # Bumping updated_at invalidates the compiled condition cache entry.
        rule.updated_at = datetime.now(timezone.utc)
        events = _close_if_disabled(runtime, session, rule, was_active, principal.email)
        session.flush()
        out = _out(rule)

    publish(runtime.lifecycle.event_sink, events)
    logger.info(
        "rule_updated",
        extra={
            "fields": {
                "rule_id": rule_id,
                "changed": sorted(changes),
                "alerts_resolved": len(events),
                "actor": principal.email,
            }
        },
    )
    return ok(out, "Alert rule updated")


@router.post("/alert-rules/{rule_id}/toggle")
def toggle_rule(
    rule_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
    principal: Principal = Depends(require_operator_role),
) -> dict:
    with runtime.session_factory() as session:
        rule = _get_rule(session, rule_id)
        was_active = rule.is_active
        rule.is_active = not rule.is_active
        if rule.is_active:
            rule.consecutive_failures = 0
            rule.last_error = None
        rule.updated_at = datetime.now(timezone.utc)
        events = _close_if_disabled(runtime, session, rule, was_active, principal.email)
        session.flush()
        out = _out(rule)

    publish(runtime.lifecycle.event_sink, events)
    logger.info(
        "rule_toggled",
        extra={
            "fields": {
                "rule_id": rule_id,
                "is_active": out["is_active"],
                "alerts_resolved": len(events),
                "actor": principal.email,
            }
        },
    )
    return ok(out, "Alert rule enabled" if out["is_active"] else "Alert rule disabled")


@router.delete("/alert-rules/{rule_id}")
def delete_rule(
    rule_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
    principal: Principal = Depends(require_operator_role),
) -> dict:
    with runtime.session_factory() as session:
        rule = _get_rule(session, rule_id)
        events = runtime.lifecycle.resolve_open_alerts_for_rule(
            session, rule_id, actor=principal.email, resolution=RULE_DELETED
        )
        session.delete(rule)

    runtime.evaluator.cache.discard(rule_id)
    publish(runtime.lifecycle.event_sink, events)
    logger.info(
        "rule_deleted",
        extra={"fields": {"rule_id": rule_id, "alerts_resolved": len(events), "actor": principal.email}},
    )
    return ok({"id": rule_id, "alerts_resolved": len(events)}, "Alert rule deleted")
