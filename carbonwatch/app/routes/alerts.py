from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import and_, or_

from ..auth.principal import Principal
from ..auth.rbac import require_operator_role, require_viewer_role
from ..errors import NotFoundError
from ..models import Alert
from ..runtime import PipelineRuntime
from ..schemas import AlertOut, AlertStatus, ResolveIn, Severity, ok
from .deps import get_runtime

router = APIRouter(prefix="/api/v1", tags=["alerts"])


def _out(alert: Alert) -> dict:
    return AlertOut.model_validate(alert).model_dump(mode="json")


@router.get("/alerts")
def list_alerts(
    status: AlertStatus | None = None,
    severity: Severity | None = None,
    device_id: str | None = None,
    alert_type: str | None = None,
    before: datetime | None = Query(
        None,
        description="Cursor pagination: alerts created before this timestamp (created_at of the last row).",
    ),
    before_id: str | None = Query(
        None,
        description="Cursor tie-breaker when multiple alerts share the same created_at.",
    ),
    limit: int = Query(100, ge=1, le=1000),
    runtime: PipelineRuntime = Depends(get_runtime),
    _: Principal = Depends(require_viewer_role),
) -> dict:
    """List alerts, newest first, ordered by (created_at desc, id desc)."""

    if before_id is not None and before is None:
        raise HTTPException(status_code=400, detail="before_id requires before")

    with runtime.session_factory() as session:
        q = session.query(Alert)
        if status:
            q = q.filter(Alert.status == status)
        if severity:
            q = q.filter(Alert.severity == severity)
        if device_id:
            q = q.filter(Alert.device_id == device_id)
        if alert_type:
            q = q.filter(Alert.alert_type == alert_type)

        if before is not None:
            if before_id is not None:
                q = q.filter(
                    or_(
                        Alert.created_at < before,
                        and_(Alert.created_at == before, Alert.id < before_id),
                    )
                )
            else:
                q = q.filter(Alert.created_at < before)

        rows = q.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).all()
        return ok([_out(a) for a in rows])


@router.get("/alerts/{alert_id}")
def get_alert(
    alert_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
    _: Principal = Depends(require_viewer_role),
) -> dict:
    with runtime.session_factory() as session:
        alert = session.get(Alert, alert_id)
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        return ok(_out(alert))


@router.post("/alerts/{alert_id}/acknowledge")
def acknowledge_alert(
    alert_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
    principal: Principal = Depends(require_operator_role),
) -> dict:
    alert = runtime.lifecycle.acknowledge(alert_id, principal.email)
    return ok(_out(alert), "Alert acknowledged")


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: str,
    body: ResolveIn,
    runtime: PipelineRuntime = Depends(get_runtime),
    principal: Principal = Depends(require_operator_role),
) -> dict:
    alert = runtime.lifecycle.resolve(alert_id, principal.email, body.resolution)
    return ok(_out(alert), "Alert resolved")
