from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth.principal import Principal
from ..auth.rbac import require_viewer_role
from ..runtime import PipelineRuntime
from ..schemas import ok
from .deps import get_runtime

router = APIRouter(prefix="/api/v1", tags=["pipeline"])


@router.get("/pipeline/stats")
def pipeline_stats(
    runtime: PipelineRuntime = Depends(get_runtime),
    _: Principal = Depends(require_viewer_role),
) -> dict:
    transport = runtime.transport
    return ok(
        {
            "counters": runtime.counters.snapshot(),
            "queues": {
                "active_devices": len(runtime.pool.active_devices),
                "pending": runtime.pool.pending(),
                "capacity_per_device": runtime.pool.capacity,
                "max_workers": runtime.pool.max_workers,
            },
            "gateway": {"paused": runtime.gateway.paused},
            "transport": {
                "enabled": transport is not None,
                "connected": bool(transport and transport.is_connected),
            },
        }
    )
