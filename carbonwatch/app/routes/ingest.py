from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..runtime import PipelineRuntime
from ..schemas import ok
from .deps import get_runtime

router = APIRouter(prefix="/api/v1", tags=["ingest"])


async def _route(runtime: PipelineRuntime, topic: str, request: Request) -> dict:
    if runtime.gateway.paused:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": {"code": "INGEST_PAUSED", "message": "Ingestion is paused"}},
        )

    payload = await request.body()
    if not runtime.gateway.handle_message(topic, payload):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": {"code": "DECODE_ERROR", "message": "Body is not a decodable telemetry message"}},
        )
    return ok({"topic": topic, "accepted": True}, "Telemetry queued")


@router.post("/telemetry/{category}/{device_id}", status_code=status.HTTP_202_ACCEPTED)
async def ingest_telemetry(
    category: Literal["energy", "carbon"],
    device_id: str,
    request: Request,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> dict:
    """HTTP fallback for devices that cannot speak MQTT; same path as the broker feed."""

    return await _route(runtime, f"telemetry/{category}/{device_id}", request)


@router.post("/device-status/{device_id}", status_code=status.HTTP_202_ACCEPTED)
async def ingest_status(
    device_id: str,
    request: Request,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> dict:
    return await _route(runtime, f"device/status/{device_id}", request)
