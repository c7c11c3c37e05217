from __future__ import annotations

from fastapi import Request

from ..runtime import PipelineRuntime


def get_runtime(request: Request) -> PipelineRuntime:
    return request.app.state.runtime
