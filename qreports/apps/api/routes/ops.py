from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from qreports.apps.api.deps import require_privileged
from qreports.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from qreports.apps.api.response import ApiModel, SuccessEnvelope, success_response
from qreports.core.config import get_settings
from qreports.domain.identity import CallerIdentity
from qreports.services.render.queue import RenderQueue, get_render_queue
from qreports.services.telemetry import counters_snapshot, gauges_snapshot, p95_latency


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class RenderQueueStatusResponse(ApiModel):
    mode: str
    queue_depth: int | None
    worker_heartbeat_at: datetime | None
    worker_alive: bool


class MetricsResponse(ApiModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    p95_latency_ms: dict[str, float | None]


@router.get("/render-queue", response_model=SuccessEnvelope[RenderQueueStatusResponse])
async def render_queue_status(
    request: Request,
    _caller: CallerIdentity = Depends(require_privileged),
    queue: RenderQueue = Depends(get_render_queue),
) -> dict:
    settings = get_settings()
    depth = await queue.queue_depth()
    heartbeat = await queue.worker_heartbeat()
    if queue.is_inline:
        # In-process execution has no separate worker to go stale.
        alive = True
    elif heartbeat is None:
        alive = False
    else:
        if heartbeat.tzinfo is None:
            heartbeat = heartbeat.replace(tzinfo=timezone.utc)
        age_s = (datetime.now(timezone.utc) - heartbeat).total_seconds()
        alive = age_s <= settings.worker_heartbeat_stale_after_s
    payload = RenderQueueStatusResponse(
        mode="inline" if queue.is_inline else "queue",
        queue_depth=depth,
        worker_heartbeat_at=heartbeat,
        worker_alive=alive,
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True, mode="json"))


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(request: Request, _caller: CallerIdentity = Depends(require_privileged)) -> dict:
    payload = MetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        p95_latency_ms={
            "query": p95_latency(300, route_class="query"),
            "general": p95_latency(300, route_class="general"),
        },
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True))
