from __future__ import annotations

from fastapi import APIRouter, Request

from qreports.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from qreports.apps.api.response import ApiModel, SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(ApiModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; tenant databases and the render queue are not checked here.
    payload = HealthResponse(status="ok").model_dump(by_alias=True)
    return success_response(request=request, data=payload)
