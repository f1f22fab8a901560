from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from qreports.apps.api.deps import TenantContext, get_rate_limited_caller, get_tenant_context
from qreports.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from qreports.apps.api.response import ApiModel, SuccessEnvelope, success_response
from qreports.core.config import get_settings
from qreports.domain.identity import CallerIdentity
from qreports.services.query.executor import QueryExecutor, get_query_executor
from qreports.services.render.jobs import JobState
from qreports.services.render.queue import RenderQueue, get_render_queue


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"], responses=DEFAULT_ERROR_RESPONSES)


class ExecuteRequest(ApiModel):
    query: str
    page: int = 1
    # Falls back to the configured default when omitted.
    page_size: int | None = None


class ExecuteResponse(ApiModel):
    columns: list[str]
    rows: list[dict[str, Any]]
    row_count: int
    total_rows: int
    total_pages: int
    page: int
    page_size: int
    duration_ms: int


class ExportPdfRequest(ApiModel):
    html_content: str = Field(min_length=1)
    report_id: str | None = None


class ExportPdfResponse(ApiModel):
    job_id: str


class RenderJobStatusResponse(ApiModel):
    job_id: str
    state: JobState
    progress: int
    pdf_data: str | None = None
    error: str | None = None


@router.post("/execute", response_model=SuccessEnvelope[ExecuteResponse])
async def execute_report(
    request: Request,
    body: ExecuteRequest,
    context: TenantContext = Depends(get_tenant_context),
    executor: QueryExecutor = Depends(get_query_executor),
) -> dict:
    page_size = body.page_size if body.page_size is not None else get_settings().query_default_page_size
    result = await executor.execute(body.query, context.pool, page=body.page, page_size=page_size)
    logger.info(
        "report_executed tenant_id=%s user_id=%s rows=%s duration_ms=%s",
        context.caller.tenant_id,
        context.caller.user_id,
        result.row_count,
        result.duration_ms,
    )
    payload = ExecuteResponse(**result.model_dump())
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.post(
    "/export-pdf",
    status_code=202,
    response_model=SuccessEnvelope[ExportPdfResponse],
)
async def export_pdf(
    request: Request,
    body: ExportPdfRequest,
    caller: CallerIdentity = Depends(get_rate_limited_caller),
    queue: RenderQueue = Depends(get_render_queue),
) -> dict:
    job_id = await queue.enqueue(body.html_content, tenant_id=caller.tenant_id, report_id=body.report_id)
    payload = ExportPdfResponse(job_id=job_id)
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.get(
    "/export-pdf/{job_id}/status",
    response_model=SuccessEnvelope[RenderJobStatusResponse],
)
async def export_pdf_status(
    request: Request,
    job_id: str,
    caller: CallerIdentity = Depends(get_rate_limited_caller),
    queue: RenderQueue = Depends(get_render_queue),
) -> dict:
    job = await queue.get_status(job_id, tenant_id=caller.tenant_id)
    payload = RenderJobStatusResponse(
        job_id=job.job_id,
        state=job.state,
        progress=job.progress,
        pdf_data=job.pdf_data,
        error=job.error,
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True, mode="json"))
