from __future__ import annotations

import asyncio
import base64
import logging
from typing import Awaitable, Callable, TypeVar

from qreports.core.errors import QReportsError, RendererCrashedError, RenderTimeoutError
from qreports.services.render.jobs import RenderJob, RenderJobStore
from qreports.services.render.pool import RendererPool
from qreports.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")
RenderFn = Callable[[T, str, float], Awaitable[bytes]]

# Checkpoints a poller observes, strictly increasing.
PROGRESS_ACCEPTED = 10
PROGRESS_RENDERER_ACQUIRED = 30
PROGRESS_RENDERED = 90
PROGRESS_DONE = 100


def failure_reason(exc: BaseException) -> str:
    # Keep reasons short and free of stack traces; pollers see them verbatim.
    if isinstance(exc, asyncio.TimeoutError):
        return "Rendering exceeded the time limit"
    if isinstance(exc, RendererCrashedError):
        return "Renderer crashed during rendering"
    if isinstance(exc, QReportsError):
        return exc.message
    if isinstance(exc, asyncio.CancelledError):
        return "Render job was cancelled"
    return "PDF rendering failed"


async def _render_with_pool(
    job_id: str,
    html: str,
    *,
    store: RenderJobStore,
    pool: RendererPool[T],
    render_fn: RenderFn,
    timeout_s: float,
) -> bytes:
    handle = await pool.acquire()
    broken = False
    try:
        await store.mark_active(job_id, PROGRESS_RENDERER_ACQUIRED)
        try:
            return await asyncio.wait_for(render_fn(handle, html, timeout_s), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise RenderTimeoutError(f"Rendering exceeded the time limit of {timeout_s:g} seconds") from exc
        except RendererCrashedError:
            broken = True
            raise
    finally:
        # The handle goes back on every path; the pool drops it if it is no longer healthy.
        await pool.release(handle, broken=broken)


async def process_render_job(
    job_id: str,
    html: str,
    *,
    store: RenderJobStore,
    pool: RendererPool[T],
    render_fn: RenderFn,
    timeout_s: float,
) -> RenderJob:
    """Run one render job to a terminal state and return the final record."""
    logger.info("render_job_started job_id=%s", job_id)
    await store.mark_active(job_id, PROGRESS_ACCEPTED)
    try:
        pdf = await _render_with_pool(
            job_id,
            html,
            store=store,
            pool=pool,
            render_fn=render_fn,
            timeout_s=timeout_s,
        )
    except asyncio.CancelledError as exc:
        await store.mark_failed(job_id, failure_reason(exc))
        raise
    except Exception as exc:  # noqa: BLE001 - failures are recorded on the job, not raised
        increment_counter("render_failed_total")
        logger.warning("render_job_failed job_id=%s error=%s", job_id, type(exc).__name__, exc_info=exc)
        return await store.mark_failed(job_id, failure_reason(exc))

    await store.mark_active(job_id, PROGRESS_RENDERED)
    encoded = base64.b64encode(pdf).decode("ascii")
    await store.mark_active(job_id, PROGRESS_DONE)
    job = await store.mark_completed(job_id, encoded)
    increment_counter("render_completed_total")
    logger.info("render_job_completed job_id=%s bytes=%s", job_id, len(pdf))
    return job
