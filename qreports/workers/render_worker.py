from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from qreports.core.config import get_settings
from qreports.core.logging import configure_logging
from qreports.services.render.chromium import ChromiumRendererFactory, render_html_to_pdf
from qreports.services.render.jobs import RedisRenderJobStore
from qreports.services.render.pool import RendererPool
from qreports.services.render.processor import process_render_job
from qreports.services.render.queue import RenderJobPayload, set_worker_heartbeat


logger = logging.getLogger(__name__)


async def render_pdf(ctx, payload: dict) -> str:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = RenderJobPayload.model_validate(payload)
    job = await process_render_job(
        job_payload.job_id,
        job_payload.html_content,
        store=ctx["job_store"],
        pool=ctx["renderer_pool"],
        render_fn=render_html_to_pdf,
        timeout_s=get_settings().render_timeout_s,
    )
    return job.state.value


async def _heartbeat_loop(redis) -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(redis)
        except Exception as exc:  # noqa: BLE001 - heartbeat gaps surface as stale, not crashes
            logger.warning("worker_heartbeat_failed", exc_info=exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    settings = get_settings()
    factory = ChromiumRendererFactory()
    pool = RendererPool(
        factory,
        max_size=settings.renderer_pool_max,
        min_size=settings.renderer_pool_min,
        idle_timeout_s=settings.renderer_idle_timeout_s,
        evict_interval_s=settings.renderer_evict_interval_s,
    )
    await pool.start()
    ctx["renderer_factory"] = factory
    ctx["renderer_pool"] = pool
    ctx["job_store"] = RedisRenderJobStore(ctx["redis"])
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(ctx["redis"]))
    logger.info(
        "render_worker_started queue=%s concurrency=%s",
        settings.render_queue_name,
        settings.render_concurrency,
    )


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat and close every browser before the process exits.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()
    pool = ctx.get("renderer_pool")
    if pool is not None:
        await pool.close()
    factory = ctx.get("renderer_factory")
    if factory is not None:
        await factory.shutdown()
    logger.info("render_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.render_queue_name
    max_jobs = settings.render_concurrency
    # Failed renders are terminal; the job record carries the reason.
    max_tries = 1
    job_timeout = settings.render_job_timeout_s
    keep_result = settings.render_job_retention_s
    functions = [render_pdf]
    on_startup = _startup
    on_shutdown = _shutdown
