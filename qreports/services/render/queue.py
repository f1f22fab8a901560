from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel
from redis.exceptions import RedisError

from qreports.core.config import get_settings
from qreports.core.errors import NotFoundError, UpstreamError
from qreports.services.render.jobs import (
    InMemoryRenderJobStore,
    RedisRenderJobStore,
    RenderJob,
    RenderJobStore,
    new_job,
)
from qreports.services.render.pool import RendererPool
from qreports.services.render.processor import RenderFn, process_render_job


logger = logging.getLogger(__name__)

RENDER_FUNCTION = "render_pdf"
# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "qreports:worker:heartbeat"

_redis_pool: ArqRedis | None = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RenderJobPayload(BaseModel):
    # Published job schema for API-to-worker handoff.
    job_id: str
    html_content: str
    report_id: str | None = None
    tenant_id: int


async def get_redis_pool() -> ArqRedis:
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.render_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def set_worker_heartbeat(redis: ArqRedis, *, timestamp: datetime | None = None) -> None:
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


class InlineRenderRunner:
    """Run render jobs as in-process tasks, at most ``concurrency`` at a time."""

    def __init__(
        self,
        *,
        store: RenderJobStore,
        pool: RendererPool,
        render_fn: RenderFn,
        concurrency: int,
        timeout_s: float,
    ) -> None:
        self._store = store
        self._pool = pool
        self._render_fn = render_fn
        self._timeout_s = timeout_s
        self._slots = asyncio.Semaphore(max(1, concurrency))
        self._tasks: set[asyncio.Task] = set()

    @property
    def pool(self) -> RendererPool:
        return self._pool

    def submit(self, payload: RenderJobPayload) -> None:
        task = asyncio.create_task(self._run(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def pending(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        await self._pool.start()

    async def _run(self, payload: RenderJobPayload) -> None:
        async with self._slots:
            await process_render_job(
                payload.job_id,
                payload.html_content,
                store=self._store,
                pool=self._pool,
                render_fn=self._render_fn,
                timeout_s=self._timeout_s,
            )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
        await self._pool.close()


class RenderQueue:
    """Enqueue render jobs and read their status from the job store."""

    def __init__(self, store: RenderJobStore, *, inline_runner: InlineRenderRunner | None = None) -> None:
        self._store = store
        self._inline_runner = inline_runner

    @property
    def store(self) -> RenderJobStore:
        return self._store

    @property
    def is_inline(self) -> bool:
        return self._inline_runner is not None

    async def enqueue(self, html_content: str, *, tenant_id: int, report_id: str | None = None) -> str:
        job_id = uuid4().hex
        payload = RenderJobPayload(
            job_id=job_id,
            html_content=html_content,
            report_id=report_id,
            tenant_id=tenant_id,
        )
        try:
            await self._store.create(new_job(job_id, tenant_id=tenant_id, report_id=report_id))
        except (RedisError, OSError) as exc:
            raise UpstreamError("Render job store unavailable") from exc
        if self._inline_runner is not None:
            self._inline_runner.submit(payload)
        else:
            try:
                redis = await get_redis_pool()
                await redis.enqueue_job(
                    RENDER_FUNCTION,
                    payload.model_dump(),
                    _job_id=job_id,
                    _queue_name=get_settings().render_queue_name,
                )
            except (RedisError, OSError) as exc:
                logger.warning("render_enqueue_failed job_id=%s", job_id, exc_info=exc)
                # No worker will ever pick this record up.
                try:
                    await self._store.mark_failed(job_id, "Render queue unavailable")
                except (RedisError, OSError):
                    logger.warning("render_job_record_stale job_id=%s", job_id)
                raise UpstreamError("Render queue unavailable") from exc
        logger.info("render_job_enqueued job_id=%s tenant_id=%s", job_id, tenant_id)
        return job_id

    async def get_status(self, job_id: str, *, tenant_id: int) -> RenderJob:
        try:
            job = await self._store.get(job_id)
        except (RedisError, OSError) as exc:
            raise UpstreamError("Render job store unavailable") from exc
        # Jobs of other tenants read as missing.
        if job is None or job.tenant_id != tenant_id:
            raise NotFoundError("Render job not found")
        return job

    async def queue_depth(self) -> int | None:
        # Return None to signal Redis unavailability to ops endpoints.
        if self._inline_runner is not None:
            return self._inline_runner.pending()
        try:
            redis = await get_redis_pool()
            return int(await redis.zcard(_queue_key(get_settings().render_queue_name)))
        except (RedisError, OSError):
            return None

    async def worker_heartbeat(self) -> datetime | None:
        if self._inline_runner is not None:
            return None
        try:
            redis = await get_redis_pool()
            raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
        except (RedisError, OSError):
            return None
        if not raw_value:
            return None
        value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    async def start(self) -> None:
        if self._inline_runner is not None:
            await self._inline_runner.start()

    async def close(self) -> None:
        if self._inline_runner is not None:
            await self._inline_runner.close()


_render_queue: RenderQueue | None = None


def _build_render_queue() -> RenderQueue:
    settings = get_settings()
    if settings.render_execution_mode.lower() == "inline":
        # Imported here so API processes in queue mode never load the browser driver.
        from qreports.services.render.chromium import ChromiumRendererFactory, render_html_to_pdf

        store = InMemoryRenderJobStore()
        pool = RendererPool(
            ChromiumRendererFactory(),
            max_size=settings.renderer_pool_max,
            min_size=settings.renderer_pool_min,
            idle_timeout_s=settings.renderer_idle_timeout_s,
            evict_interval_s=settings.renderer_evict_interval_s,
        )
        runner = InlineRenderRunner(
            store=store,
            pool=pool,
            render_fn=render_html_to_pdf,
            concurrency=settings.render_concurrency,
            timeout_s=settings.render_timeout_s,
        )
        return RenderQueue(store, inline_runner=runner)

    from redis.asyncio import Redis

    redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    return RenderQueue(RedisRenderJobStore(redis))


def get_render_queue() -> RenderQueue:
    global _render_queue
    if _render_queue is None:
        _render_queue = _build_render_queue()
    return _render_queue


def reset_render_queue() -> None:
    global _render_queue, _redis_pool, _redis_pool_loop
    _render_queue = None
    _redis_pool = None
    _redis_pool_loop = None
