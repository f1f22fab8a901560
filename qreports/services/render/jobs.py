from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Protocol

from pydantic import BaseModel
from redis.asyncio import Redis

from qreports.core.config import get_settings


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class InvalidTransitionError(RuntimeError):
    """Raised when a worker tries to move a job backwards or out of a terminal state."""


class RenderJob(BaseModel):
    job_id: str
    tenant_id: int
    report_id: str | None = None
    state: JobState = JobState.WAITING
    progress: int = 0
    pdf_data: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job(job_id: str, *, tenant_id: int, report_id: str | None = None) -> RenderJob:
    now = _utc_now()
    return RenderJob(job_id=job_id, tenant_id=tenant_id, report_id=report_id, created_at=now, updated_at=now)


def advance(job: RenderJob, progress: int) -> RenderJob:
    # Progress only moves forward while the job is active.
    if job.state in TERMINAL_STATES:
        raise InvalidTransitionError(f"job {job.job_id} is already {job.state.value}")
    if not 0 <= progress <= 100:
        raise InvalidTransitionError(f"progress {progress} outside 0..100")
    if progress < job.progress:
        raise InvalidTransitionError(f"progress {progress} below current {job.progress}")
    return job.model_copy(update={"state": JobState.ACTIVE, "progress": progress, "updated_at": _utc_now()})


def complete(job: RenderJob, pdf_data: str) -> RenderJob:
    if job.state in TERMINAL_STATES:
        raise InvalidTransitionError(f"job {job.job_id} is already {job.state.value}")
    return job.model_copy(
        update={"state": JobState.COMPLETED, "progress": 100, "pdf_data": pdf_data, "updated_at": _utc_now()}
    )


def fail(job: RenderJob, reason: str) -> RenderJob:
    if job.state in TERMINAL_STATES:
        raise InvalidTransitionError(f"job {job.job_id} is already {job.state.value}")
    return job.model_copy(update={"state": JobState.FAILED, "error": reason, "updated_at": _utc_now()})


class RenderJobStore(Protocol):
    async def create(self, job: RenderJob) -> None:
        ...

    async def get(self, job_id: str) -> RenderJob | None:
        ...

    async def mark_active(self, job_id: str, progress: int) -> RenderJob:
        ...

    async def mark_completed(self, job_id: str, pdf_data: str) -> RenderJob:
        ...

    async def mark_failed(self, job_id: str, reason: str) -> RenderJob:
        ...


class _TransitionStore:
    # Shared read-modify-write; only the owning worker writes a given job.

    async def get(self, job_id: str) -> RenderJob | None:
        raise NotImplementedError

    async def _put(self, job: RenderJob) -> None:
        raise NotImplementedError

    async def _require(self, job_id: str) -> RenderJob:
        job = await self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job

    async def create(self, job: RenderJob) -> None:
        await self._put(job)

    async def mark_active(self, job_id: str, progress: int) -> RenderJob:
        job = advance(await self._require(job_id), progress)
        await self._put(job)
        return job

    async def mark_completed(self, job_id: str, pdf_data: str) -> RenderJob:
        job = complete(await self._require(job_id), pdf_data)
        await self._put(job)
        return job

    async def mark_failed(self, job_id: str, reason: str) -> RenderJob:
        job = fail(await self._require(job_id), reason)
        await self._put(job)
        return job


class InMemoryRenderJobStore(_TransitionStore):
    """Process-local job records for inline mode; expired records read as missing."""

    def __init__(self, *, retention_s: float | None = None, time_source: Callable[[], float] | None = None) -> None:
        self._retention_s = get_settings().render_job_retention_s if retention_s is None else retention_s
        self._time = time_source or time.monotonic
        self._jobs: dict[str, tuple[float, RenderJob]] = {}
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> RenderJob | None:
        async with self._lock:
            entry = self._jobs.get(job_id)
            if entry is None:
                return None
            expires_at, job = entry
            if expires_at <= self._time():
                self._jobs.pop(job_id, None)
                return None
            return job

    async def _put(self, job: RenderJob) -> None:
        async with self._lock:
            now = self._time()
            # Sweep on write so records nobody polls again still expire.
            expired = [job_id for job_id, (expires_at, _job) in self._jobs.items() if expires_at <= now]
            for job_id in expired:
                del self._jobs[job_id]
            self._jobs[job.job_id] = (now + self._retention_s, job)


class RedisRenderJobStore(_TransitionStore):
    """Job records as JSON strings in Redis; every write refreshes the retention TTL."""

    def __init__(self, redis: Redis, *, retention_s: int | None = None, key_prefix: str | None = None) -> None:
        settings = get_settings()
        self._redis = redis
        self._retention_s = settings.render_job_retention_s if retention_s is None else retention_s
        self._prefix = key_prefix or settings.render_job_key_prefix

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}:{job_id}"

    async def get(self, job_id: str) -> RenderJob | None:
        raw = await self._redis.get(self._key(job_id))
        if not raw:
            return None
        value = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        return RenderJob.model_validate_json(value)

    async def _put(self, job: RenderJob) -> None:
        await self._redis.set(self._key(job.job_id), job.model_dump_json(), ex=max(1, int(self._retention_s)))
