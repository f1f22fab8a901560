from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Generic, Protocol, TypeVar

from qreports.core.errors import ServiceBusyError, UpstreamError
from qreports.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RendererFactory(Protocol[T]):
    async def create(self) -> T:
        ...

    async def destroy(self, instance: T) -> None:
        ...

    def is_healthy(self, instance: T) -> bool:
        ...


@dataclass
class _IdleSlot(Generic[T]):
    instance: T
    idle_since: float


@dataclass(frozen=True)
class PoolStats:
    size: int
    idle: int
    in_use: int
    max_size: int
    min_size: int


class RendererPool(Generic[T]):
    """Bounded pool of expensive renderer handles with idle eviction.

    ``size`` counts every live handle (idle, leased or being launched) and
    never exceeds ``max_size``. Unhealthy handles are destroyed instead of
    going back to the idle set, so a crashed renderer frees its slot.
    """

    def __init__(
        self,
        factory: RendererFactory[T],
        *,
        max_size: int = 5,
        min_size: int = 1,
        idle_timeout_s: float = 30,
        evict_interval_s: float = 10,
        name: str = "renderer",
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._factory = factory
        self._max_size = max(1, max_size)
        self._min_size = max(0, min(min_size, self._max_size))
        self._idle_timeout_s = idle_timeout_s
        self._evict_interval_s = evict_interval_s
        self._name = name
        self._time = time_source or time.monotonic
        self._idle: list[_IdleSlot[T]] = []
        self._size = 0
        self._closed = False
        self._cond = asyncio.Condition()
        self._evict_task: asyncio.Task | None = None

    @property
    def name(self) -> str:
        return self._name

    def stats(self) -> PoolStats:
        idle = len(self._idle)
        return PoolStats(
            size=self._size,
            idle=idle,
            in_use=self._size - idle,
            max_size=self._max_size,
            min_size=self._min_size,
        )

    async def start(self) -> None:
        # Warm the minimum set and begin the periodic eviction sweep.
        while self._size < self._min_size:
            async with self._cond:
                self._size += 1
            try:
                instance = await self._create()
            except BaseException:
                async with self._cond:
                    self._size -= 1
                raise
            async with self._cond:
                self._idle.append(_IdleSlot(instance, self._time()))
                self._cond.notify()
                self._publish()
        if self._evict_task is None and self._evict_interval_s > 0:
            self._evict_task = asyncio.create_task(self._eviction_loop())

    async def acquire(self) -> T:
        unhealthy: list[T] = []
        try:
            async with self._cond:
                while True:
                    if self._closed:
                        raise ServiceBusyError(f"{self._name} pool is closed")
                    while self._idle:
                        slot = self._idle.pop()
                        if self._factory.is_healthy(slot.instance):
                            self._publish()
                            return slot.instance
                        self._size -= 1
                        unhealthy.append(slot.instance)
                    if self._size < self._max_size:
                        # Reserve the slot before launching outside the lock.
                        self._size += 1
                        self._publish()
                        break
                    await self._cond.wait()
        finally:
            for instance in unhealthy:
                await self._destroy(instance)
        try:
            return await self._create()
        except BaseException:
            async with self._cond:
                self._size -= 1
                self._cond.notify()
            raise

    async def release(self, instance: T, *, broken: bool = False) -> None:
        healthy = not broken and not self._closed and self._factory.is_healthy(instance)
        async with self._cond:
            if healthy:
                self._idle.append(_IdleSlot(instance, self._time()))
            else:
                self._size -= 1
            self._cond.notify()
            self._publish()
        if not healthy:
            increment_counter(f"{self._name}_discarded_total")
            await self._destroy(instance)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[T]:
        instance = await self.acquire()
        try:
            yield instance
        finally:
            await self.release(instance)

    async def evict_idle(self) -> int:
        # Destroy handles idle past the threshold, never dropping below the minimum.
        now = self._time()
        victims: list[T] = []
        async with self._cond:
            keep: list[_IdleSlot[T]] = []
            # Oldest first so the most recently used handles stay warm.
            for slot in sorted(self._idle, key=lambda s: s.idle_since):
                expired = now - slot.idle_since >= self._idle_timeout_s
                if expired and self._size - len(victims) > self._min_size:
                    victims.append(slot.instance)
                else:
                    keep.append(slot)
            self._idle = sorted(keep, key=lambda s: s.idle_since)
            self._size -= len(victims)
            if victims:
                self._cond.notify(len(victims))
            self._publish()
        for instance in victims:
            await self._destroy(instance)
        if victims:
            logger.info("renderer_pool_evicted pool=%s count=%s", self._name, len(victims))
        return len(victims)

    async def close(self) -> None:
        if self._evict_task is not None:
            self._evict_task.cancel()
            try:
                await self._evict_task
            except asyncio.CancelledError:
                pass
            self._evict_task = None
        async with self._cond:
            self._closed = True
            idle = [slot.instance for slot in self._idle]
            self._idle.clear()
            self._size -= len(idle)
            self._cond.notify_all()
            self._publish()
        for instance in idle:
            await self._destroy(instance)

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self._evict_interval_s)
            try:
                await self.evict_idle()
            except Exception as exc:  # noqa: BLE001 - keep sweeping after a bad destroy
                logger.warning("renderer_pool_evict_failed pool=%s", self._name, exc_info=exc)

    async def _create(self) -> T:
        try:
            instance = await self._factory.create()
        except Exception as exc:  # noqa: BLE001 - launch failures are infrastructure errors
            logger.warning("renderer_launch_failed pool=%s", self._name, exc_info=exc)
            raise UpstreamError("Failed to launch renderer") from exc
        increment_counter(f"{self._name}_created_total")
        return instance

    async def _destroy(self, instance: T) -> None:
        try:
            await self._factory.destroy(instance)
        except Exception as exc:  # noqa: BLE001 - a dead process may refuse a clean close
            logger.warning("renderer_destroy_failed pool=%s", self._name, exc_info=exc)

    def _publish(self) -> None:
        set_gauge(f"{self._name}_pool_size", float(self._size))
        set_gauge(f"{self._name}_pool_idle", float(len(self._idle)))
