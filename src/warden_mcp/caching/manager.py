"""Time-boxed, single-flight cache for expensive read-only lookups."""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

from .metrics import CacheMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

Loader = Callable[[], Union[T, Awaitable[T]]]

DEFAULT_TTL_SECONDS = 300.0


@dataclass(slots=True)
class CachedEntry(Generic[T]):
    """A cached value plus the bookkeeping needed to decide staleness."""

    data: T
    cached_at: float
    ttl: float
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, now: float) -> bool:
        return now - self.cached_at >= self.ttl

    def age_seconds(self, now: float) -> int:
        return int(now - self.cached_at)


class CachedResourceManager(Generic[T]):
    """Get-or-load cache for a single named resource.

    Entries expire lazily: staleness is checked on access and a stale entry is
    replaced by a fresh load, never returned. Concurrent misses collapse into a
    single in-flight load whose result (or exception) every waiter shares.
    """

    def __init__(
        self,
        resource_name: str,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self._resource_name = resource_name
        self._default_ttl = float(default_ttl)
        self._clock = clock
        self._metrics = CacheMetrics()
        self._entry: CachedEntry[T] | None = None
        self._inflight: concurrent.futures.Future[CachedEntry[T]] | None = None
        self._inflight_lock = threading.Lock()

    @property
    def resource_name(self) -> str:
        return self._resource_name

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    @property
    def metrics(self) -> CacheMetrics:
        return self._metrics

    def peek(self) -> CachedEntry[T] | None:
        """Return the current entry when it is still fresh, without touching metrics."""

        entry = self._entry
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry

    async def get_or_load(
        self,
        loader: Loader[T],
        force_reload: bool = False,
        ttl: float | None = None,
    ) -> CachedEntry[T]:
        """Return the cached entry, loading it through ``loader`` when needed."""

        if not force_reload:
            entry = self._entry
            now = self._clock()
            if entry is not None and not entry.is_expired(now):
                self._metrics.record_hit()
                logger.debug(
                    "Cache hit",
                    extra={
                        "resource": self._resource_name,
                        "age_seconds": entry.age_seconds(now),
                        "metrics": str(self._metrics),
                    },
                )
                return entry

        # The in-flight marker is loop-agnostic so callers on other threads
        # and event loops can wait on the same load.
        with self._inflight_lock:
            inflight = self._inflight
            joining = inflight is not None and not inflight.done()
            if not joining:
                inflight = concurrent.futures.Future()
                self._inflight = inflight

        if joining:
            self._metrics.record_hit()
            logger.debug("Joining in-flight load", extra={"resource": self._resource_name})
        else:
            self._metrics.record_miss()
            logger.debug(
                "Cache miss",
                extra={"resource": self._resource_name, "force_reload": force_reload},
            )
            task = asyncio.ensure_future(self._load(loader, ttl))
            task.add_done_callback(partial(self._finish_load, inflight))

        return await asyncio.shield(asyncio.wrap_future(inflight))

    def clear(self) -> None:
        """Drop the cached entry so the next access reloads."""

        self._entry = None
        logger.info("Cache cleared", extra={"resource": self._resource_name})

    def reset_metrics(self) -> None:
        self._metrics.reset()
        logger.info("Cache metrics reset", extra={"resource": self._resource_name})

    def describe(self, entry: CachedEntry[T], data: Any = None) -> dict[str, Any]:
        """Build a response payload carrying cache metadata next to ``data``."""

        now = self._clock()
        return {
            "data": entry.data if data is None else data,
            "cache": {
                "resource": self._resource_name,
                "timestamp": entry.loaded_at.isoformat(),
                "cache_age_seconds": entry.age_seconds(now),
                "cache_duration_seconds": int(entry.ttl),
                "metrics": self._metrics.as_dict(),
            },
        }

    async def _load(self, loader: Loader[T], ttl: float | None) -> CachedEntry[T]:
        if inspect.iscoroutinefunction(loader):
            value = await loader()
        else:
            value = await asyncio.to_thread(loader)
            if inspect.isawaitable(value):
                value = await value

        effective_ttl = float(ttl) if ttl is not None else self._default_ttl
        entry: CachedEntry[T] = CachedEntry(data=value, cached_at=self._clock(), ttl=effective_ttl)
        self._entry = entry
        logger.info(
            "Cache updated",
            extra={"resource": self._resource_name, "expires_in": effective_ttl},
        )
        return entry

    def _finish_load(
        self,
        inflight: concurrent.futures.Future[CachedEntry[T]],
        task: asyncio.Future[CachedEntry[T]],
    ) -> None:
        with self._inflight_lock:
            if self._inflight is inflight:
                self._inflight = None

        if task.cancelled():
            inflight.cancel()
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Cache load failed",
                extra={"resource": self._resource_name, "error": str(exc)},
            )
            inflight.set_exception(exc)
        else:
            inflight.set_result(task.result())


__all__ = ["CachedEntry", "CachedResourceManager", "DEFAULT_TTL_SECONDS", "Loader"]
