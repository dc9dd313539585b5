"""Short-TTL cache of merged per-group statistics.

Each miss issues the stats and detail fetches concurrently and merges
whatever succeeded.  Concurrent callers for the same key share one in-flight
fetch.  Snapshots produced by a total failure are returned but never cached.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from model_group_optimizer.models import StatsSnapshot
from model_group_optimizer.registry.base import GroupRegistry

logger = logging.getLogger(__name__)

CacheKey = tuple[str, int]


class StatsCache:
    """Read-through cache keyed by ``(instance_id, group_id)``."""

    def __init__(
        self,
        registry: GroupRegistry,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[CacheKey, StatsSnapshot] = {}
        self._inflight: dict[CacheKey, asyncio.Task[StatsSnapshot]] = {}
        self._generation = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def get_stats(self, group_id: int, instance_id: str, force_refresh: bool = False) -> StatsSnapshot:
        key = (instance_id, group_id)
        if not force_refresh:
            cached = self._entries.get(key)
            if cached is not None and self._clock() < cached.fetched_at + self.ttl:
                return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch(group_id, instance_id))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def invalidate(self, group_id: int, instance_id: str) -> None:
        self._entries.pop((instance_id, group_id), None)

    def clear(self) -> None:
        self._generation += 1
        self._entries.clear()
        self._inflight.clear()

    def _forget(self, key: CacheKey, task: asyncio.Task[StatsSnapshot]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _fetch(self, group_id: int, instance_id: str) -> StatsSnapshot:
        generation = self._generation
        stats, detail = await asyncio.gather(
            self.registry.get_group_stats(group_id, instance_id),
            self.registry.get_group_detail(group_id, instance_id),
            return_exceptions=True,
        )
        now = self._clock()
        stats_ok = not isinstance(stats, BaseException)
        detail_ok = not isinstance(detail, BaseException)

        if not stats_ok and not detail_ok:
            logger.warning("Stats fetch failed for group %s on %s: %s", group_id, instance_id, stats)
            return StatsSnapshot.empty(str(stats), fetched_at=now)

        merged: dict[str, Any] = {}
        if stats_ok and isinstance(stats, dict):
            merged.update(stats)
        else:
            logger.debug("Detailed stats unavailable for group %s: %s", group_id, stats)
        if detail_ok and isinstance(detail, dict):
            merged["group_info"] = detail
            if "key_stats" not in merged and isinstance(detail.get("key_stats"), dict):
                merged["key_stats"] = detail["key_stats"]
        merged["fetched_at"] = now
        merged.pop("error", None)

        try:
            snapshot = StatsSnapshot.model_validate(merged)
        except ValidationError as exc:
            logger.warning("Malformed stats for group %s on %s: %s", group_id, instance_id, exc)
            return StatsSnapshot.empty(f"malformed stats: {exc}", fetched_at=now)
        if generation == self._generation:
            self._entries[(instance_id, group_id)] = snapshot
        return snapshot
