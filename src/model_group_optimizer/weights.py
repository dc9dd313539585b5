"""Traffic weights for aggregate groups from backing-group performance."""

import asyncio
import logging

from model_group_optimizer.models import Group, StatsSnapshot, Upstream, WeightOptimizationResult
from model_group_optimizer.registry.base import GroupRegistry
from model_group_optimizer.scoring import round_half_up
from model_group_optimizer.stats_cache import StatsCache
from model_group_optimizer.topology import TopologyManager, proxy_path_name

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT = 1
# Assumed latency when the registry reports none
DEFAULT_RESPONSE_TIME_MS = 3000.0

WeightSet = tuple[tuple[str, int], ...]


def compute_weight(stats: StatsSnapshot) -> int:
    hourly = stats.hourly_stats
    if stats.error or hourly is None:
        return DEFAULT_WEIGHT
    success_rate = 1 - hourly.failure_rate
    avg_time = hourly.avg_response_time or DEFAULT_RESPONSE_TIME_MS
    time_factor = max(0.1, 1 - avg_time / 10_000)
    return max(1, round_half_up(success_rate * time_factor * 100))


def weight_set(upstreams: list[Upstream]) -> WeightSet:
    """Order-independent form of an upstream list."""
    return tuple(sorted((u.url, u.weight) for u in upstreams))


class WeightOptimizer:
    """Rewrites aggregate-group upstream weights, skipping unchanged sets."""

    def __init__(
        self,
        registry: GroupRegistry,
        topology: TopologyManager,
        stats: StatsCache,
        write_delay: float = 0.1,
    ) -> None:
        self.registry = registry
        self.topology = topology
        self.stats = stats
        self.write_delay = write_delay
        self._cache: dict[int, WeightSet] = {}

    def cached_weights(self, group_id: int) -> WeightSet | None:
        return self._cache.get(group_id)

    def clear(self) -> None:
        self._cache = {}

    async def optimize(self) -> WeightOptimizationResult:
        groups = await self.topology.refresh_groups()
        by_name = {g.name: g for g in groups}
        aggregates = self.topology.aggregate_groups(groups)
        result = WeightOptimizationResult(total=len(aggregates))

        for group in aggregates:
            try:
                upstreams = await self._weigh_upstreams(group, by_name)
                if not upstreams:
                    continue
                new_set = weight_set(upstreams)
                if self._cache.get(group.id) == new_set:
                    result.skipped += 1
                    continue
                await self.registry.update_group(
                    group.id, group.instance_id, {"upstreams": [u.model_dump() for u in upstreams]}
                )
                self._cache = {**self._cache, group.id: new_set}
                result.updated += 1
                adjusted = sum(1 for u in upstreams if u.weight != DEFAULT_WEIGHT)
                if adjusted:
                    logger.info("Group %s: %d/%d upstream weights adjusted", group.name, adjusted, len(upstreams))
                await asyncio.sleep(self.write_delay)
            except Exception:
                logger.exception("Failed to optimize weights of group %s", group.name)
                result.errors += 1

        logger.info(
            "Weight optimization: %d updated, %d unchanged, %d errors",
            result.updated,
            result.skipped,
            result.errors,
        )
        if result.total and result.errors > result.total * 0.3:
            logger.warning("Weight optimization failed for %d of %d groups", result.errors, result.total)
        return result

    async def _weigh_upstreams(self, group: Group, by_name: dict[str, Group]) -> list[Upstream]:
        upstreams: list[Upstream] = []
        for upstream in group.upstreams:
            name = proxy_path_name(upstream.url)
            backing = by_name.get(name) if name else None
            if backing is None:
                logger.warning("Upstream group %s of %s not found, using default weight", name, group.name)
                upstreams.append(Upstream(url=upstream.url, weight=DEFAULT_WEIGHT))
                continue
            try:
                snapshot = await self.stats.get_stats(backing.id, backing.instance_id)
                weight = compute_weight(snapshot)
            except Exception as exc:
                logger.warning("Stats for %s unavailable (%s), using default weight", backing.name, exc)
                weight = DEFAULT_WEIGHT
            upstreams.append(Upstream(url=upstream.url, weight=weight))
        return upstreams
