"""Tests for the aggregate-layer WeightOptimizer."""

import pytest
from model_group_optimizer.models import PeriodStats, StatsSnapshot, Upstream
from model_group_optimizer.stats_cache import StatsCache
from model_group_optimizer.weights import WeightOptimizer, compute_weight, weight_set

from .conftest import INSTANCE, aggregate_group, stats_payload


def _optimizer(registry, topology) -> WeightOptimizer:
    return WeightOptimizer(registry, topology, StatsCache(registry), write_delay=0)


class TestComputeWeight:
    def test_success_and_latency(self):
        snap = StatsSnapshot(hourly_stats=PeriodStats(total_requests=100, failure_rate=0.1, avg_response_time=2000))
        # 0.9 * 0.8 * 100
        assert compute_weight(snap) == 72

    def test_default_latency(self):
        snap = StatsSnapshot(hourly_stats=PeriodStats(total_requests=100, failure_rate=0.0))
        assert compute_weight(snap) == 70

    def test_slow_upstream_floor(self):
        snap = StatsSnapshot(hourly_stats=PeriodStats(failure_rate=0.0, avg_response_time=60_000))
        assert compute_weight(snap) == 10

    def test_minimum_weight_is_one(self):
        snap = StatsSnapshot(hourly_stats=PeriodStats(failure_rate=1.0))
        assert compute_weight(snap) == 1

    def test_errored_snapshot_gets_default(self):
        assert compute_weight(StatsSnapshot.empty("boom", fetched_at=0)) == 1

    def test_half_weights_round_up(self):
        # 0.5 * 0.25 * 100 is exactly 12.5
        snap = StatsSnapshot(hourly_stats=PeriodStats(failure_rate=0.5, avg_response_time=7500))
        assert compute_weight(snap) == 13


class TestWeightSet:
    def test_order_independent(self):
        a = [Upstream(url="http://x/proxy/a", weight=3), Upstream(url="http://x/proxy/b", weight=5)]
        assert weight_set(a) == weight_set(list(reversed(a)))


class TestWeightOptimizer:
    @pytest.mark.asyncio
    async def test_updates_aggregate_upstreams(self, registry, topology):
        registry.set_stats(
            registry.get(10, "local"), stats_payload(hourly_failure_rate=0.0, avg_response_time=1000)
        )
        optimizer = _optimizer(registry, topology)

        result = await optimizer.optimize()

        assert result.total == 1
        assert result.updated == 1
        group_id, _, fields = registry.updates[-1]
        assert group_id == 20
        weights = {u["url"]: u["weight"] for u in fields["upstreams"]}
        assert weights[f"{INSTANCE.url}/proxy/gpt-4o-via-openai-main"] == 90
        # 60% failures at the default 3 s latency
        assert weights[f"{INSTANCE.url}/proxy/gpt-4o-via-backup-site"] == 28

    @pytest.mark.asyncio
    async def test_unchanged_weights_skip_write(self, registry, topology):
        optimizer = _optimizer(registry, topology)
        await optimizer.optimize()
        writes = len(registry.updates)

        result = await optimizer.optimize()

        assert result.skipped == 1
        assert result.updated == 0
        assert len(registry.updates) == writes

    @pytest.mark.asyncio
    async def test_unresolvable_upstream_gets_default_weight(self, registry, topology):
        registry.add_group(aggregate_group(30, "claude-3-opus", ["claude-3-opus-via-gone"]))
        optimizer = _optimizer(registry, topology)

        await optimizer.optimize()

        fields = next(f for gid, _, f in registry.updates if gid == 30)
        assert fields["upstreams"] == [{"url": f"{INSTANCE.url}/proxy/claude-3-opus-via-gone", "weight": 1}]

    @pytest.mark.asyncio
    async def test_write_failure_is_counted(self, registry, topology):
        registry.fail_on["update_group"] = {20}
        optimizer = _optimizer(registry, topology)

        result = await optimizer.optimize()

        assert result.errors == 1
        assert optimizer.cached_weights(20) is None
