"""Bounded, score-driven priority rebalancing for a model's groups.

Lower ``sort`` means preferred.  Each sweep moves a group by at most
``MAX_STEP`` and never outside ``[MIN_PRIORITY, MAX_PRIORITY]``.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass

from model_group_optimizer.models import (
    Group,
    OptimizationSummary,
    PriorityAdjustment,
    ScoreResult,
    StatsSnapshot,
)
from model_group_optimizer.registry.base import GroupRegistry
from model_group_optimizer.scoring import score
from model_group_optimizer.stats_cache import StatsCache
from model_group_optimizer.topology import TopologyManager

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 99
MAX_STEP = 10


@dataclass
class ScoredGroup:
    group: Group
    stats: StatsSnapshot
    result: ScoreResult

    @property
    def score(self) -> int:
        return self.result.score


@dataclass
class PriorityPlan:
    group: Group
    new_priority: int
    reasons: list[str]


def _clamp(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, value))


def plan_priority(
    current: ScoredGroup,
    previous: ScoredGroup | None = None,
    previous_priority: int | None = None,
) -> PriorityPlan:
    """Compute the next priority of one group.

    ``previous`` is the group processed just before this one in the same
    sweep and ``previous_priority`` its priority after that sweep step.
    """
    group, stats, s = current.group, current.stats, current.score
    old = group.priority
    target = old
    reasons: list[str] = []

    if s >= 80:
        target = _clamp(old - max(1, (s - 70) // 10))
        if target != old:
            reasons.append(f"excellent score {s}")
    elif s >= 60:
        if old > 10:
            target = max(old - 1, 10)
            reasons.append("performance recovering")
    elif s >= 40:
        target = _clamp(old + max(1, (60 - s) // 10))
        reasons.append(f"performance declining (score {s})")
    elif s >= 20:
        target = _clamp(old + 10)
        reasons.append(f"serious problems (score {s})")
    else:
        target = MAX_PRIORITY
        reasons.append(f"critical problems (score {s})")

    hourly = stats.hourly_stats
    if hourly is not None:
        if hourly.failure_rate > 0.2:
            target = _clamp(target + 3)
            reasons.append(f"high failure rate {hourly.failure_rate:.1%}")
        elif hourly.failure_rate < 0.01 and hourly.total_requests > 10:
            target = _clamp(target - 1)
            reasons.append(f"low failure rate {hourly.failure_rate:.1%}")
        if hourly.total_requests > 100 and hourly.failure_rate < 0.05:
            target = _clamp(target - 1)
            reasons.append("stable under high volume")

    ks = stats.key_stats
    if ks is not None:
        ratio = ks.active_keys / (ks.total_keys or 1)
        if ks.active_keys == 0:
            target = MAX_PRIORITY
            reasons.append("no active keys")
        elif ratio < 0.3:
            target = min(target + 5, 90)
            reasons.append(f"only {ratio:.1%} of keys active")
        elif ratio > 0.8:
            target = _clamp(target - 1)
            reasons.append(f"healthy keys {ratio:.1%}")

    if previous is not None and previous_priority is not None:
        if abs(target - previous_priority) < 2 and s < previous.score:
            target = _clamp(target + 2)
            reasons.append("keep relative ordering")

    delta = max(-MAX_STEP, min(MAX_STEP, target - old))
    return PriorityPlan(group=group, new_priority=_clamp(old + delta), reasons=reasons)


class PriorityController:
    """Scores a model's groups and persists bounded priority changes.

    Sweeps over the same model are serialised by a per-model lock so that a
    group's priority always reflects exactly one sweep's decision.
    """

    def __init__(self, registry: GroupRegistry, topology: TopologyManager, stats: StatsCache) -> None:
        self.registry = registry
        self.topology = topology
        self.stats = stats
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def score_group(self, group: Group, force_refresh: bool = False) -> ScoredGroup:
        snapshot = await self.stats.get_stats(group.id, group.instance_id, force_refresh=force_refresh)
        return ScoredGroup(group=group, stats=snapshot, result=score(snapshot))

    async def score_groups(self, groups: list[Group]) -> list[ScoredGroup]:
        return list(await asyncio.gather(*(self.score_group(g) for g in groups)))

    async def optimize_model(self, model: str) -> OptimizationSummary:
        async with self._locks[model]:
            groups = self.topology.groups_for(model)
            summary = OptimizationSummary(model=model, total_groups=len(groups))
            if not groups:
                return summary

            scored = await self.score_groups(groups)
            scored.sort(key=lambda sg: (sg.group.priority, sg.group.name))
            summary.average_score = sum(sg.score for sg in scored) / len(scored)

            previous: ScoredGroup | None = None
            previous_priority: int | None = None
            for current in scored:
                plan = plan_priority(current, previous, previous_priority)
                applied = await self._apply(plan, current.score)
                if applied is not None:
                    summary.adjustments.append(applied)
                previous = current
                previous_priority = applied.new_priority if applied is not None else current.group.priority

            summary.adjusted_groups = len(summary.adjustments)
            summary.improvements = sum(1 for a in summary.adjustments if a.change == "improved")
            summary.degradations = summary.adjusted_groups - summary.improvements

        if summary.adjusted_groups:
            logger.info(
                "Optimized %s: %d groups adjusted (%d improved, %d degraded), average score %.1f",
                model,
                summary.adjusted_groups,
                summary.improvements,
                summary.degradations,
                summary.average_score,
            )
        else:
            logger.info("Model %s needs no priority changes", model)
        return summary

    async def shift_priority(
        self, model: str, group: Group, delta: int, group_score: int, reason: str
    ) -> PriorityAdjustment | None:
        """Move a single group by ``delta`` outside a full sweep."""
        async with self._locks[model]:
            current = self.topology.find_group(group.key) or group
            delta = max(-MAX_STEP, min(MAX_STEP, delta))
            plan = PriorityPlan(group=current, new_priority=_clamp(current.priority + delta), reasons=[reason])
            return await self._apply(plan, group_score)

    async def _apply(self, plan: PriorityPlan, group_score: int) -> PriorityAdjustment | None:
        group, new = plan.group, plan.new_priority
        if new == group.priority:
            return None
        try:
            await self.registry.update_group(group.id, group.instance_id, {"sort": new})
        except Exception:
            logger.exception("Failed to update priority of group %s", group.name)
            return None
        self.topology.replace_group(group.model_copy(update={"sort": new}))
        change = "improved" if new < group.priority else "degraded"
        logger.info(
            "%s %s: priority %d -> %d (score %d: %s)",
            change.capitalize(),
            group.name,
            group.priority,
            new,
            group_score,
            ", ".join(plan.reasons),
        )
        return PriorityAdjustment(
            group_id=group.id,
            group_name=group.name,
            old_priority=group.priority,
            new_priority=new,
            score=group_score,
            reasons=plan.reasons,
            change=change,
        )
