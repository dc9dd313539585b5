"""Health monitor: the control loop that drives every periodic sweep.

Each sweep runs in its own asyncio task with its own cadence and can be
stopped independently.  Sweeps overlap freely; every per-model and per-group
step isolates its own failures so one bad item never aborts a sweep.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from model_group_optimizer.models import (
    ChannelLogSummary,
    Group,
    GroupHealth,
    HealthSummary,
    ModelHealthReport,
    ModelStatus,
    MonitorEvent,
    OptimizationReport,
    OptimizationSummary,
    OptimizerConfig,
    PriorityAdjustment,
)
from model_group_optimizer.priority import PriorityController
from model_group_optimizer.recovery import RecoveryScheduler
from model_group_optimizer.registry.base import GroupRegistry, InitializationError
from model_group_optimizer.scoring import summarize_logs
from model_group_optimizer.stats_cache import StatsCache
from model_group_optimizer.topology import TopologyManager
from model_group_optimizer.weights import WeightOptimizer

logger = logging.getLogger(__name__)

EventHandler = Callable[[MonitorEvent], Awaitable[None] | None]


def classify_model_health(groups: list[GroupHealth]) -> tuple[ModelStatus, HealthSummary]:
    """Overall status of a model from its per-group health entries."""
    summary = HealthSummary(total=len(groups))
    for g in groups:
        if g.error is not None or g.score is None or g.score < 20:
            summary.critical += 1
        elif g.score >= 60:
            summary.healthy += 1
        else:
            summary.degraded += 1

    if not groups:
        return "no_groups", summary
    if summary.critical:
        return "critical", summary
    if summary.degraded > summary.healthy:
        return "degraded", summary
    if summary.healthy == 0:
        return "warning", summary
    return "healthy", summary


def degradation_severity(score: int) -> str:
    if score < 40:
        return "critical"
    if score < 60:
        return "warning"
    return "minor"


class HealthMonitor:
    """Owns the component graph and schedules its sweeps."""

    def __init__(
        self,
        registry: GroupRegistry,
        topology: TopologyManager,
        stats: StatsCache,
        priority: PriorityController,
        weights: WeightOptimizer,
        recovery: RecoveryScheduler,
        config: OptimizerConfig | None = None,
        event_handler: EventHandler | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.topology = topology
        self.stats = stats
        self.priority = priority
        self.weights = weights
        self.recovery = recovery
        self.config = config or OptimizerConfig()
        self.event_handler = event_handler
        self._clock = clock
        self._previous_scores: dict[tuple[str, int], int] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @classmethod
    def from_config(
        cls,
        config: OptimizerConfig,
        registry: GroupRegistry,
        topology: TopologyManager,
        event_handler: EventHandler | None = None,
    ) -> "HealthMonitor":
        """Wire the stats, priority, weight and recovery components."""
        stats = StatsCache(registry, ttl=config.stats_ttl)
        return cls(
            registry=registry,
            topology=topology,
            stats=stats,
            priority=PriorityController(registry, topology, stats),
            weights=WeightOptimizer(registry, topology, stats, write_delay=config.weight_write_delay),
            recovery=RecoveryScheduler(
                registry,
                topology,
                stats,
                initial_delay=config.recovery_initial_delay,
                max_delay=config.recovery_max_delay,
            ),
            config=config,
            event_handler=event_handler,
        )

    # -- Lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def task_names(self) -> list[str]:
        return sorted(self._tasks)

    @property
    def previous_scores(self) -> dict[tuple[str, int], int]:
        return dict(self._previous_scores)

    def _sweeps(self) -> dict[str, tuple[float, Callable[[], Awaitable[Any]]]]:
        c = self.config
        return {
            "full_optimize": (c.full_optimize_interval, self.optimize_all),
            "health_check": (c.health_check_interval, self.periodic_health_check),
            "smart_optimize": (c.smart_optimize_interval, self.smart_optimize),
            "status_change": (c.status_change_interval, self.detect_status_changes),
            "recovery": (c.recovery_interval, self.recovery.sweep),
            "log_analysis": (c.log_analysis_interval, self.recovery.analyze_recent_failures),
            "weight_optimize": (c.weight_optimize_interval, self.weights.optimize),
        }

    async def start(self) -> None:
        """Build the initial mapping, run a first health pass, start sweeps."""
        if self._tasks:
            return
        try:
            await self.topology.load_mapping()
        except Exception as exc:
            raise InitializationError(f"Could not build the model mapping: {exc}") from exc

        await self.periodic_health_check()
        for name, (interval, sweep) in self._sweeps().items():
            self._tasks[name] = asyncio.create_task(self._loop(name, interval, sweep), name=f"monitor:{name}")
        logger.info("Health monitor started %d sweeps over %d models", len(self._tasks), len(self.topology.mapping))

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = {}
        self.topology.clear()
        self.stats.clear()
        self.weights.clear()
        self.recovery.clear()
        self._previous_scores = {}
        logger.info("Health monitor stopped")

    async def stop_sweep(self, name: str) -> bool:
        task = self._tasks.get(name)
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._tasks = {k: v for k, v in self._tasks.items() if k != name}
        return True

    async def _loop(self, name: str, interval: float, sweep: Callable[[], Awaitable[Any]]) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Sweep %s failed", name)

    # -- Optimization sweeps -----------------------------------------------

    async def optimize_model(self, model: str) -> OptimizationSummary:
        return await self.priority.optimize_model(model)

    async def optimize_all(self) -> list[OptimizationSummary]:
        """Refresh the mapping, then rebalance every model."""
        try:
            await self.topology.load_mapping()
        except Exception:
            logger.exception("Mapping refresh failed, keeping the previous mapping")

        summaries: list[OptimizationSummary] = []
        for model in self.topology.models():
            try:
                summaries.append(await self.priority.optimize_model(model))
            except Exception:
                logger.exception("Optimization of %s failed", model)
        logger.info(
            "Full optimization: %d models, %d groups adjusted",
            len(summaries),
            sum(s.adjusted_groups for s in summaries),
        )
        return summaries

    async def smart_optimize(self) -> list[OptimizationSummary]:
        """Rebalance only models that are not healthy or need validation."""
        summaries: list[OptimizationSummary] = []
        for model in self.topology.models():
            try:
                report = await self.check_model_health(model)
                if report.overall_status != "healthy" or report.needs_validation:
                    summaries.append(await self.priority.optimize_model(model))
            except Exception:
                logger.exception("Smart optimization of %s failed", model)
        if summaries:
            logger.info(
                "Smart optimization: %d models, %d groups adjusted",
                len(summaries),
                sum(s.adjusted_groups for s in summaries),
            )
        return summaries

    # -- Health ------------------------------------------------------------

    async def check_model_health(self, model: str) -> ModelHealthReport:
        groups = self.topology.groups_for(model)
        entries: list[GroupHealth] = []
        needs_validation = False
        for group in groups:
            entry = await self._group_health(group)
            if entry.recommended_action in ("immediate_fix", "investigate", "validate"):
                needs_validation = True
            entries.append(entry)

        status, summary = classify_model_health(entries)
        return ModelHealthReport(
            model=model,
            overall_status=status,
            groups=entries,
            summary=summary,
            needs_validation=needs_validation,
            timestamp=self._clock(),
        )

    async def _group_health(self, group: Group) -> GroupHealth:
        entry = GroupHealth(
            group_id=group.id,
            group_name=group.name,
            instance_id=group.instance_id,
            priority=group.priority,
        )
        try:
            scored = await self.priority.score_group(group)
        except Exception as exc:
            logger.exception("Health check of group %s failed", group.name)
            return entry.model_copy(update={"error": str(exc), "needs_attention": True, "recommended_action": "validate"})

        result = scored.result
        entry = entry.model_copy(
            update={
                "score": result.score,
                "health_level": result.health_level,
                "recommendations": result.recommendations,
                "error": scored.stats.error,
            }
        )
        action, attention = "none", False
        if result.score == 0:
            action, attention = "immediate_fix", True
        elif result.score < 40:
            action, attention = "investigate", True
        elif result.score < 60:
            action = "monitor"
        hourly = scored.stats.hourly_stats
        if scored.stats.error is not None or (hourly is not None and hourly.total_requests < 5):
            action = "validate"
            attention = attention or scored.stats.error is not None
        return entry.model_copy(update={"recommended_action": action, "needs_attention": attention})

    async def periodic_health_check(self) -> list[ModelHealthReport]:
        """Check every model; rebalance critical ones immediately."""
        reports: list[ModelHealthReport] = []
        issues: list[dict[str, Any]] = []
        for model in self.topology.models():
            try:
                report = await self.check_model_health(model)
                reports.append(report)
                if report.overall_status == "critical":
                    issues.append({"model": model, "status": "critical", "critical_groups": report.summary.critical})
                    await self.priority.optimize_model(model)
            except Exception:
                logger.exception("Health check of %s failed", model)

        healthy = sum(1 for r in reports if r.overall_status == "healthy")
        logger.info("Health check: %d/%d models healthy", healthy, len(reports))
        if issues:
            await self._emit(
                "periodic_health_check",
                {
                    "total_models": len(reports),
                    "healthy_models": healthy,
                    "problematic_models": len(issues),
                    "issues": issues,
                },
            )
        return reports

    async def detect_status_changes(self) -> list[MonitorEvent]:
        """Compare each group's score to its last observed score."""
        events: list[MonitorEvent] = []
        seen: set[tuple[str, int]] = set()
        threshold = self.config.score_change_threshold
        for model, groups in self.topology.mapping.items():
            for group in groups:
                if group.key in seen:
                    continue
                seen.add(group.key)
                try:
                    current = (await self.priority.score_group(group)).score
                    previous = self._previous_scores.get(group.key, current)
                    if abs(current - previous) >= threshold:
                        if current > previous:
                            events.append(await self._handle_improved(model, group, current, previous))
                        else:
                            events.append(await self._handle_degraded(model, group, current, previous))
                    self._previous_scores = {**self._previous_scores, group.key: current}
                except Exception:
                    logger.exception("Status change detection failed for group %s", group.name)
        return events

    async def _handle_improved(self, model: str, group: Group, current: int, previous: int) -> MonitorEvent:
        logger.info("Group %s improved: %d -> %d", group.name, previous, current)
        adjustment = await self.priority.shift_priority(
            model, group, -((current - previous) // 20), current, f"score improved {previous} -> {current}"
        )
        return await self._emit(
            "group_improved",
            {
                "model": model,
                "group_name": group.name,
                "previous_score": previous,
                "current_score": current,
                "priority_change": _priority_change(adjustment),
            },
        )

    async def _handle_degraded(self, model: str, group: Group, current: int, previous: int) -> MonitorEvent:
        logger.info("Group %s degraded: %d -> %d", group.name, previous, current)
        adjustment = await self.priority.shift_priority(
            model, group, (previous - current) // 20, current, f"score dropped {previous} -> {current}"
        )
        if current < 40:
            logger.warning("Group %s severely degraded, validating model %s", group.name, model)
            await self.trigger_model_validation(model)
        return await self._emit(
            "group_degraded",
            {
                "model": model,
                "group_name": group.name,
                "previous_score": previous,
                "current_score": current,
                "priority_change": _priority_change(adjustment),
                "severity": degradation_severity(current),
            },
        )

    async def _emit(self, event_type: str, data: dict[str, Any]) -> MonitorEvent:
        event = MonitorEvent(type=event_type, timestamp=self._clock(), data=data)
        logger.warning("Alert %s: %s", event_type, data)
        if self.event_handler is not None:
            try:
                result = self.event_handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event_type)
        return event

    # -- Operator queries --------------------------------------------------

    async def trigger_model_validation(self, model: str) -> int:
        """Request key validation for every group of a model."""
        groups = self.topology.groups_for(model)
        triggered = 0
        for group in groups:
            try:
                await self.registry.trigger_validation(group.id, group.instance_id)
                triggered += 1
            except Exception:
                logger.exception("Validation trigger failed for group %s", group.name)
        logger.info("Triggered validation for %d/%d groups of %s", triggered, len(groups), model)
        return triggered

    async def best_group(self, model: str) -> GroupHealth | None:
        """The highest-scoring group of a model, ignoring groups scoring 0."""
        best: GroupHealth | None = None
        for group in self.topology.groups_for(model):
            entry = await self._group_health(group)
            if entry.score and (best is None or entry.score > (best.score or 0)):
                best = entry
        return best

    async def optimization_report(self) -> OptimizationReport:
        reports: list[ModelHealthReport] = []
        for model in self.topology.models():
            try:
                reports.append(await self.check_model_health(model))
            except Exception:
                logger.exception("Report for %s failed", model)

        counts = {status: 0 for status in ("healthy", "warning", "degraded", "critical", "no_groups")}
        for r in reports:
            counts[r.overall_status] += 1
        summary = {"total_models": len(reports), **counts}

        recommendations: list[str] = []
        if counts["critical"]:
            recommendations.append(f"{counts['critical']} models have critical groups and need immediate attention")
        if counts["degraded"] > counts["healthy"]:
            recommendations.append("Degraded models outnumber healthy ones: review channel configuration")
        return OptimizationReport(
            timestamp=self._clock(),
            models=reports,
            summary=summary,
            recommendations=recommendations,
        )

    async def analyze_channel_logs(self, group_name: str, instance_id: str, hours: float = 24) -> ChannelLogSummary:
        logs = await self.registry.get_logs(group_name, instance_id, hours)
        return summarize_logs(group_name, logs, hours)

    def architecture_status(self) -> dict[str, Any]:
        return {
            "layers": self.topology.layer_summary(),
            "models": len(self.topology.mapping),
            "recovery": {
                "scheduled": len(self.recovery.tickets),
                "failed": len(self.recovery.history),
            },
            "incompatible": sorted(self.topology.incompatible),
            "tasks": self.task_names,
        }


def _priority_change(adjustment: PriorityAdjustment | None) -> str:
    if adjustment is None:
        return "unchanged"
    return f"{adjustment.old_priority} -> {adjustment.new_priority}"
