"""Passive recovery of failing model/channel combinations.

A combination moves unscheduled -> scheduled when the log-analysis sweep sees
its model-channel group failing, then either recovers (keys restored, ticket
dropped) or is rescheduled with exponential backoff.  Ticket and history maps
are replaced whole on every change.
"""

import logging
import time
from collections.abc import Callable

from model_group_optimizer.models import (
    FailureRecord,
    Group,
    RecoveryStatus,
    RecoverySweepResult,
    RecoveryTicket,
)
from model_group_optimizer.registry.base import GroupRegistry
from model_group_optimizer.stats_cache import StatsCache
from model_group_optimizer.topology import TopologyManager, channel_of, model_channel_name, model_of

logger = logging.getLogger(__name__)

Combination = tuple[str, str]

BASE_DELAY_MS = 1000
MAX_DELAY_MS = 3_600_000

# Log-analysis thresholds on hourly stats
FAILURE_RATE_THRESHOLD = 0.5
MIN_REQUESTS = 5


def backoff_delay_ms(retry_count: int, cap_ms: int = MAX_DELAY_MS) -> int:
    return min(BASE_DELAY_MS * 2**retry_count, cap_ms)


class RecoveryScheduler:
    def __init__(
        self,
        registry: GroupRegistry,
        topology: TopologyManager,
        stats: StatsCache,
        *,
        initial_delay: float = 300.0,
        max_delay: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.topology = topology
        self.stats = stats
        self.initial_delay = initial_delay
        self.max_delay_ms = int(max_delay * 1000)
        self._clock = clock
        self._tickets: dict[Combination, RecoveryTicket] = {}
        self._history: dict[Combination, FailureRecord] = {}
        self._generation = 0

    # -- State -------------------------------------------------------------

    @property
    def tickets(self) -> dict[Combination, RecoveryTicket]:
        return dict(self._tickets)

    @property
    def history(self) -> dict[Combination, FailureRecord]:
        return dict(self._history)

    def schedule(self, model: str, channel: str) -> RecoveryTicket:
        """Create a ticket unless one already exists for the combination."""
        key = (model, channel)
        ticket = self._tickets.get(key)
        if ticket is not None:
            return ticket
        ticket = RecoveryTicket(model=model, channel=channel, next_retry_at=self._clock() + self.initial_delay)
        self._tickets = {**self._tickets, key: ticket}
        logger.info("Scheduled recovery for %s via %s", model, channel)
        return ticket

    def record_failure(self, model: str, channel: str) -> FailureRecord:
        key = (model, channel)
        previous = self._history.get(key, FailureRecord())
        record = FailureRecord(failures=previous.failures + 1, last_failure=self._clock())
        self._history = {**self._history, key: record}
        return record

    def status(self, model: str, channel: str) -> RecoveryStatus:
        key = (model, channel)
        ticket = self._tickets.get(key)
        record = self._history.get(key)
        return RecoveryStatus(
            model=model,
            channel=channel,
            scheduled=ticket is not None,
            next_retry_at=ticket.next_retry_at if ticket else None,
            retry_count=ticket.retry_count if ticket else 0,
            failures=record.failures if record else 0,
        )

    def statuses(self) -> list[RecoveryStatus]:
        keys = sorted(set(self._tickets) | set(self._history))
        return [self.status(model, channel) for model, channel in keys]

    def clear(self) -> None:
        self._generation += 1
        self._tickets = {}
        self._history = {}

    def _forget(self, key: Combination) -> None:
        self._tickets = {k: v for k, v in self._tickets.items() if k != key}

    # -- Sweeps ------------------------------------------------------------

    async def analyze_recent_failures(self) -> int:
        """Schedule recovery for model-channel groups failing in the last hour."""
        groups = await self.topology.refresh_groups()
        flagged = 0
        for group in self.topology.model_channel_groups(groups):
            try:
                snapshot = await self.stats.get_stats(group.id, group.instance_id)
                hourly = snapshot.hourly_stats
                if snapshot.error or hourly is None:
                    continue
                if hourly.failure_rate > FAILURE_RATE_THRESHOLD and hourly.total_requests > MIN_REQUESTS:
                    model, channel = model_of(group), channel_of(group)
                    if not model:
                        continue
                    self.record_failure(model, channel)
                    self.schedule(model, channel)
                    flagged += 1
            except Exception:
                logger.exception("Log analysis failed for group %s", group.name)
        if flagged:
            logger.info("Log analysis flagged %d failing combinations", flagged)
        return flagged

    async def sweep(self) -> RecoverySweepResult:
        """Attempt recovery for every ticket whose retry time has passed."""
        now = self._clock()
        due = [t for t in self._tickets.values() if now >= t.next_retry_at]
        result = RecoverySweepResult(due=len(due))
        if not due:
            return result

        groups = await self.topology.refresh_groups()
        by_name = {g.name: g for g in groups}
        for ticket in due:
            outcome = await self.attempt(ticket.model, ticket.channel, by_name)
            setattr(result, outcome, getattr(result, outcome) + 1)
        logger.info(
            "Recovery sweep: %d due, %d recovered, %d removed, %d rescheduled, %d failed",
            result.due,
            result.recovered,
            result.removed,
            result.rescheduled,
            result.failed,
        )
        return result

    async def attempt(self, model: str, channel: str, by_name: dict[str, Group] | None = None) -> str:
        """Run one recovery attempt.

        Returns ``"recovered"``, ``"removed"``, ``"rescheduled"`` or
        ``"failed"``; a failed attempt keeps its ticket unchanged.
        """
        key = (model, channel)
        name = model_channel_name(model, channel)
        generation = self._generation
        try:
            if by_name is None:
                by_name = {g.name: g for g in await self.topology.refresh_groups()}
            group = by_name.get(name)
            if group is None:
                logger.info("Group %s no longer exists, dropping recovery ticket", name)
                self._forget(key)
                return "removed"

            snapshot = await self.stats.get_stats(group.id, group.instance_id, force_refresh=True)
            if snapshot.error is None and snapshot.key_stats is not None and snapshot.key_stats.invalid_keys > 0:
                await self.registry.toggle_key_status(group.id, group.instance_id, "active")
                self._forget(key)
                self._history = {k: v for k, v in self._history.items() if k != key}
                logger.info("Recovered %s: restored invalid keys of %s", f"{model}:{channel}", name)
                return "recovered"
        except Exception:
            logger.exception("Recovery attempt for %s:%s failed", model, channel)
            return "failed"

        if generation != self._generation:
            logger.info("Recovery state cleared during attempt for %s:%s, not rescheduling", model, channel)
            return "removed"

        retry_count = self._tickets[key].retry_count if key in self._tickets else 0
        delay_ms = backoff_delay_ms(retry_count, self.max_delay_ms)
        ticket = RecoveryTicket(
            model=model,
            channel=channel,
            next_retry_at=self._clock() + delay_ms / 1000,
            retry_count=retry_count + 1,
        )
        self._tickets = {**self._tickets, key: ticket}
        logger.info("Rescheduled recovery for %s:%s in %d ms", model, channel, delay_ms)
        return "rescheduled"

    async def manual_recovery(self, model: str, channel: str) -> RecoveryStatus:
        logger.info("Manual recovery requested for %s:%s", model, channel)
        await self.attempt(model, channel)
        return self.status(model, channel)
