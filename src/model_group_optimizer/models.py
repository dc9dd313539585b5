"""Pydantic data models for the model-group-optimizer."""

from enum import IntEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ------------------------------------------------------------------
# Registry-side records
# ------------------------------------------------------------------


class Layer(IntEnum):
    """Group layer.  The value doubles as the default ``sort`` of the layer."""

    AGGREGATE = 10
    MODEL_CHANNEL = 15
    SITE = 20


_LAYER_TAGS = {
    "layer-3": Layer.AGGREGATE,
    "model-aggregate": Layer.AGGREGATE,
    "layer-2": Layer.MODEL_CHANNEL,
    "model-channel": Layer.MODEL_CHANNEL,
}


class Upstream(BaseModel):
    """A single weighted upstream target of a group."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str
    weight: int = 1


class Group(BaseModel):
    """One routing unit as reported by the registry.

    Instances are immutable; priority changes produce a copy via
    ``model_copy(update={"sort": ...})``.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    name: str
    instance_id: str = ""
    display_name: str | None = None
    sort: int = 10
    upstreams: list[Upstream] = Field(default_factory=list)
    channel_type: str | None = None
    test_model: str | None = None
    validated_models: list[str] | None = None
    models: list[str] | None = None
    validation_endpoint: str | None = None
    status: str = "enabled"
    tags: list[str] = Field(default_factory=list)

    @property
    def priority(self) -> int:
        return self.sort

    @property
    def key(self) -> tuple[str, int]:
        """Identity of the group across registry instances."""
        return (self.instance_id, self.id)

    @property
    def layer(self) -> Layer | None:
        for tag in self.tags:
            if tag in _LAYER_TAGS:
                return _LAYER_TAGS[tag]
        if self.sort == Layer.SITE:
            return Layer.SITE
        try:
            return Layer(self.sort)
        except ValueError:
            return None


class GroupSpec(BaseModel):
    """Payload for creating a group in the registry."""

    name: str
    display_name: str | None = None
    description: str | None = None
    upstreams: list[Upstream] = Field(default_factory=list)
    sort: int
    channel_type: str = "openai"
    test_model: str | None = None
    validation_endpoint: str | None = None
    param_overrides: dict[str, Any] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class LogEntry(BaseModel):
    """A request log row returned by the registry."""

    model_config = ConfigDict(extra="ignore")

    is_success: bool = False
    status_code: int | None = None
    duration_ms: float = 0.0
    error_message: str | None = None
    timestamp: Any = None


# ------------------------------------------------------------------
# Statistics
# ------------------------------------------------------------------


class KeyStats(BaseModel):
    model_config = ConfigDict(extra="ignore")

    active_keys: int = 0
    total_keys: int = 0
    invalid_keys: int = 0


class PeriodStats(BaseModel):
    """Request statistics over one window (hour, day or week)."""

    model_config = ConfigDict(extra="ignore")

    total_requests: int = 0
    failed_requests: int = 0
    failure_rate: float = 0.0
    avg_response_time: float | None = None


class StatsSnapshot(BaseModel):
    """Merged per-group statistics as served by the stats cache."""

    model_config = ConfigDict(extra="ignore")

    key_stats: KeyStats | None = None
    hourly_stats: PeriodStats | None = None
    daily_stats: PeriodStats | None = None
    weekly_stats: PeriodStats | None = None
    group_info: dict[str, Any] | None = None
    fetched_at: float = 0.0
    error: str | None = None

    @classmethod
    def empty(cls, error: str, fetched_at: float) -> "StatsSnapshot":
        """Snapshot used when every fetch failed; scores to 0."""
        return cls(
            key_stats=KeyStats(active_keys=0, total_keys=0, invalid_keys=0),
            hourly_stats=PeriodStats(total_requests=0, failed_requests=0, failure_rate=1.0),
            error=error,
            fetched_at=fetched_at,
        )


# ------------------------------------------------------------------
# Scoring and adjustments
# ------------------------------------------------------------------

HealthLevel = Literal["excellent", "good", "fair", "poor", "critical"]


class ScoreFactor(BaseModel):
    factor: str
    score: float
    details: dict[str, Any] = Field(default_factory=dict)


class ScoreResult(BaseModel):
    """Health score of one group with its explanation."""

    score: int
    health_level: HealthLevel
    factors: list[ScoreFactor] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class PriorityAdjustment(BaseModel):
    group_id: int
    group_name: str
    old_priority: int
    new_priority: int
    score: int
    reasons: list[str] = Field(default_factory=list)
    change: Literal["improved", "degraded"]


class OptimizationSummary(BaseModel):
    """Result of one priority sweep over a model's groups."""

    model: str
    total_groups: int = 0
    adjusted_groups: int = 0
    improvements: int = 0
    degradations: int = 0
    average_score: float = 0.0
    adjustments: list[PriorityAdjustment] = Field(default_factory=list)


class WeightOptimizationResult(BaseModel):
    total: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


# ------------------------------------------------------------------
# Health reports
# ------------------------------------------------------------------

ModelStatus = Literal["healthy", "warning", "degraded", "critical", "no_groups"]


class GroupHealth(BaseModel):
    group_id: int
    group_name: str
    instance_id: str = ""
    priority: int = 10
    score: int | None = None
    health_level: HealthLevel | None = None
    recommendations: list[str] = Field(default_factory=list)
    needs_attention: bool = False
    recommended_action: Literal["none", "monitor", "investigate", "immediate_fix", "validate"] = "none"
    error: str | None = None


class HealthSummary(BaseModel):
    total: int = 0
    healthy: int = 0
    degraded: int = 0
    critical: int = 0


class ModelHealthReport(BaseModel):
    model: str
    overall_status: ModelStatus
    groups: list[GroupHealth] = Field(default_factory=list)
    summary: HealthSummary = Field(default_factory=HealthSummary)
    needs_validation: bool = False
    timestamp: float = 0.0


class OptimizationReport(BaseModel):
    timestamp: float
    models: list[ModelHealthReport] = Field(default_factory=list)
    summary: dict[str, int] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)


class ChannelLogSummary(BaseModel):
    group_name: str
    status: Literal["no_data", "healthy", "warning", "critical"]
    message: str = ""
    total_requests: int = 0
    success_rate: float = 0.0
    avg_response_time: float = 0.0
    error_types: dict[str, int] = Field(default_factory=dict)
    last_error: LogEntry | None = None
    time_range_hours: float = 24


class MonitorEvent(BaseModel):
    """Status-change or summary event raised by the health monitor."""

    type: str
    timestamp: float
    data: dict[str, Any] = Field(default_factory=dict)


# ------------------------------------------------------------------
# Recovery
# ------------------------------------------------------------------


class RecoveryTicket(BaseModel):
    """Scheduled passive-recovery attempt for one (model, channel) pair."""

    model_config = ConfigDict(frozen=True)

    model: str
    channel: str
    next_retry_at: float
    retry_count: int = 0


class FailureRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    failures: int = 0
    last_failure: float = 0.0


class RecoveryStatus(BaseModel):
    model: str
    channel: str
    scheduled: bool
    next_retry_at: float | None = None
    retry_count: int = 0
    failures: int = 0


class RecoverySweepResult(BaseModel):
    due: int = 0
    recovered: int = 0
    removed: int = 0
    rescheduled: int = 0
    failed: int = 0


# ------------------------------------------------------------------
# Topology
# ------------------------------------------------------------------


class TopologyBuildResult(BaseModel):
    site_groups: int = 0
    model_channel_groups: int = 0
    aggregate_groups: int = 0
    total_models: int = 0
    failed: int = 0
    incompatible: list[str] = Field(default_factory=list)


# ------------------------------------------------------------------
# Configuration
# ------------------------------------------------------------------


class InstanceConfig(BaseModel):
    """A registry instance reachable over HTTP."""

    id: str
    name: str = ""
    url: str
    token: str | None = None
    priority: int = 1


class LayerConfig(BaseModel):
    sort: int
    blacklist_threshold: int
    key_validation_interval_minutes: int
    max_retries: int | None = None

    def group_config(self) -> dict[str, Any]:
        cfg: dict[str, Any] = {
            "blacklist_threshold": self.blacklist_threshold,
            "key_validation_interval_minutes": self.key_validation_interval_minutes,
        }
        if self.max_retries is not None:
            cfg["max_retries"] = self.max_retries
        return cfg


class LayersConfig(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    site: LayerConfig = Field(
        default_factory=lambda: LayerConfig(sort=20, blacklist_threshold=99, key_validation_interval_minutes=60)
    )
    model_channel: LayerConfig = Field(
        default_factory=lambda: LayerConfig(sort=15, blacklist_threshold=2, key_validation_interval_minutes=10080)
    )
    aggregate: LayerConfig = Field(
        default_factory=lambda: LayerConfig(
            sort=10, blacklist_threshold=50, key_validation_interval_minutes=30, max_retries=9
        )
    )


class OptimizerConfig(BaseModel):
    """Top-level optimizer configuration."""

    model_config = ConfigDict(protected_namespaces=())

    host: str = "0.0.0.0"
    port: int = 3002
    instances: list[InstanceConfig] = Field(default_factory=list)
    model_policy: str | None = None
    log_level: str = "INFO"
    test_model: str | None = None
    default_proxy_url: str = "http://localhost:3001"
    # Sweep cadences (seconds)
    full_optimize_interval: float = 300.0
    health_check_interval: float = 600.0
    smart_optimize_interval: float = 900.0
    status_change_interval: float = 120.0
    recovery_interval: float = 300.0
    log_analysis_interval: float = 60.0
    weight_optimize_interval: float = 86400.0
    # Tuning
    stats_ttl: float = 30.0
    weight_write_delay: float = 0.1
    recovery_initial_delay: float = 300.0
    recovery_max_delay: float = 3600.0
    score_change_threshold: int = 20
    request_timeout: float = 20.0
    max_retries: int = 2
    start_monitor: bool = True
    layers: LayersConfig = Field(default_factory=LayersConfig)
