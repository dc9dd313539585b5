"""Shared fixtures for model-group-optimizer tests."""

from typing import Any

import pytest
from model_group_optimizer.models import Group, InstanceConfig, OptimizerConfig, Upstream
from model_group_optimizer.monitor import HealthMonitor
from model_group_optimizer.registry.http_registry import StaticInstanceDirectory
from model_group_optimizer.registry.memory_registry import MemoryGroupRegistry
from model_group_optimizer.topology import TopologyManager

INSTANCE = InstanceConfig(id="local", name="local", url="http://gptload:3001", token="sk-instance", priority=1)


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------


def stats_payload(
    active: int = 10,
    total: int = 10,
    invalid: int = 0,
    hourly_requests: int = 200,
    hourly_failure_rate: float = 0.01,
    avg_response_time: float | None = None,
    daily: dict[str, Any] | None = None,
    weekly: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "key_stats": {"active_keys": active, "total_keys": total, "invalid_keys": invalid},
        "hourly_stats": {
            "total_requests": hourly_requests,
            "failed_requests": round(hourly_requests * hourly_failure_rate),
            "failure_rate": hourly_failure_rate,
            "avg_response_time": avg_response_time,
        },
    }
    if daily is not None:
        payload["daily_stats"] = daily
    if weekly is not None:
        payload["weekly_stats"] = weekly
    return payload


def site_group(gid: int, name: str, **kwargs: Any) -> Group:
    return Group(
        id=gid,
        name=name,
        instance_id=INSTANCE.id,
        sort=20,
        upstreams=[Upstream(url=f"https://{name}.example.com/v1")],
        **kwargs,
    )


def channel_group(gid: int, model: str, site: str, sort: int = 15) -> Group:
    return Group(
        id=gid,
        name=f"{model}-via-{site}",
        instance_id=INSTANCE.id,
        sort=sort,
        upstreams=[Upstream(url=f"{INSTANCE.url}/proxy/{site}")],
        test_model=model,
        tags=["layer-2", "model-channel", model, site],
    )


def aggregate_group(gid: int, model: str, channels: list[str]) -> Group:
    return Group(
        id=gid,
        name=model,
        instance_id=INSTANCE.id,
        sort=10,
        upstreams=[Upstream(url=f"{INSTANCE.url}/proxy/{c}") for c in channels],
        test_model=model,
        tags=["layer-3", "model-aggregate", model],
    )


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def directory() -> StaticInstanceDirectory:
    return StaticInstanceDirectory([INSTANCE])


@pytest.fixture
def registry() -> MemoryGroupRegistry:
    """Two gpt-4o channels (one healthy, one failing) and an aggregate."""
    reg = MemoryGroupRegistry()
    reg.add_group(site_group(1, "openai-main", validated_models=["gpt-4o"]))
    reg.add_group(site_group(2, "backup-site", validated_models=["gpt-4o"]))
    reg.add_group(channel_group(10, "gpt-4o", "openai-main"), stats=stats_payload())
    reg.add_group(
        channel_group(11, "gpt-4o", "backup-site"),
        stats=stats_payload(active=2, total=10, invalid=8, hourly_requests=50, hourly_failure_rate=0.6),
    )
    reg.add_group(
        aggregate_group(20, "gpt-4o", ["gpt-4o-via-openai-main", "gpt-4o-via-backup-site"]),
        stats=stats_payload(),
    )
    return reg


@pytest.fixture
def config() -> OptimizerConfig:
    return OptimizerConfig(instances=[INSTANCE], weight_write_delay=0, start_monitor=False)


@pytest.fixture
def topology(registry: MemoryGroupRegistry, directory: StaticInstanceDirectory, config: OptimizerConfig) -> TopologyManager:
    return TopologyManager(registry, directory, layers=config.layers, default_proxy_url=config.default_proxy_url)


@pytest.fixture
def monitor(registry: MemoryGroupRegistry, topology: TopologyManager, config: OptimizerConfig) -> HealthMonitor:
    return HealthMonitor.from_config(config, registry, topology)
