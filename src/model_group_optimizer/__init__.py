"""model-group-optimizer: passive health scoring and priority control for group registries."""

from model_group_optimizer._version import __version__
from model_group_optimizer.models import (
    Group,
    OptimizerConfig,
    ScoreResult,
    StatsSnapshot,
)
from model_group_optimizer.monitor import HealthMonitor
from model_group_optimizer.registry import (
    HttpGroupRegistry,
    MemoryGroupRegistry,
    RegistryError,
    StaticInstanceDirectory,
)
from model_group_optimizer.scoring import score
from model_group_optimizer.server import create_app
from model_group_optimizer.topology import TopologyManager

__all__ = [
    "__version__",
    "create_app",
    "score",
    "Group",
    "HealthMonitor",
    "HttpGroupRegistry",
    "MemoryGroupRegistry",
    "OptimizerConfig",
    "RegistryError",
    "ScoreResult",
    "StaticInstanceDirectory",
    "StatsSnapshot",
    "TopologyManager",
]
